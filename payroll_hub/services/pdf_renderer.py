"""
Payroll Document Hub - PDF Rendering

The engine treats rendering as an opaque capability: a PdfRenderer takes the
employee, payroll figures, period label, document type and generation config
and returns bytes. validate_pdf() is the output gate every rendered buffer
must pass before it is stored.

SimplePdfRenderer draws a single A4 page with the payroll figures as text
lines. It is enough for previews, tests and environments without a template
engine.
"""

import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from ..config import COMPANY_NAME, PDF_LIMITS
from .errors import pdf_generation_failed
from .status_rules import DocumentType, GenerationMode, get_document_type_label

logger = logging.getLogger(__name__)


@dataclass
class GenerationConfig:
    """Rendering options for one document."""
    mode: GenerationMode = GenerationMode.FINAL
    quality: str = "high"
    resolution: int = 300
    include_metadata: bool = True
    include_digital_signature: bool = True
    compression_level: int = 5
    watermark_text: Optional[str] = None
    reduced_sections: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_overrides(cls, overrides: Optional[Dict[str, Any]] = None, **defaults) -> "GenerationConfig":
        values = dict(defaults)
        for key, value in (overrides or {}).items():
            if key in cls.__dataclass_fields__ and value is not None:
                values[key] = value
        if "mode" in values and not isinstance(values["mode"], GenerationMode):
            values["mode"] = GenerationMode(str(values["mode"]).upper())
        return cls(**values)


class PdfRenderer(ABC):
    """Produces PDF bytes for a payroll document."""

    @abstractmethod
    async def render(
        self,
        employee: Dict[str, Any],
        payroll: Dict[str, Any],
        period_label: str,
        document_type: DocumentType,
        config: GenerationConfig,
    ) -> bytes:
        ...


def validate_pdf(buffer: bytes, max_size: Optional[int] = None, min_size: Optional[int] = None) -> None:
    """Reject buffers without a PDF header or outside the plausible size range."""
    max_size = max_size or PDF_LIMITS["max_size"]
    min_size = min_size if min_size is not None else PDF_LIMITS["min_size"]

    if not isinstance(buffer, (bytes, bytearray)):
        raise pdf_generation_failed("renderer returned no bytes", received=type(buffer).__name__)
    if not bytes(buffer[:4]) == PDF_LIMITS["header"]:
        raise pdf_generation_failed("invalid PDF header", received=bytes(buffer[:8]).hex())
    if len(buffer) < min_size:
        raise pdf_generation_failed("PDF too small", size=len(buffer), min_size=min_size)
    if len(buffer) > max_size:
        raise pdf_generation_failed("PDF too large", size=len(buffer), max_size=max_size)


def _amount(value: Any) -> str:
    if value is None:
        return "-"
    return f"{float(value):,.2f} MAD".replace(",", " ")


class SimplePdfRenderer(PdfRenderer):
    """One-page A4 document drawn with the ReportLab canvas (Helvetica text, no templates)."""

    FIGURES = [
        ("Salaire de base", "base_salary"),
        ("Salaire brut", "gross_salary"),
        ("Total indemnités", "total_allowances"),
        ("Total retenues", "total_deductions"),
        ("CNSS salarié", "cnss_employee"),
        ("CNSS employeur", "cnss_employer"),
        ("IR", "income_tax"),
        ("Salaire net", "net_salary"),
    ]

    async def render(self, employee, payroll, period_label, document_type, config):
        lines = self._lines(employee, payroll, period_label, document_type, config)
        title = f"{get_document_type_label(document_type)} - {period_label}"
        return self.build_pdf(lines, watermark=config.watermark_text, title=title,
                              compress=config.compression_level > 5)

    def _lines(self, employee, payroll, period_label, document_type, config) -> List[str]:
        lines = [
            COMPANY_NAME,
            f"{get_document_type_label(document_type)} - {period_label}",
            f"Employé: {employee.get('name', '')} ({employee.get('employee_id', '')})",
        ]
        if employee.get("department"):
            lines.append(f"Département: {employee['department']}")
        if document_type == DocumentType.ORDRE_VIREMENT:
            lines.append(f"RIB: {employee.get('rib') or employee.get('bank_account')}")
        if document_type == DocumentType.CNSS_DECLARATION:
            lines.append(f"N° CNSS: {employee.get('cnss_number')}")

        figures = self.FIGURES
        if config.reduced_sections:
            figures = [f for f in figures if f[1] in ("gross_salary", "net_salary")]
        for label, key in figures:
            lines.append(f"{label}: {_amount(payroll.get(key))}")

        if config.include_metadata:
            lines.append(f"Mode: {config.mode.value} / Qualité: {config.quality} / {config.resolution} dpi")
        if config.include_digital_signature and config.mode == GenerationMode.FINAL:
            lines.append("Document signé électroniquement")
        return lines

    @staticmethod
    def build_pdf(lines: List[str], watermark: Optional[str] = None, title: Optional[str] = None,
                  compress: bool = False) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4, pageCompression=1 if compress else 0)
        width, height = A4
        pdf.setTitle(title or (lines[0] if lines else COMPANY_NAME))
        pdf.setAuthor(COMPANY_NAME)

        y = height - 20 * mm
        for index, line in enumerate(lines):
            if index == 0:
                pdf.setFont("Helvetica-Bold", 14)
            else:
                pdf.setFont("Helvetica", 11)
            pdf.drawString(20 * mm, y, line)
            y -= 7 * mm if index else 10 * mm

        if watermark:
            pdf.saveState()
            pdf.setFillColor(colors.lightgrey)
            pdf.setFont("Helvetica-Bold", 36)
            pdf.translate(width / 2, height / 2)
            pdf.rotate(45)
            pdf.drawCentredString(0, 0, watermark)
            pdf.restoreState()

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
