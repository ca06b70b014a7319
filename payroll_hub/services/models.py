"""
Payroll Document Hub - Payroll Document Sub-Records

A payroll document carries several optional, status-specific payloads
(approval, distribution, preview, error, generation). Each one is an explicit
dataclass so the fields written at a given lifecycle step are checked where
they are written, instead of being ad-hoc nested dicts.

Documents themselves are stored as plain dicts; these classes convert to and
from the stored sub-dicts.
"""

from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional, Type, TypeVar

T = TypeVar("T", bound="SubRecord")


class SubRecord:
    """Dict round-trip helpers shared by the sub-record dataclasses."""

    @classmethod
    def from_dict(cls: Type[T], data: Optional[Dict[str, Any]]) -> T:
        data = data or {}
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SalaryData(SubRecord):
    base_salary: float = 0.0
    gross_salary: float = 0.0
    net_salary: float = 0.0
    total_allowances: float = 0.0
    total_deductions: float = 0.0
    cnss_employee: float = 0.0
    cnss_employer: float = 0.0
    income_tax: float = 0.0

    @classmethod
    def from_payroll(cls, payroll: Dict[str, Any]) -> "SalaryData":
        record = cls.from_dict({k: v for k, v in payroll.items() if v is not None})
        if not payroll.get("base_salary"):
            record.base_salary = payroll.get("gross_salary", 0.0)
        return record


@dataclass
class GenerationInfo(SubRecord):
    mode: str = "FINAL"
    quality: str = "high"
    config: Dict[str, Any] = field(default_factory=dict)
    requested_by: Optional[str] = None
    requested_at: Optional[str] = None
    generated_at: Optional[str] = None
    processing_time_ms: Optional[float] = None
    retry_count: int = 0
    queued: bool = False


@dataclass
class PreviewInfo(SubRecord):
    expires_at: Optional[str] = None
    watermark_text: Optional[str] = None
    reduced_sections: bool = True
    view_count: int = 0
    download_count: int = 0
    last_viewed_at: Optional[str] = None


@dataclass
class ApprovalInfo(SubRecord):
    requested_by: Optional[str] = None
    requested_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    comments: Optional[str] = None


@dataclass
class DistributionInfo(SubRecord):
    sent_by: Optional[str] = None
    sent_at: Optional[str] = None
    sent_to: List[str] = field(default_factory=list)
    delivery_method: Optional[str] = None
    delivery_status: Optional[str] = None
    tracking_id: Optional[str] = None


@dataclass
class ErrorInfo(SubRecord):
    failed_at: Optional[str] = None
    failure_count: int = 0
    last_error: Optional[Dict[str, Any]] = None
    dead_lettered: bool = False
