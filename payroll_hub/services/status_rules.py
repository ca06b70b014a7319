"""
Payroll Document Hub - Document Status Rules

This module defines the lifecycle of generated payroll documents as a static
state machine: the status taxonomy, the directed transition graph and the
display metadata used by the admin screens.

The rules are pure lookups with no HTTP or DB calls, so every edge can be
covered by unit tests.

Lifecycle (main path):
    CALCULATION_PENDING -> PREVIEW_REQUESTED -> PREVIEW_GENERATED ->
    PENDING_APPROVAL -> APPROVED_FOR_GENERATION -> GENERATING ->
    GENERATED | GENERATION_FAILED -> APPROVED -> SENT -> ARCHIVED
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Any
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# DOCUMENT TYPE DEFINITIONS
# =============================================================================

class DocumentType(str, Enum):
    """Payroll document types produced by the hub."""
    BULLETIN_PAIE = "BULLETIN_PAIE"                 # Payslip
    ORDRE_VIREMENT = "ORDRE_VIREMENT"               # Salary transfer order
    CNSS_DECLARATION = "CNSS_DECLARATION"           # Social security declaration
    SALARY_CERTIFICATE = "SALARY_CERTIFICATE"       # Attestation de salaire
    PAYROLL_SUMMARY = "PAYROLL_SUMMARY"             # Period recap


DOCUMENT_TYPE_LABELS: Dict[str, str] = {
    DocumentType.BULLETIN_PAIE.value: "Bulletin de Paie",
    DocumentType.ORDRE_VIREMENT.value: "Ordre de Virement",
    DocumentType.CNSS_DECLARATION.value: "Déclaration CNSS",
    DocumentType.SALARY_CERTIFICATE.value: "Certificat de Salaire",
    DocumentType.PAYROLL_SUMMARY.value: "Récapitulatif de Paie",
}


class GenerationMode(str, Enum):
    """Rendering fidelity for a generated document."""
    PREVIEW = "PREVIEW"
    FINAL = "FINAL"


class ProcessingPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class StorageProviderType(str, Enum):
    """Where the generated file bytes live."""
    LOCAL_FILESYSTEM = "LOCAL_FILESYSTEM"
    MONGODB_GRIDFS = "MONGODB_GRIDFS"
    AWS_S3 = "AWS_S3"
    CLOUDINARY = "CLOUDINARY"
    MEMORY = "MEMORY"


class DeliveryMethod(str, Enum):
    EMAIL = "EMAIL"
    PORTAL = "PORTAL"
    PRINT = "PRINT"
    DOWNLOAD = "DOWNLOAD"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    BOUNCED = "BOUNCED"


# =============================================================================
# STATUS DEFINITIONS
# =============================================================================

class DocumentStatus(str, Enum):
    """
    Lifecycle status of a payroll document.

    GENERATION_FAILED is recoverable: a document can be retried back into
    GENERATING, sent back to preview, or archived.
    """
    CALCULATION_PENDING = "CALCULATION_PENDING"
    PREVIEW_REQUESTED = "PREVIEW_REQUESTED"
    PREVIEW_GENERATED = "PREVIEW_GENERATED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED_FOR_GENERATION = "APPROVED_FOR_GENERATION"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    GENERATION_FAILED = "GENERATION_FAILED"
    APPROVED = "APPROVED"
    SENT = "SENT"
    ARCHIVED = "ARCHIVED"


class TransitionTrigger(str, Enum):
    """What caused a status change."""
    USER_ACTION = "USER_ACTION"         # Admin clicked something
    SYSTEM_EVENT = "SYSTEM_EVENT"       # Automated pipeline step
    SCHEDULED_EVENT = "SCHEDULED_EVENT" # Cron / retention job
    ERROR_EVENT = "ERROR_EVENT"         # Error-driven recovery
    TIMEOUT_EVENT = "TIMEOUT_EVENT"


STATUS_LABELS: Dict[str, str] = {
    DocumentStatus.CALCULATION_PENDING.value: "Calcul en attente",
    DocumentStatus.PREVIEW_REQUESTED.value: "Prévisualisation demandée",
    DocumentStatus.PREVIEW_GENERATED.value: "Prévisualisation générée",
    DocumentStatus.PENDING_APPROVAL.value: "En attente d'approbation",
    DocumentStatus.APPROVED_FOR_GENERATION.value: "Approuvé pour génération",
    DocumentStatus.GENERATING.value: "Génération en cours",
    DocumentStatus.GENERATED.value: "Généré",
    DocumentStatus.GENERATION_FAILED.value: "Échec de génération",
    DocumentStatus.APPROVED.value: "Approuvé",
    DocumentStatus.SENT.value: "Envoyé",
    DocumentStatus.ARCHIVED.value: "Archivé",
}

STATUS_COLORS: Dict[str, str] = {
    DocumentStatus.CALCULATION_PENDING.value: "gray",
    DocumentStatus.PREVIEW_REQUESTED.value: "blue",
    DocumentStatus.PREVIEW_GENERATED.value: "cyan",
    DocumentStatus.PENDING_APPROVAL.value: "yellow",
    DocumentStatus.APPROVED_FOR_GENERATION.value: "orange",
    DocumentStatus.GENERATING.value: "purple",
    DocumentStatus.GENERATED.value: "green",
    DocumentStatus.GENERATION_FAILED.value: "red",
    DocumentStatus.APPROVED.value: "emerald",
    DocumentStatus.SENT.value: "indigo",
    DocumentStatus.ARCHIVED.value: "gray",
}


# =============================================================================
# TRANSITION GRAPH
# =============================================================================

@dataclass(frozen=True)
class StatusTransition:
    """A single allowed edge of the status graph."""
    from_status: DocumentStatus
    to_status: DocumentStatus
    trigger: TransitionTrigger = TransitionTrigger.USER_ACTION
    requires_approval: bool = False
    timeout_ms: Optional[int] = None
    scheduled_after_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "trigger": self.trigger.value,
            "requires_approval": self.requires_approval,
            "timeout_ms": self.timeout_ms,
            "scheduled_after_days": self.scheduled_after_days,
        }


_S = DocumentStatus
_T = TransitionTrigger

STATUS_TRANSITIONS: Tuple[StatusTransition, ...] = (
    StatusTransition(_S.CALCULATION_PENDING, _S.PREVIEW_REQUESTED),
    # Direct generation without preview
    StatusTransition(_S.CALCULATION_PENDING, _S.GENERATING, _T.SYSTEM_EVENT),

    StatusTransition(_S.PREVIEW_REQUESTED, _S.PREVIEW_GENERATED, _T.SYSTEM_EVENT),
    StatusTransition(_S.PREVIEW_REQUESTED, _S.GENERATION_FAILED, _T.ERROR_EVENT),

    StatusTransition(_S.PREVIEW_GENERATED, _S.PENDING_APPROVAL),
    StatusTransition(_S.PREVIEW_GENERATED, _S.APPROVED_FOR_GENERATION),

    StatusTransition(_S.PENDING_APPROVAL, _S.APPROVED_FOR_GENERATION, requires_approval=True),
    StatusTransition(_S.PENDING_APPROVAL, _S.PREVIEW_REQUESTED),

    StatusTransition(_S.APPROVED_FOR_GENERATION, _S.GENERATING, _T.SYSTEM_EVENT),

    StatusTransition(_S.GENERATING, _S.GENERATED, _T.SYSTEM_EVENT),
    StatusTransition(_S.GENERATING, _S.GENERATION_FAILED, _T.TIMEOUT_EVENT, timeout_ms=30000),

    StatusTransition(_S.GENERATED, _S.APPROVED, requires_approval=True),
    StatusTransition(_S.GENERATED, _S.ARCHIVED),

    StatusTransition(_S.APPROVED, _S.SENT),
    StatusTransition(_S.APPROVED, _S.ARCHIVED),

    StatusTransition(_S.SENT, _S.ARCHIVED, _T.SCHEDULED_EVENT, scheduled_after_days=30),

    # Recovery paths
    StatusTransition(_S.GENERATION_FAILED, _S.GENERATING, _T.ERROR_EVENT),
    StatusTransition(_S.GENERATION_FAILED, _S.PREVIEW_REQUESTED),
    StatusTransition(_S.GENERATION_FAILED, _S.ARCHIVED),
)

# from_status -> {to_status: StatusTransition}
TRANSITION_TABLE: Dict[str, Dict[str, StatusTransition]] = {}
for _transition in STATUS_TRANSITIONS:
    TRANSITION_TABLE.setdefault(_transition.from_status.value, {})[_transition.to_status.value] = _transition


# =============================================================================
# LOOKUPS
# =============================================================================

def coerce_status(value: Any) -> Optional[DocumentStatus]:
    """Parse a status value (enum or case-insensitive string). Returns None if unknown."""
    if isinstance(value, DocumentStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return DocumentStatus(value.strip().upper())
    except ValueError:
        return None


def coerce_document_type(value: Any) -> Optional[DocumentType]:
    if isinstance(value, DocumentType):
        return value
    if not isinstance(value, str):
        return None
    try:
        return DocumentType(value.strip().upper())
    except ValueError:
        return None


def get_allowed_transitions(status: Any) -> List[DocumentStatus]:
    """Statuses a document in `status` may legally move to."""
    current = coerce_status(status)
    if current is None:
        return []
    return [DocumentStatus(s) for s in TRANSITION_TABLE.get(current.value, {})]


def get_transition(from_status: Any, to_status: Any) -> Optional[StatusTransition]:
    current = coerce_status(from_status)
    target = coerce_status(to_status)
    if current is None or target is None:
        return None
    return TRANSITION_TABLE.get(current.value, {}).get(target.value)


def is_valid_transition(from_status: Any, to_status: Any) -> bool:
    """True only for edges explicitly listed in STATUS_TRANSITIONS (never self-loops)."""
    return get_transition(from_status, to_status) is not None


def get_status_label(status: Any) -> str:
    current = coerce_status(status)
    if current is None:
        return str(status)
    return STATUS_LABELS[current.value]


def get_status_color(status: Any) -> str:
    current = coerce_status(status)
    if current is None:
        return "gray"
    return STATUS_COLORS[current.value]


def get_document_type_label(document_type: Any) -> str:
    doc_type = coerce_document_type(document_type)
    if doc_type is None:
        return str(document_type)
    return DOCUMENT_TYPE_LABELS[doc_type.value]


def get_terminal_statuses() -> List[str]:
    """Statuses with no outgoing edges."""
    return [s.value for s in DocumentStatus if s.value not in TRANSITION_TABLE]


def get_final_statuses() -> List[str]:
    """Statuses of a finished (non-preview) document; these block duplicate generation."""
    return [
        DocumentStatus.GENERATED.value,
        DocumentStatus.APPROVED.value,
        DocumentStatus.SENT.value,
    ]


def describe_status(status: Any) -> Dict[str, Any]:
    """Display payload for a status: label, color and next statuses."""
    current = coerce_status(status)
    return {
        "status": current.value if current else status,
        "label": get_status_label(status),
        "color": get_status_color(status),
        "allowed_transitions": [s.value for s in get_allowed_transitions(status)],
        "is_terminal": current is not None and current.value in get_terminal_statuses(),
    }
