"""
Payroll Document Hub - Workflow Errors

Every failure inside the document engine is a WorkflowError. Severity,
category, retryability and the HTTP status are all derived from the error
code through ERROR_CLASSIFICATION so that triage is the same no matter which
service raised the error.

Errors carry two messages:
- message: internal detail, logged and stored in audit records
- user_message: localized (French) text that is safe to show to end users
"""

import asyncio
import os
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


class ErrorCode(str, Enum):
    """Closed set of engine error codes."""
    # Validation
    INVALID_EMPLOYEE_DATA = "INVALID_EMPLOYEE_DATA"
    INVALID_PAYROLL_DATA = "INVALID_PAYROLL_DATA"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INVALID_DOCUMENT_TYPE = "INVALID_DOCUMENT_TYPE"
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"
    NO_MATCHING_DOCUMENTS = "NO_MATCHING_DOCUMENTS"
    TOO_MANY_DOCUMENTS = "TOO_MANY_DOCUMENTS"
    PREVIEW_EXPIRED = "PREVIEW_EXPIRED"
    INVALID_OPERATION_TYPE = "INVALID_OPERATION_TYPE"
    INVALID_SELECTION_CRITERIA = "INVALID_SELECTION_CRITERIA"

    # Generation
    PDF_GENERATION_FAILED = "PDF_GENERATION_FAILED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    MEMORY_INSUFFICIENT = "MEMORY_INSUFFICIENT"
    TIMEOUT_EXCEEDED = "TIMEOUT_EXCEEDED"
    DOCUMENT_PROCESSING_FAILED = "DOCUMENT_PROCESSING_FAILED"

    # Storage
    STORAGE_WRITE_FAILED = "STORAGE_WRITE_FAILED"
    STORAGE_READ_FAILED = "STORAGE_READ_FAILED"
    STORAGE_SPACE_INSUFFICIENT = "STORAGE_SPACE_INSUFFICIENT"
    STORAGE_PERMISSION_DENIED = "STORAGE_PERMISSION_DENIED"

    # Workflow
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    CURRENT_STATUS_UNKNOWN = "CURRENT_STATUS_UNKNOWN"
    UNAUTHORIZED_STATUS_CHANGE = "UNAUTHORIZED_STATUS_CHANGE"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    DOCUMENT_ALREADY_EXISTS = "DOCUMENT_ALREADY_EXISTS"
    OPERATION_NOT_CANCELLABLE = "OPERATION_NOT_CANCELLABLE"

    # Infrastructure
    DATABASE_CONNECTION_FAILED = "DATABASE_CONNECTION_FAILED"
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    EXTERNAL_SERVICE_UNAVAILABLE = "EXTERNAL_SERVICE_UNAVAILABLE"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"           # Bad input, nothing was mutated
    BUSINESS_LOGIC = "BUSINESS_LOGIC"   # Rule violation (e.g. illegal transition)
    SYSTEM = "SYSTEM"                   # Storage / database / rendering failure
    EXTERNAL = "EXTERNAL"               # Downstream dependency unavailable
    SECURITY = "SECURITY"               # Authorization failure, never auto-retried
    PERFORMANCE = "PERFORMANCE"         # Timeout or resource exhaustion


class RecoveryStrategy(str, Enum):
    RETRY = "RETRY"
    FALLBACK = "FALLBACK"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    SKIP = "SKIP"
    ABORT = "ABORT"


SEVERITY_RANK = {
    ErrorSeverity.LOW: 0,
    ErrorSeverity.MEDIUM: 1,
    ErrorSeverity.HIGH: 2,
    ErrorSeverity.CRITICAL: 3,
}


# =============================================================================
# CLASSIFICATION TABLE
# =============================================================================

_V, _B, _SY, _E, _SE, _P = (
    ErrorCategory.VALIDATION, ErrorCategory.BUSINESS_LOGIC, ErrorCategory.SYSTEM,
    ErrorCategory.EXTERNAL, ErrorCategory.SECURITY, ErrorCategory.PERFORMANCE,
)
_L, _M, _H, _C = ErrorSeverity.LOW, ErrorSeverity.MEDIUM, ErrorSeverity.HIGH, ErrorSeverity.CRITICAL

# code -> (severity, category, retryable, http_status)
ERROR_CLASSIFICATION: Dict[ErrorCode, tuple] = {
    ErrorCode.INVALID_EMPLOYEE_DATA: (_M, _V, False, 400),
    ErrorCode.INVALID_PAYROLL_DATA: (_M, _V, False, 400),
    ErrorCode.MISSING_REQUIRED_FIELDS: (_M, _V, False, 400),
    ErrorCode.INVALID_DOCUMENT_TYPE: (_M, _V, False, 400),
    ErrorCode.EMPLOYEE_NOT_FOUND: (_M, _V, False, 404),
    ErrorCode.DOCUMENT_NOT_FOUND: (_M, _V, False, 404),
    ErrorCode.OPERATION_NOT_FOUND: (_L, _V, False, 404),
    ErrorCode.NO_MATCHING_DOCUMENTS: (_L, _V, False, 404),
    ErrorCode.TOO_MANY_DOCUMENTS: (_M, _V, False, 400),
    ErrorCode.PREVIEW_EXPIRED: (_L, _V, False, 410),
    ErrorCode.INVALID_OPERATION_TYPE: (_M, _V, False, 400),
    ErrorCode.INVALID_SELECTION_CRITERIA: (_M, _V, False, 400),

    ErrorCode.PDF_GENERATION_FAILED: (_H, _SY, True, 500),
    ErrorCode.TEMPLATE_NOT_FOUND: (_H, _SY, False, 500),
    ErrorCode.MEMORY_INSUFFICIENT: (_C, _P, False, 503),
    ErrorCode.TIMEOUT_EXCEEDED: (_M, _P, True, 504),
    ErrorCode.DOCUMENT_PROCESSING_FAILED: (_M, _SY, True, 500),

    ErrorCode.STORAGE_WRITE_FAILED: (_H, _SY, True, 500),
    ErrorCode.STORAGE_READ_FAILED: (_H, _SY, True, 500),
    ErrorCode.STORAGE_SPACE_INSUFFICIENT: (_C, _SY, False, 507),
    ErrorCode.STORAGE_PERMISSION_DENIED: (_H, _SE, False, 403),

    ErrorCode.INVALID_STATUS_TRANSITION: (_M, _B, False, 422),
    ErrorCode.CURRENT_STATUS_UNKNOWN: (_M, _B, False, 409),
    ErrorCode.UNAUTHORIZED_STATUS_CHANGE: (_M, _SE, False, 403),
    ErrorCode.INSUFFICIENT_PERMISSIONS: (_M, _B, False, 403),
    ErrorCode.APPROVAL_REQUIRED: (_L, _B, False, 422),
    ErrorCode.BUSINESS_RULE_VIOLATION: (_M, _B, False, 422),
    ErrorCode.DOCUMENT_ALREADY_EXISTS: (_L, _B, False, 409),
    ErrorCode.OPERATION_NOT_CANCELLABLE: (_L, _B, False, 409),

    ErrorCode.DATABASE_CONNECTION_FAILED: (_C, _SY, True, 503),
    ErrorCode.CACHE_UNAVAILABLE: (_L, _SY, True, 503),
    ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE: (_M, _E, True, 503),
    ErrorCode.CONFIGURATION_ERROR: (_H, _SY, False, 500),
    ErrorCode.INTERNAL_ERROR: (_H, _SY, False, 500),
}

USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_EMPLOYEE_DATA: "Les données de l'employé sont invalides. Veuillez vérifier les informations.",
    ErrorCode.INVALID_PAYROLL_DATA: "Les données de paie sont invalides. Veuillez vérifier les calculs.",
    ErrorCode.MISSING_REQUIRED_FIELDS: "Des champs obligatoires sont manquants.",
    ErrorCode.INVALID_DOCUMENT_TYPE: "Type de document invalide.",
    ErrorCode.EMPLOYEE_NOT_FOUND: "Employé introuvable ou inactif.",
    ErrorCode.DOCUMENT_NOT_FOUND: "Document introuvable.",
    ErrorCode.OPERATION_NOT_FOUND: "Opération introuvable.",
    ErrorCode.NO_MATCHING_DOCUMENTS: "Aucun document ne correspond aux critères.",
    ErrorCode.TOO_MANY_DOCUMENTS: "Trop de documents sélectionnés pour une seule opération.",
    ErrorCode.PREVIEW_EXPIRED: "Prévisualisation expirée.",
    ErrorCode.INVALID_OPERATION_TYPE: "Type d'opération invalide.",
    ErrorCode.INVALID_SELECTION_CRITERIA: "Critères de sélection invalides.",
    ErrorCode.PDF_GENERATION_FAILED: "La génération du PDF a échoué. Veuillez réessayer.",
    ErrorCode.TEMPLATE_NOT_FOUND: "Le modèle de document n'a pas été trouvé.",
    ErrorCode.MEMORY_INSUFFICIENT: "Mémoire insuffisante pour traiter le document.",
    ErrorCode.TIMEOUT_EXCEEDED: "Le traitement a pris trop de temps. Veuillez réessayer.",
    ErrorCode.DOCUMENT_PROCESSING_FAILED: "Le traitement du document a échoué.",
    ErrorCode.STORAGE_WRITE_FAILED: "Échec de l'enregistrement du document.",
    ErrorCode.STORAGE_READ_FAILED: "Échec de la lecture du document.",
    ErrorCode.STORAGE_SPACE_INSUFFICIENT: "Espace de stockage insuffisant.",
    ErrorCode.STORAGE_PERMISSION_DENIED: "Permissions insuffisantes pour accéder au stockage.",
    ErrorCode.INVALID_STATUS_TRANSITION: "Transition de statut invalide.",
    ErrorCode.CURRENT_STATUS_UNKNOWN: "Le statut actuel du document est inconnu.",
    ErrorCode.UNAUTHORIZED_STATUS_CHANGE: "Vous n'êtes pas autorisé à changer ce statut.",
    ErrorCode.INSUFFICIENT_PERMISSIONS: "Permissions insuffisantes pour cette opération.",
    ErrorCode.APPROVAL_REQUIRED: "Une approbation est requise pour cette action.",
    ErrorCode.BUSINESS_RULE_VIOLATION: "Cette action enfreint une règle métier.",
    ErrorCode.DOCUMENT_ALREADY_EXISTS: "Un document existe déjà pour cette période.",
    ErrorCode.OPERATION_NOT_CANCELLABLE: "Cette opération ne peut plus être annulée.",
    ErrorCode.DATABASE_CONNECTION_FAILED: "Problème de connexion à la base de données.",
    ErrorCode.CACHE_UNAVAILABLE: "Cache temporairement indisponible.",
    ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE: "Service externe temporairement indisponible.",
    ErrorCode.CONFIGURATION_ERROR: "Erreur de configuration du système.",
    ErrorCode.INTERNAL_ERROR: "Une erreur interne est survenue.",
}

SUGGESTED_ACTIONS: Dict[ErrorCode, List[str]] = {
    ErrorCode.INVALID_EMPLOYEE_DATA: [
        "Vérifiez que tous les champs employé sont correctement remplis",
        "Contactez le service RH si les données semblent correctes",
    ],
    ErrorCode.INVALID_PAYROLL_DATA: [
        "Vérifiez les montants brut et net",
        "Relancez le calcul de paie pour cette période",
    ],
    ErrorCode.PDF_GENERATION_FAILED: [
        "Réessayez dans quelques minutes",
        "Vérifiez que les données de paie sont complètes",
        "Contactez l'administrateur si le problème persiste",
    ],
    ErrorCode.STORAGE_SPACE_INSUFFICIENT: [
        "Contactez immédiatement l'administrateur système",
        "Archivez ou supprimez les anciens documents si possible",
    ],
    ErrorCode.TIMEOUT_EXCEEDED: [
        "Réessayez avec moins de documents à la fois",
        "Attendez quelques minutes avant de réessayer",
    ],
    ErrorCode.UNAUTHORIZED_STATUS_CHANGE: [
        "Contactez votre superviseur pour obtenir les autorisations",
        "Vérifiez que vous êtes connecté avec le bon compte",
    ],
    ErrorCode.DOCUMENT_ALREADY_EXISTS: [
        "Utilisez l'option de régénération pour créer une nouvelle version",
    ],
}

DEFAULT_SUGGESTED_ACTIONS = ["Contactez le support technique si le problème persiste"]

# Categories whose internal detail is never returned to callers
SANITIZED_CATEGORIES = (ErrorCategory.SYSTEM, ErrorCategory.SECURITY, ErrorCategory.PERFORMANCE)


# =============================================================================
# CONTEXT & RECOVERY
# =============================================================================

@dataclass
class ErrorContext:
    """Where and for whom an error happened."""
    operation: Optional[str] = None
    component: Optional[str] = None
    user_id: Optional[str] = None
    document_id: Optional[str] = None
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    environment: str = field(default_factory=lambda: os.environ.get("ENVIRONMENT", "development"))
    additional_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "component": self.component,
            "user_id": self.user_id,
            "document_id": self.document_id,
            "request_id": self.request_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "environment": self.environment,
            "additional_data": self.additional_data,
        }


@dataclass
class RecoveryAction:
    """A recovery step attached to an error. Only `automated` actions with an `execute` callback run on their own."""
    strategy: RecoveryStrategy
    description: str
    max_attempts: Optional[int] = None
    delay_ms: Optional[int] = None
    escalation_level: Optional[ErrorSeverity] = None
    automated: bool = False
    execute: Optional[Callable[[], Awaitable[bool]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "description": self.description,
            "max_attempts": self.max_attempts,
            "delay_ms": self.delay_ms,
            "escalation_level": self.escalation_level.value if self.escalation_level else None,
            "automated": self.automated,
        }


def default_recovery_actions(code: ErrorCode) -> List[RecoveryAction]:
    """Recovery plan for an error code."""
    if code == ErrorCode.PDF_GENERATION_FAILED:
        return [
            RecoveryAction(RecoveryStrategy.RETRY, "Retry PDF generation", max_attempts=3, delay_ms=1000, automated=True),
            RecoveryAction(RecoveryStrategy.FALLBACK, "Use simplified template", automated=True),
            RecoveryAction(RecoveryStrategy.MANUAL_INTERVENTION, "Contact system administrator",
                           escalation_level=ErrorSeverity.HIGH),
        ]
    if code == ErrorCode.STORAGE_WRITE_FAILED:
        return [
            RecoveryAction(RecoveryStrategy.RETRY, "Retry storage write", max_attempts=2, delay_ms=2000, automated=True),
            RecoveryAction(RecoveryStrategy.FALLBACK, "Use alternative storage provider", automated=True),
        ]
    if code == ErrorCode.DATABASE_CONNECTION_FAILED:
        return [
            RecoveryAction(RecoveryStrategy.RETRY, "Retry database connection", max_attempts=5, delay_ms=5000, automated=True),
            RecoveryAction(RecoveryStrategy.MANUAL_INTERVENTION, "Check database server status",
                           escalation_level=ErrorSeverity.CRITICAL),
        ]
    if code == ErrorCode.TIMEOUT_EXCEEDED:
        return [
            RecoveryAction(RecoveryStrategy.RETRY, "Retry with backoff", max_attempts=3, delay_ms=5000, automated=True),
        ]
    if code == ErrorCode.INVALID_PAYROLL_DATA:
        return [
            RecoveryAction(RecoveryStrategy.MANUAL_INTERVENTION, "Review payroll calculations"),
        ]
    return [RecoveryAction(RecoveryStrategy.MANUAL_INTERVENTION, "Manual review required")]


# =============================================================================
# WORKFLOW ERROR
# =============================================================================

class WorkflowError(Exception):
    """Structured engine error. Severity, category and retryable come from the code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[ErrorContext] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.details = details or {}
        self.context = context or ErrorContext()
        self.recovery_actions = recovery_actions if recovery_actions is not None else default_recovery_actions(self.code)
        self.cause = cause
        self.error_id = f"err_{uuid.uuid4().hex[:12]}"
        # Set by ErrorHandler.handle so an error bubbling through several layers is counted once
        self.handled = False

    @property
    def severity(self) -> ErrorSeverity:
        return ERROR_CLASSIFICATION[self.code][0]

    @property
    def category(self) -> ErrorCategory:
        return ERROR_CLASSIFICATION[self.code][1]

    @property
    def retryable(self) -> bool:
        return ERROR_CLASSIFICATION[self.code][2]

    @property
    def http_status(self) -> int:
        return ERROR_CLASSIFICATION[self.code][3]

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, self.message)

    @property
    def suggested_actions(self) -> List[str]:
        return SUGGESTED_ACTIONS.get(self.code, DEFAULT_SUGGESTED_ACTIONS)

    @property
    def stack_trace(self) -> Optional[str]:
        source = self.cause or self
        if source.__traceback__ is None:
            return None
        return "".join(traceback.format_exception(type(source), source, source.__traceback__))

    def with_context(self, **kwargs) -> "WorkflowError":
        """Fill in context fields that are still empty."""
        for key, value in kwargs.items():
            if value is not None and getattr(self.context, key, None) is None:
                setattr(self.context, key, value)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "details": self.details,
            "suggested_actions": self.suggested_actions,
            "recovery_actions": [a.to_dict() for a in self.recovery_actions],
            "context": self.context.to_dict(),
        }

    def to_client_dict(self) -> Dict[str, Any]:
        """Caller-facing form. System, security and performance detail stays internal."""
        if self.category in SANITIZED_CATEGORIES:
            return {
                "code": self.code.value,
                "message": self.user_message,
                "retryable": self.retryable,
                "request_id": self.context.request_id or self.error_id,
                "timestamp": self.context.timestamp,
            }
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "category": self.category.value,
            "retryable": self.retryable,
            "details": self.details,
            "suggested_actions": self.suggested_actions,
            "request_id": self.context.request_id or self.error_id,
            "timestamp": self.context.timestamp,
        }

    def to_audit_error_details(self) -> Dict[str, Any]:
        """Shape stored in StatusChangeAuditRecord.error_details."""
        return {
            "error_type": self.code.value,
            "error_message": self.message,
            "stack_trace": self.stack_trace,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"WorkflowError({self.code.value}, {self.message!r})"


# =============================================================================
# FACTORY HELPERS
# =============================================================================

def invalid_employee_data(errors: List[str], context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.INVALID_EMPLOYEE_DATA,
        f"Invalid employee data: {', '.join(errors)}",
        details={"errors": errors},
        context=context,
    )


def invalid_payroll_data(errors: List[str], context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.INVALID_PAYROLL_DATA,
        f"Invalid payroll data: {', '.join(errors)}",
        details={"errors": errors},
        context=context,
    )


def missing_required_fields(fields: List[str], received: Optional[List[str]] = None,
                            context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.MISSING_REQUIRED_FIELDS,
        f"Missing required fields: {', '.join(fields)}",
        details={"field": fields, "expected": fields, "received": received or []},
        context=context,
    )


def pdf_generation_failed(reason: str, context: Optional[ErrorContext] = None,
                          cause: Optional[BaseException] = None, **details) -> WorkflowError:
    return WorkflowError(
        ErrorCode.PDF_GENERATION_FAILED,
        f"PDF generation failed: {reason}",
        details={"reason": reason, **details},
        context=context,
        cause=cause,
    )


def storage_write_failed(path: str, reason: str, context: Optional[ErrorContext] = None,
                         cause: Optional[BaseException] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.STORAGE_WRITE_FAILED,
        f"Failed to write {path}: {reason}",
        details={"path": path, "reason": reason},
        context=context,
        cause=cause,
    )


def invalid_status_transition(from_status: str, to_status: str, allowed: List[str],
                              context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.INVALID_STATUS_TRANSITION,
        f"Transition from {from_status} to {to_status} is not allowed",
        details={
            "field": "target_status",
            "from_status": from_status,
            "to_status": to_status,
            "expected": allowed,
            "received": to_status,
            "allowed_transitions": allowed,
        },
        context=context,
    )


def current_status_unknown(document_id: str, status: Any = None,
                           context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.CURRENT_STATUS_UNKNOWN,
        f"Current status of document {document_id} is unknown ({status!r})",
        details={"document_id": document_id, "received": status},
        context=context,
    )


def document_not_found(document_id: str, context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.DOCUMENT_NOT_FOUND,
        f"Document {document_id} not found",
        details={"document_id": document_id},
        context=context,
    )


def document_already_exists(existing: Dict[str, Any], context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.DOCUMENT_ALREADY_EXISTS,
        f"Document already exists: {existing.get('document_id')}",
        details={
            "existing_document_id": existing.get("document_id"),
            "status": existing.get("status"),
            "version": existing.get("version", 1),
            "hint": "set force_regenerate to create a new version",
        },
        context=context,
    )


def timeout_exceeded(operation: str, timeout_ms: float, context: Optional[ErrorContext] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.TIMEOUT_EXCEEDED,
        f"Operation '{operation}' exceeded timeout of {int(timeout_ms)}ms",
        details={"operation": operation, "timeout_ms": int(timeout_ms)},
        context=context,
    )


def database_connection_failed(reason: str, context: Optional[ErrorContext] = None,
                               cause: Optional[BaseException] = None) -> WorkflowError:
    return WorkflowError(
        ErrorCode.DATABASE_CONNECTION_FAILED,
        f"Database operation failed: {reason}",
        details={"reason": reason},
        context=context,
        cause=cause,
    )


def from_exception(exc: BaseException, context: Optional[ErrorContext] = None,
                   code: ErrorCode = ErrorCode.INTERNAL_ERROR) -> WorkflowError:
    """Wrap any exception into a WorkflowError (WorkflowErrors pass through)."""
    if isinstance(exc, WorkflowError):
        if context is not None:
            exc.with_context(**{k: v for k, v in context.to_dict().items()
                                if k not in ("timestamp", "environment", "additional_data")})
        return exc
    if isinstance(exc, MemoryError):
        code = ErrorCode.MEMORY_INSUFFICIENT
    elif isinstance(exc, PermissionError):
        code = ErrorCode.STORAGE_PERMISSION_DENIED
    return WorkflowError(
        code,
        f"{type(exc).__name__}: {exc}",
        details={"exception_type": type(exc).__name__},
        context=context,
        cause=exc,
    )


async def guarded_call(
    operation: str,
    awaitable: Awaitable[Any],
    timeout_seconds: float,
    context: Optional[ErrorContext] = None,
    wrap: Callable[..., WorkflowError] = database_connection_failed,
) -> Any:
    """
    Await a dependency call under a timeout.

    A timeout becomes TIMEOUT_EXCEEDED; WorkflowErrors pass through; anything
    else is wrapped with `wrap(reason, context, cause=...)`.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise timeout_exceeded(operation, timeout_seconds * 1000, context)
    except WorkflowError:
        raise
    except Exception as e:
        raise wrap(f"{operation}: {e}", context, cause=e)
