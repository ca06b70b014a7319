"""
Payroll Document Hub - Input Validators

Validation gate run before any document is created. Each validator raises a
WorkflowError listing every problem found, not just the first one.
"""

from numbers import Number
from typing import Any, Dict, List, Optional

from .errors import (
    ErrorCode, ErrorContext, WorkflowError, invalid_employee_data, invalid_payroll_data,
    invalid_status_transition, missing_required_fields,
)
from .status_rules import DocumentType, coerce_status, get_allowed_transitions, is_valid_transition

PAYROLL_REQUIRED_FIELDS = ["gross_salary", "net_salary", "total_deductions"]

# Monetary fields that must never be negative when present
MONETARY_FIELDS = [
    "gross_salary", "net_salary", "base_salary", "total_deductions", "total_allowances",
    "cnss_employee", "cnss_employer", "income_tax",
]


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def validate_employee_data(employee: Optional[Dict[str, Any]], document_type: DocumentType,
                           context: Optional[ErrorContext] = None) -> None:
    """Employee must be active and carry the fields the document type needs."""
    if not employee:
        raise invalid_employee_data(["employee record missing"], context)

    errors: List[str] = []
    if not employee.get("employee_id"):
        errors.append("employee_id is required")
    if not employee.get("name"):
        errors.append("name is required")
    if employee.get("status", "active") != "active" or employee.get("is_archived"):
        errors.append("employee is not active")

    if document_type == DocumentType.ORDRE_VIREMENT:
        if not employee.get("bank_account") and not employee.get("rib"):
            errors.append("bank_account or rib is required for ORDRE_VIREMENT")
    elif document_type == DocumentType.CNSS_DECLARATION:
        if not employee.get("cnss_number"):
            errors.append("cnss_number is required for CNSS_DECLARATION")

    if errors:
        raise invalid_employee_data(errors, context)


def validate_payroll_data(payroll: Optional[Dict[str, Any]], document_type: DocumentType,
                          context: Optional[ErrorContext] = None) -> None:
    """Figures must be non-negative numbers with net <= gross."""
    if not payroll:
        raise missing_required_fields(PAYROLL_REQUIRED_FIELDS, [], context)

    missing = [f for f in PAYROLL_REQUIRED_FIELDS if payroll.get(f) is None]
    if missing:
        error = invalid_payroll_data([f"{f} is required" for f in missing], context)
        error.details["missing_fields"] = missing
        raise error

    errors: List[str] = []
    for name in MONETARY_FIELDS:
        value = payroll.get(name)
        if value is None:
            continue
        if not _is_number(value):
            errors.append(f"{name} must be a number")
        elif value < 0:
            errors.append(f"{name} must be non-negative")

    gross = payroll.get("gross_salary")
    net = payroll.get("net_salary")
    if _is_number(gross) and _is_number(net) and net > gross:
        errors.append("net_salary cannot exceed gross_salary")

    if document_type == DocumentType.BULLETIN_PAIE:
        for name in ("cnss_employee", "cnss_employer"):
            value = payroll.get(name)
            if not _is_number(value) or value <= 0:
                errors.append(f"{name} must be greater than zero for BULLETIN_PAIE")
        income_tax = payroll.get("income_tax", 0)
        if not _is_number(income_tax) or income_tax < 0:
            errors.append("income_tax must be non-negative for BULLETIN_PAIE")
    elif document_type == DocumentType.ORDRE_VIREMENT:
        if _is_number(net) and net <= 0:
            errors.append("net_salary must be greater than zero for ORDRE_VIREMENT")

    if errors:
        raise invalid_payroll_data(list(dict.fromkeys(errors)), context)


def validate_status_transition(from_status: Any, to_status: Any, force: bool = False,
                               context: Optional[ErrorContext] = None) -> None:
    """Graph check. `force` skips the edge lookup but never allows a self-loop."""
    current = coerce_status(from_status)
    target = coerce_status(to_status)
    if target is None:
        raise WorkflowError(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Unknown target status {to_status!r}",
            details={"field": "target_status", "received": to_status},
            context=context,
        )
    allowed = [s.value for s in get_allowed_transitions(current)]
    if current == target:
        raise invalid_status_transition(current.value, target.value, allowed, context)
    if not force and not is_valid_transition(current, target):
        raise invalid_status_transition(
            current.value if current else str(from_status), target.value, allowed, context
        )
