"""
Tests for the employee, payroll and transition validators.
"""
import pytest

from payroll_hub.services.errors import ErrorCode, WorkflowError
from payroll_hub.services.status_rules import DocumentType
from payroll_hub.services.validators import (
    validate_employee_data, validate_payroll_data, validate_status_transition,
)

from conftest import EMPLOYEES, PAYSLIP


def _employee(index=0, **overrides):
    employee = dict(EMPLOYEES[index])
    employee.update(overrides)
    return employee


class TestEmployeeValidation:

    def test_active_employee_passes(self):
        validate_employee_data(_employee(), DocumentType.BULLETIN_PAIE)

    def test_missing_record(self):
        with pytest.raises(WorkflowError) as exc:
            validate_employee_data(None, DocumentType.BULLETIN_PAIE)
        assert exc.value.code == ErrorCode.INVALID_EMPLOYEE_DATA

    def test_inactive_employee_rejected(self):
        with pytest.raises(WorkflowError) as exc:
            validate_employee_data(_employee(2), DocumentType.BULLETIN_PAIE)
        assert "employee is not active" in exc.value.details["errors"]

    def test_lists_every_problem(self):
        with pytest.raises(WorkflowError) as exc:
            validate_employee_data({"employee_id": "", "status": "terminated"}, DocumentType.BULLETIN_PAIE)
        assert len(exc.value.details["errors"]) == 3

    def test_transfer_order_needs_bank_details(self):
        validate_employee_data(_employee(), DocumentType.ORDRE_VIREMENT)
        with pytest.raises(WorkflowError) as exc:
            validate_employee_data(_employee(1), DocumentType.ORDRE_VIREMENT)
        assert "bank_account or rib" in exc.value.message

    def test_cnss_declaration_needs_cnss_number(self):
        validate_employee_data(_employee(), DocumentType.CNSS_DECLARATION)
        with pytest.raises(WorkflowError):
            validate_employee_data(_employee(1), DocumentType.CNSS_DECLARATION)


class TestPayrollValidation:

    def test_valid_payslip(self):
        validate_payroll_data(dict(PAYSLIP), DocumentType.BULLETIN_PAIE)

    def test_no_payroll(self):
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data({}, DocumentType.BULLETIN_PAIE)
        assert exc.value.code == ErrorCode.MISSING_REQUIRED_FIELDS

    def test_missing_figures(self):
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data({"gross_salary": 1000}, DocumentType.SALARY_CERTIFICATE)
        assert exc.value.code == ErrorCode.INVALID_PAYROLL_DATA
        assert exc.value.details["missing_fields"] == ["net_salary", "total_deductions"]

    def test_net_cannot_exceed_gross(self):
        payroll = dict(PAYSLIP, net_salary=20000.0)
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data(payroll, DocumentType.BULLETIN_PAIE)
        assert "net_salary cannot exceed gross_salary" in exc.value.details["errors"]

    def test_negative_amounts(self):
        payroll = dict(PAYSLIP, total_deductions=-5)
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data(payroll, DocumentType.SALARY_CERTIFICATE)
        assert "total_deductions must be non-negative" in exc.value.details["errors"]

    def test_non_numeric_amounts(self):
        payroll = dict(PAYSLIP, gross_salary="15000")
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data(payroll, DocumentType.SALARY_CERTIFICATE)
        assert "gross_salary must be a number" in exc.value.details["errors"]

    def test_payslip_requires_cnss_contributions(self):
        payroll = dict(PAYSLIP, cnss_employer=0)
        with pytest.raises(WorkflowError) as exc:
            validate_payroll_data(payroll, DocumentType.BULLETIN_PAIE)
        assert exc.value.details["errors"] == ["cnss_employer must be greater than zero for BULLETIN_PAIE"]

    def test_cnss_rule_only_applies_to_payslips(self):
        payroll = dict(PAYSLIP, cnss_employee=0, cnss_employer=0)
        validate_payroll_data(payroll, DocumentType.SALARY_CERTIFICATE)

    def test_transfer_order_needs_positive_net(self):
        payroll = dict(PAYSLIP, net_salary=0)
        with pytest.raises(WorkflowError):
            validate_payroll_data(payroll, DocumentType.ORDRE_VIREMENT)


class TestTransitionValidation:

    def test_allowed_edge(self):
        validate_status_transition("GENERATED", "APPROVED")

    def test_illegal_edge_lists_allowed_targets(self):
        with pytest.raises(WorkflowError) as exc:
            validate_status_transition("SENT", "GENERATED")
        assert exc.value.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert exc.value.details["allowed_transitions"] == ["ARCHIVED"]

    def test_force_skips_graph(self):
        validate_status_transition("SENT", "GENERATED", force=True)

    def test_force_never_allows_self_loop(self):
        with pytest.raises(WorkflowError):
            validate_status_transition("GENERATED", "GENERATED", force=True)

    def test_unknown_target(self):
        with pytest.raises(WorkflowError) as exc:
            validate_status_transition("GENERATED", "PUBLISHED", force=True)
        assert exc.value.details["received"] == "PUBLISHED"
