"""
Shared fixtures: a fully wired in-memory hub (repositories, storage, renderer)
so service and route tests never need MongoDB or a filesystem.
"""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from payroll_hub.services.alerts import AlertNotifier
from payroll_hub.services.audit_trail import AuditTrail
from payroll_hub.services.batch import BatchOrchestrator
from payroll_hub.services.documents import DocumentLibrary
from payroll_hub.services.employees import InMemoryEmployeeDirectory
from payroll_hub.services.error_handler import ErrorHandler
from payroll_hub.services.generation import DocumentGenerationPipeline
from payroll_hub.services.health import HealthReporter
from payroll_hub.services.repository import InMemoryRepository
from payroll_hub.services.status_service import DocumentStatusService
from payroll_hub.services.storage import InMemoryStorage


EMPLOYEES = [
    {
        "employee_id": "EMP001",
        "employee_code": "E001",
        "name": "Fatima Zahra Alaoui",
        "department": "Finance",
        "branch_id": "CASA",
        "status": "active",
        "cnss_number": "123456789",
        "rib": "011780000012345678901234",
    },
    {
        "employee_id": "EMP002",
        "employee_code": "E002",
        "name": "Youssef Benali",
        "department": "Operations",
        "branch_id": "RABAT",
        "status": "active",
    },
    {
        "employee_id": "EMP003",
        "employee_code": "E003",
        "name": "Karim Idrissi",
        "status": "inactive",
    },
]

PAYSLIP = {
    "base_salary": 15000.0,
    "gross_salary": 15000.0,
    "total_allowances": 0.0,
    "total_deductions": 462.32,
    "cnss_employee": 268.80,
    "cnss_employer": 3224.40,
    "income_tax": 193.52,
    "net_salary": 14537.68,
}


async def _no_sleep(_seconds):
    return None


def build_hub(max_concurrent=5, retry_attempts=3, batch_kwargs=None, renderer=None,
              storage=None, generation_timeout=120.0):
    documents = InMemoryRepository("document_id")
    audits = InMemoryRepository("audit_id")
    tasks = InMemoryRepository("task_id")
    notifier = AlertNotifier(webhook_url=None)
    error_handler = ErrorHandler(notifier)
    audit_trail = AuditTrail(audits)
    status_service = DocumentStatusService(documents, audit_trail, error_handler)
    storage = storage or InMemoryStorage()
    employees = InMemoryEmployeeDirectory([dict(e) for e in EMPLOYEES])
    pipeline = DocumentGenerationPipeline(
        documents,
        status_service,
        employees,
        storage,
        renderer=renderer,
        tasks=tasks,
        error_handler=error_handler,
        max_concurrent=max_concurrent,
        generation_timeout=generation_timeout,
        retry_attempts=retry_attempts,
        retry_delay=0.0,
        sleep=_no_sleep,
    )
    batch = BatchOrchestrator(documents, status_service, storage=storage, pipeline=pipeline,
                              **(batch_kwargs or {}))
    library = DocumentLibrary(documents, storage)
    health = HealthReporter(documents, storage, status_service, pipeline=pipeline, library=library,
                            error_handler=error_handler, notifier=notifier, cache_ttl_seconds=0)
    return SimpleNamespace(
        documents=documents,
        audits=audits,
        tasks=tasks,
        notifier=notifier,
        error_handler=error_handler,
        audit_trail=audit_trail,
        status_service=status_service,
        storage=storage,
        employees=employees,
        pipeline=pipeline,
        batch=batch,
        library=library,
        health=health,
    )


@pytest.fixture
def hub():
    return build_hub()


@pytest.fixture
def make_hub():
    return build_hub


@pytest.fixture
def payslip():
    return dict(PAYSLIP)


@pytest.fixture
def make_document(hub):
    """Insert a bare document directly in the store (bypassing generation)."""

    async def _make(document_id, status, **fields):
        now = datetime.now(timezone.utc).isoformat()
        document = {
            "document_id": document_id,
            "document_type": "BULLETIN_PAIE",
            "employee_id": "EMP001",
            "period_year": 2024,
            "period_month": 1,
            "status": status,
            "file_info": None,
            "approval_info": None,
            "distribution_info": None,
            "error_info": None,
            "generation_info": None,
            "version": 1,
            "is_latest_version": True,
            "is_preview": False,
            "is_deleted": False,
            "tags": ["bulletin_paie", "final"],
            "created_at": now,
            "updated_at": now,
        }
        document.update(fields)
        await hub.documents.insert(document)
        return document

    return _make
