"""
Payroll Document Hub - Document Generation Pipeline

Creates payroll documents (final or preview) and produces their PDF.

Flow for a final document:
1. Validate document type, employee and payroll figures (nothing is created
   on failure)
2. Apply the duplicate policy and reserve the next version of the lineage
3. Admission control:
   - capacity free: create in CALCULATION_PENDING, move to GENERATING and
     render synchronously
   - no capacity: persist a GENERATING placeholder and enqueue a task
4. Render, validate the PDF bytes, store them
5. Transition to GENERATED (then APPROVED when approval info was supplied),
   or to GENERATION_FAILED on any error

Status changes always go through DocumentStatusService so every step has its
own audit record.
"""

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil.parser import isoparse

from ..config import DEPENDENCY_TIMEOUT_SECONDS, GENERATION_QUEUE, PREVIEW_CONFIG
from .error_handler import ErrorHandler
from .errors import (
    ErrorCode, ErrorContext, WorkflowError, document_already_exists, document_not_found,
    from_exception, guarded_call, pdf_generation_failed,
)
from .documents import soft_delete_document
from .employees import EmployeeDirectory
from .models import ApprovalInfo, GenerationInfo, PreviewInfo, SalaryData
from .pdf_renderer import GenerationConfig, PdfRenderer, SimplePdfRenderer, validate_pdf
from .repository import Repository
from .status_rules import (
    DocumentStatus, DocumentType, GenerationMode, ProcessingPriority, TransitionTrigger,
    coerce_document_type, get_final_statuses,
)
from .status_service import DocumentStatusService, TransitionContext
from .storage import BlobStorage
from .task_queue import ACTIVE_STATES, AdmissionController, QueuedTask, TaskQueue
from .validators import validate_employee_data, validate_payroll_data

logger = logging.getLogger(__name__)


MONTH_NAMES = [
    "Janvier", "Février", "Mars", "Avril", "Mai", "Juin",
    "Juillet", "Août", "Septembre", "Octobre", "Novembre", "Décembre",
]


def build_period_label(year: int, month: Optional[int] = None) -> str:
    if month:
        return f"{MONTH_NAMES[int(month) - 1]} {year}"
    return f"Année {year}"


# =============================================================================
# REQUEST / RESULT
# =============================================================================

@dataclass
class GenerationRequest:
    employee_id: str
    document_type: str
    period_year: int
    period_month: Optional[int] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    payroll: Dict[str, Any] = field(default_factory=dict)
    mode: GenerationMode = GenerationMode.FINAL
    priority: ProcessingPriority = ProcessingPriority.NORMAL
    force_regenerate: bool = False
    approval_info: Optional[Dict[str, Any]] = None
    tags: List[str] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    branch_id: Optional[str] = None
    requested_by: str = "system"
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "document_type": self.document_type,
            "period_year": self.period_year,
            "period_month": self.period_month,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "payroll": dict(self.payroll),
            "mode": self.mode.value,
            "priority": self.priority.value,
            "force_regenerate": self.force_regenerate,
            "approval_info": self.approval_info,
            "tags": list(self.tags),
            "config": dict(self.config),
            "branch_id": self.branch_id,
            "requested_by": self.requested_by,
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRequest":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        if values.get("mode") is not None:
            values["mode"] = GenerationMode(str(values["mode"]).upper())
        if values.get("priority") is not None:
            values["priority"] = ProcessingPriority(str(values["priority"]).upper())
        return cls(**values)


@dataclass
class GenerationResult:
    success: bool
    document_id: Optional[str] = None
    status: Optional[str] = None
    processing_time_ms: float = 0.0
    file_metadata: Optional[Dict[str, Any]] = None
    queued: bool = False
    queue_position: Optional[int] = None
    version: Optional[int] = None
    cached: bool = False
    error: Optional[WorkflowError] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self, client: bool = True) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "document_id": self.document_id,
            "status": self.status,
            "processing_time_ms": self.processing_time_ms,
            "file_metadata": self.file_metadata,
            "queued": self.queued,
            "queue_position": self.queue_position,
            "version": self.version,
            "cached": self.cached,
            "warnings": self.warnings,
        }
        if self.error is not None:
            result["error"] = self.error.to_client_dict() if client else self.error.to_dict()
        return result


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


# =============================================================================
# PIPELINE
# =============================================================================

class DocumentGenerationPipeline:
    """Validates, versions, renders and stores payroll documents."""

    def __init__(
        self,
        documents: Repository,
        status_service: DocumentStatusService,
        employees: EmployeeDirectory,
        storage: BlobStorage,
        renderer: Optional[PdfRenderer] = None,
        tasks: Optional[Repository] = None,
        error_handler: Optional[ErrorHandler] = None,
        max_concurrent: int = GENERATION_QUEUE["max_concurrent"],
        generation_timeout: float = GENERATION_QUEUE["timeout_ms"] / 1000,
        timeout_seconds: float = DEPENDENCY_TIMEOUT_SECONDS,
        retry_attempts: int = GENERATION_QUEUE["retry_attempts"],
        retry_delay: float = GENERATION_QUEUE["retry_delay_ms"] / 1000,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.documents = documents
        self.status_service = status_service
        self.employees = employees
        self.storage = storage
        self.renderer = renderer or SimplePdfRenderer()
        self.error_handler = error_handler or status_service.error_handler
        self.generation_timeout = generation_timeout
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.admission = AdmissionController(max_concurrent)
        self.queue = TaskQueue(
            self._run_queued,
            self.admission,
            repository=tasks,
            on_dead_letter=self._on_dead_letter,
            max_attempts=retry_attempts,
            retry_delay=retry_delay,
            sleep=sleep,
        )
        self._lineage_locks: "weakref.WeakValueDictionary[Tuple, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._last_id_ms = 0

    # ----------------------------------------------------------------- helpers

    async def _call(self, operation: str, awaitable, context: ErrorContext, timeout: Optional[float] = None,
                    wrap=None):
        kwargs = {"wrap": wrap} if wrap else {}
        return await guarded_call(operation, awaitable, timeout or self.timeout_seconds, context, **kwargs)

    def _now(self) -> datetime:
        return self._clock()

    def _next_timestamp_ms(self) -> int:
        # Strictly increasing so two documents never share an id
        now_ms = int(self._now().timestamp() * 1000)
        self._last_id_ms = max(now_ms, self._last_id_ms + 1)
        return self._last_id_ms

    def _lineage_lock(self, key: Tuple) -> asyncio.Lock:
        lock = self._lineage_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._lineage_locks[key] = lock
        return lock

    def _build_document_id(self, doc_type: DocumentType, employee: Dict[str, Any], request: GenerationRequest,
                           preview: bool = False) -> str:
        code = employee.get("employee_code") or employee.get("employee_id")
        parts = [doc_type.value, str(code), str(request.period_year)]
        if request.period_month:
            parts.append(f"{int(request.period_month):02d}")
        parts.append(str(self._next_timestamp_ms()))
        document_id = "_".join(parts)
        return f"PREVIEW_{document_id}" if preview else document_id

    def _transition_context(self, request: GenerationRequest, trigger: TransitionTrigger, reason: str,
                            **kwargs) -> TransitionContext:
        return TransitionContext(
            user_id=request.requested_by,
            trigger=trigger,
            reason=reason,
            request_id=request.request_id,
            **kwargs,
        )

    # -------------------------------------------------------------- validation

    async def _validate(self, request: GenerationRequest, context: ErrorContext) -> Tuple[DocumentType, Dict[str, Any]]:
        doc_type = coerce_document_type(request.document_type)
        if doc_type is None:
            raise WorkflowError(
                ErrorCode.INVALID_DOCUMENT_TYPE,
                f"Unknown document type {request.document_type!r}",
                details={"field": "document_type", "expected": [t.value for t in DocumentType],
                         "received": request.document_type},
                context=context,
            )
        if request.period_month is not None and not 1 <= int(request.period_month) <= 12:
            raise WorkflowError(
                ErrorCode.INVALID_PAYROLL_DATA,
                f"Invalid period month {request.period_month}",
                details={"field": "period_month", "expected": "1-12", "received": request.period_month},
                context=context,
            )

        employee = await self._call("load_employee", self.employees.get_employee(request.employee_id), context)
        if employee is None:
            raise WorkflowError(
                ErrorCode.EMPLOYEE_NOT_FOUND,
                f"Employee {request.employee_id} not found",
                details={"field": "employee_id", "received": request.employee_id},
                context=context,
            )
        validate_employee_data(employee, doc_type, context)
        validate_payroll_data(request.payroll, doc_type, context)
        return doc_type, employee

    # ---------------------------------------------------------------- versions

    def _lineage_query(self, request: GenerationRequest, doc_type: DocumentType) -> Dict[str, Any]:
        return {
            "employee_id": request.employee_id,
            "document_type": doc_type.value,
            "period_year": request.period_year,
            "period_month": request.period_month,
            "is_preview": {"$ne": True},
            "is_deleted": {"$ne": True},
        }

    def _build_document(self, request, doc_type, employee, document_id, status, config,
                        version=1, parent=None, queued=False) -> Dict[str, Any]:
        now = self._now().isoformat()
        tags = [doc_type.value.lower(), "final"]
        tags += [t for t in request.tags if t not in tags]
        return {
            "document_id": document_id,
            "document_type": doc_type.value,
            "employee_id": request.employee_id,
            "employee_name": employee.get("name"),
            "employee_code": employee.get("employee_code") or employee.get("employee_id"),
            "branch_id": request.branch_id or employee.get("branch_id"),
            "department": employee.get("department"),
            "period_year": request.period_year,
            "period_month": request.period_month,
            "period_label": build_period_label(request.period_year, request.period_month),
            "period_start": request.period_start,
            "period_end": request.period_end,
            "status": status.value,
            "salary_data": SalaryData.from_payroll(request.payroll).to_dict(),
            "file_info": None,
            "generation_info": GenerationInfo(
                mode=config.mode.value,
                quality=config.quality,
                config=config.to_dict(),
                requested_by=request.requested_by,
                requested_at=now,
                queued=queued,
            ).to_dict(),
            "preview_info": None,
            "approval_info": None,
            "distribution_info": None,
            "error_info": None,
            "version": version,
            "parent_document": parent,
            "is_latest_version": True,
            "is_preview": False,
            "is_deleted": False,
            "deleted_by": None,
            "deleted_at": None,
            "tags": tags,
            "category": "payroll",
            "priority": request.priority.value,
            "created_by": request.requested_by,
            "created_at": now,
            "updated_at": now,
        }

    async def _reserve(self, request: GenerationRequest, doc_type: DocumentType, employee: Dict[str, Any],
                       status: DocumentStatus, config: GenerationConfig, context: ErrorContext,
                       queued: bool = False) -> Dict[str, Any]:
        """Apply the duplicate policy and persist the next version of the lineage."""
        key = (request.employee_id, doc_type.value, request.period_year, request.period_month)
        async with self._lineage_lock(key):
            lineage = await self._call(
                "find_lineage",
                self.documents.find(self._lineage_query(request, doc_type), sort=[("version", -1)]),
                context,
            )
            finals = [d for d in lineage if d.get("status") in get_final_statuses()]
            if finals and not request.force_regenerate:
                raise document_already_exists(finals[0], context)

            latest = lineage[0] if lineage else None
            document = self._build_document(
                request, doc_type, employee,
                self._build_document_id(doc_type, employee, request),
                status, config,
                version=(latest.get("version", 1) + 1) if latest else 1,
                parent=latest["document_id"] if latest else None,
                queued=queued,
            )
            await self._call("insert_document", self.documents.insert(document), context)

            # Supersede only once the new version exists
            for prior in lineage:
                if prior.get("is_latest_version", True):
                    await self._call(
                        "supersede_document",
                        self.documents.update(prior["document_id"], {
                            "is_latest_version": False,
                            "updated_at": self._now().isoformat(),
                        }),
                        context,
                    )
            if latest:
                logger.info("Regenerating %s as %s (version %d)",
                            latest["document_id"], document["document_id"], document["version"])
        return document

    # ---------------------------------------------------------------- generate

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Create a final document. Failures are returned, never raised."""
        started = time.perf_counter()
        context = ErrorContext(
            operation="generate_document",
            component="DocumentGenerationPipeline",
            user_id=request.requested_by,
            request_id=request.request_id,
        )
        document = None
        try:
            doc_type, employee = await self._validate(request, context)
            config = GenerationConfig.from_overrides(request.config, mode=GenerationMode.FINAL)

            if not self.admission.has_capacity():
                document = await self._reserve(request, doc_type, employee, DocumentStatus.GENERATING,
                                               config, context, queued=True)
                document_id = document["document_id"]
                await self.queue.enqueue(document_id, {"request": request.to_dict()})
                position = self.queue.position(document_id)
                logger.info("Generation of %s queued at position %d", document_id, position)
                return GenerationResult(
                    success=True,
                    document_id=document_id,
                    status=DocumentStatus.GENERATING.value,
                    processing_time_ms=_elapsed_ms(started),
                    queued=True,
                    queue_position=position,
                    version=document["version"],
                )

            async with self.admission.slot():
                document = await self._reserve(request, doc_type, employee, DocumentStatus.CALCULATION_PENDING,
                                               config, context)
                context.document_id = document["document_id"]
                started_transition = await self.status_service.transition(
                    document["document_id"],
                    DocumentStatus.GENERATING,
                    self._transition_context(request, TransitionTrigger.SYSTEM_EVENT, "generation started"),
                )
                if not started_transition.success:
                    raise started_transition.error
                return await self._produce(document, employee, request, config, context, started)

        except Exception as e:
            error = from_exception(e, context)
            await self.error_handler.handle(error)
            return GenerationResult(
                success=False,
                document_id=document["document_id"] if document else None,
                status=await self._current_status(document),
                processing_time_ms=_elapsed_ms(started),
                version=document["version"] if document else None,
                error=error,
            )

    async def _current_status(self, document: Optional[Dict[str, Any]]) -> Optional[str]:
        if document is None:
            return None
        try:
            current = await self.documents.get(document["document_id"])
        except Exception as e:
            logger.error("Failed to reload %s: %s", document["document_id"], str(e))
            return document.get("status")
        return current.get("status") if current else None

    async def _render_and_store(self, document, employee, payroll, doc_type, config, context,
                                max_size: Optional[int] = None):
        buffer = await self._call(
            "render_pdf",
            self.renderer.render(employee, payroll, document["period_label"], doc_type, config),
            context,
            timeout=self.generation_timeout,
            wrap=pdf_generation_failed,
        )
        validate_pdf(buffer, max_size=max_size)
        return await self._call("store_pdf", self.storage.store(document, buffer), context)

    async def _produce(self, document: Dict[str, Any], employee: Dict[str, Any], request: GenerationRequest,
                       config: GenerationConfig, context: ErrorContext, started: float,
                       retry_count: int = 0) -> GenerationResult:
        """Render and store a GENERATING document, then move it to its final status."""
        document_id = document["document_id"]
        doc_type = DocumentType(document["document_type"])
        try:
            stored = await self._render_and_store(document, employee, request.payroll, doc_type, config, context)
        except Exception as e:
            error = from_exception(e, context)
            failed = await self.status_service.transition(
                document_id,
                DocumentStatus.GENERATION_FAILED,
                self._transition_context(request, TransitionTrigger.ERROR_EVENT, error.message, cause=error),
            )
            if not failed.success:
                logger.critical("Could not record generation failure for %s: %s",
                                document_id, failed.error.message if failed.error else "unknown")
            raise error

        generation_info = GenerationInfo.from_dict(document.get("generation_info"))
        generation_info.processing_time_ms = _elapsed_ms(started)
        generation_info.retry_count = retry_count
        generated = await self.status_service.transition(
            document_id,
            DocumentStatus.GENERATED,
            self._transition_context(
                request, TransitionTrigger.SYSTEM_EVENT, "PDF generated",
                document_updates={"file_info": stored.to_dict(), "generation_info": generation_info.to_dict()},
            ),
        )
        if not generated.success:
            await self._discard_blob(stored.path)
            raise generated.error

        status = generated.new_status
        warnings = list(generated.validation_warnings)
        if request.approval_info:
            approval = ApprovalInfo.from_dict(request.approval_info)
            approved = await self.status_service.transition(
                document_id,
                DocumentStatus.APPROVED,
                TransitionContext(
                    user_id=approval.approved_by or request.requested_by,
                    trigger=TransitionTrigger.USER_ACTION,
                    reason="approved at generation",
                    approval_comments=approval.comments,
                    request_id=request.request_id,
                ),
            )
            if approved.success:
                status = approved.new_status
            else:
                warnings.append(f"Inline approval failed: {approved.error.message}")
                logger.warning("Inline approval of %s failed: %s", document_id, approved.error.message)

        elapsed = _elapsed_ms(started)
        logger.info("Generated %s (%s, %d bytes, %.1fms)", document_id, status, stored.size, elapsed)
        return GenerationResult(
            success=True,
            document_id=document_id,
            status=status,
            processing_time_ms=elapsed,
            file_metadata=stored.to_dict(),
            version=document.get("version", 1),
            warnings=warnings,
        )

    async def _discard_blob(self, path: str) -> None:
        try:
            await self.storage.delete(path)
        except Exception as e:
            logger.error("Failed to delete orphaned file %s: %s", path, str(e))

    # ------------------------------------------------------------------- queue

    async def _run_queued(self, task: QueuedTask) -> Dict[str, Any]:
        request = GenerationRequest.from_dict(task.payload["request"])
        document_id = task.task_id
        context = ErrorContext(
            operation="generate_document_queued",
            component="DocumentGenerationPipeline",
            user_id=request.requested_by,
            document_id=document_id,
            request_id=request.request_id,
            additional_data={"attempt": task.attempts},
        )
        started = time.perf_counter()

        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None or document.get("is_deleted"):
            raise document_not_found(document_id, context)

        if document.get("status") == DocumentStatus.GENERATION_FAILED.value:
            retried = await self.status_service.transition(
                document_id,
                DocumentStatus.GENERATING,
                self._transition_context(request, TransitionTrigger.ERROR_EVENT,
                                         f"retry attempt {task.attempts}/{task.max_attempts}"),
            )
            if not retried.success:
                raise retried.error

        employee = await self._call("load_employee", self.employees.get_employee(request.employee_id), context)
        if employee is None:
            raise WorkflowError(ErrorCode.EMPLOYEE_NOT_FOUND, f"Employee {request.employee_id} not found",
                                details={"field": "employee_id", "received": request.employee_id},
                                context=context)

        config = GenerationConfig.from_overrides(request.config, mode=GenerationMode.FINAL)
        result = await self._produce(document, employee, request, config, context, started,
                                     retry_count=task.attempts - 1)
        return {"document_id": result.document_id, "status": result.status}

    async def _on_dead_letter(self, task: QueuedTask, error: WorkflowError) -> None:
        document_id = task.task_id
        document = await self.documents.get(document_id)
        if document is not None and document.get("status") != DocumentStatus.GENERATION_FAILED.value:
            await self.status_service.transition(
                document_id,
                DocumentStatus.GENERATION_FAILED,
                TransitionContext(user_id="system", trigger=TransitionTrigger.ERROR_EVENT,
                                  reason="generation retries exhausted", cause=error),
            )
        await self.documents.update(document_id, {"error_info.dead_lettered": True})
        await self.error_handler.handle(error)

    async def get_generation_status(self, document_id: str) -> Dict[str, Any]:
        """Document status plus the state of its queued task, if any."""
        context = ErrorContext(operation="get_generation_status", document_id=document_id)
        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None:
            raise document_not_found(document_id, context)

        task = self.queue.get(document_id)
        task_info = task.to_dict() if task else None
        if task_info is None and self.queue.repository is not None:
            task_info = await self._call("load_task", self.queue.repository.get(document_id), context)

        return {
            "document_id": document_id,
            "status": document.get("status"),
            "version": document.get("version", 1),
            "is_latest_version": document.get("is_latest_version", True),
            "is_deleted": document.get("is_deleted", False),
            "file_info": document.get("file_info"),
            "generation_info": document.get("generation_info"),
            "error_info": document.get("error_info"),
            "queued": bool(task and task.state in ACTIVE_STATES),
            "queue_position": self.queue.position(document_id) or None,
            "task": task_info,
        }

    async def cancel_generation(self, document_id: str, actor_id: str) -> Dict[str, Any]:
        """Cancel a queued generation that has not started yet."""
        context = ErrorContext(operation="cancel_generation", user_id=actor_id, document_id=document_id)
        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None or document.get("is_deleted"):
            raise document_not_found(document_id, context)

        task = self.queue.get(document_id)
        if task is None or not await self.queue.cancel(document_id):
            raise WorkflowError(
                ErrorCode.OPERATION_NOT_CANCELLABLE,
                f"Generation of {document_id} is not queued",
                details={"document_id": document_id, "task_state": task.state.value if task else None},
                context=context,
            )

        result = await self.status_service.transition(
            document_id,
            DocumentStatus.GENERATION_FAILED,
            TransitionContext(user_id=actor_id, trigger=TransitionTrigger.USER_ACTION, reason="cancelled"),
        )
        await soft_delete_document(self.documents, document, actor_id, self._now().isoformat(),
                                   self.timeout_seconds, context)

        logger.info("Generation of %s cancelled by %s", document_id, actor_id)
        return {
            "success": True,
            "document_id": document_id,
            "status": result.new_status,
            "task_state": task.state.value,
        }

    def queue_stats(self) -> Dict[str, Any]:
        return self.queue.stats()

    # ----------------------------------------------------------------- preview

    async def generate_preview(self, request: GenerationRequest) -> GenerationResult:
        """Watermarked, reduced PDF that expires after PREVIEW_CONFIG["expiry_minutes"]."""
        started = time.perf_counter()
        context = ErrorContext(
            operation="generate_preview",
            component="DocumentGenerationPipeline",
            user_id=request.requested_by,
            request_id=request.request_id,
        )
        document = None
        try:
            doc_type, employee = await self._validate(request, context)
            now = self._now()

            cached = await self._call("find_preview", self.documents.find_one({
                "employee_id": request.employee_id,
                "document_type": doc_type.value,
                "period_year": request.period_year,
                "period_month": request.period_month,
                "is_preview": True,
                "is_deleted": {"$ne": True},
                "status": DocumentStatus.PREVIEW_GENERATED.value,
                "preview_info.expires_at": {"$gt": now.isoformat()},
            }, sort=[("created_at", -1)]), context)
            if cached is not None:
                return GenerationResult(
                    success=True,
                    document_id=cached["document_id"],
                    status=cached["status"],
                    processing_time_ms=_elapsed_ms(started),
                    file_metadata=cached.get("file_info"),
                    version=cached.get("version", 1),
                    cached=True,
                )

            config = GenerationConfig.from_overrides(
                request.config,
                mode=GenerationMode.PREVIEW,
                quality="medium",
                include_digital_signature=False,
                watermark_text=PREVIEW_CONFIG["watermark_text"],
                reduced_sections=PREVIEW_CONFIG["reduced_sections"],
            )
            document = self._build_document(
                request, doc_type, employee,
                self._build_document_id(doc_type, employee, request, preview=True),
                DocumentStatus.CALCULATION_PENDING, config,
            )
            document.update({
                "is_preview": True,
                "is_latest_version": False,
                "tags": [doc_type.value.lower(), "preview"],
                "preview_info": PreviewInfo(
                    expires_at=(now + timedelta(minutes=PREVIEW_CONFIG["expiry_minutes"])).isoformat(),
                    watermark_text=config.watermark_text,
                    reduced_sections=config.reduced_sections,
                ).to_dict(),
            })
            await self._call("insert_document", self.documents.insert(document), context)
            context.document_id = document["document_id"]

            requested = await self.status_service.transition(
                document["document_id"],
                DocumentStatus.PREVIEW_REQUESTED,
                self._transition_context(request, TransitionTrigger.USER_ACTION, "preview requested"),
            )
            if not requested.success:
                raise requested.error

            try:
                async with self.admission.slot():
                    stored = await self._render_and_store(
                        document, employee, request.payroll, doc_type, config, context,
                        max_size=PREVIEW_CONFIG["max_file_size"],
                    )
            except Exception as e:
                error = from_exception(e, context)
                await self.status_service.transition(
                    document["document_id"],
                    DocumentStatus.GENERATION_FAILED,
                    self._transition_context(request, TransitionTrigger.ERROR_EVENT, error.message, cause=error),
                )
                raise error

            generated = await self.status_service.transition(
                document["document_id"],
                DocumentStatus.PREVIEW_GENERATED,
                self._transition_context(request, TransitionTrigger.SYSTEM_EVENT, "preview generated",
                                         document_updates={"file_info": stored.to_dict()}),
            )
            if not generated.success:
                await self._discard_blob(stored.path)
                raise generated.error

            return GenerationResult(
                success=True,
                document_id=document["document_id"],
                status=generated.new_status,
                processing_time_ms=_elapsed_ms(started),
                file_metadata=stored.to_dict(),
                version=1,
            )

        except Exception as e:
            error = from_exception(e, context)
            await self.error_handler.handle(error)
            return GenerationResult(
                success=False,
                document_id=document["document_id"] if document else None,
                status=await self._current_status(document),
                processing_time_ms=_elapsed_ms(started),
                error=error,
            )

    async def get_preview(self, document_id: str) -> Dict[str, Any]:
        """Return a preview document and count the view."""
        context = ErrorContext(operation="get_preview", document_id=document_id)
        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None or document.get("is_deleted") or not document.get("is_preview"):
            raise document_not_found(document_id, context)

        info = PreviewInfo.from_dict(document.get("preview_info"))
        now = self._now()
        if info.expires_at and isoparse(info.expires_at) <= now:
            raise WorkflowError(
                ErrorCode.PREVIEW_EXPIRED,
                f"Preview {document_id} expired at {info.expires_at}",
                details={"document_id": document_id, "expires_at": info.expires_at},
                context=context,
            )
        info.view_count += 1
        info.last_viewed_at = now.isoformat()
        return await self._call("count_preview_view",
                                self.documents.update(document_id, {"preview_info": info.to_dict()}), context)

    async def cleanup_expired_previews(self) -> Dict[str, Any]:
        """Soft-delete expired previews and remove their files."""
        context = ErrorContext(operation="cleanup_expired_previews")
        now = self._now().isoformat()
        expired = await self._call("find_expired_previews", self.documents.find({
            "is_preview": True,
            "is_deleted": {"$ne": True},
            "preview_info.expires_at": {"$lte": now},
        }), context)

        cleaned, errors = 0, []
        for document in expired:
            try:
                file_info = document.get("file_info") or {}
                if file_info.get("path"):
                    await self.storage.delete(file_info["path"])
                await self.documents.update(document["document_id"], {
                    "is_deleted": True,
                    "deleted_by": "system",
                    "deleted_at": now,
                })
                cleaned += 1
            except Exception as e:
                errors.append(f"{document['document_id']}: {e}")
                logger.error("Failed to clean up preview %s: %s", document["document_id"], str(e))

        logger.info("Preview cleanup: %d removed, %d errors", cleaned, len(errors))
        return {"cleaned": cleaned, "errors": errors}
