"""
Payroll Document Hub - Batch Orchestrator

Applies one operation (approve, send, archive, delete, export, regenerate) to
a set of documents selected by criteria.

- Selection is bounded (BATCH_CONFIG["max_documents"]) and must not be empty
- State checks for the whole selection run before any document is touched
- Documents are processed in sequential chunks; items inside a chunk run
  concurrently under a semaphore
- One item failing never stops the batch; every item ends up in `results`
  and failed items also in `errors`
- Operations are persisted so they can be polled by id (async mode returns
  while the operation is still QUEUED)
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from dateutil.parser import isoparse

from ..config import BATCH_CONFIG, DEPENDENCY_TIMEOUT_SECONDS
from .errors import (
    ErrorCode, ErrorContext, WorkflowError, from_exception, guarded_call, timeout_exceeded,
)
from .documents import soft_delete_document
from .generation import DocumentGenerationPipeline, GenerationRequest
from .repository import InMemoryRepository, Repository
from .status_rules import (
    DocumentStatus, TransitionTrigger, coerce_document_type, coerce_status, is_valid_transition,
)
from .status_service import DocumentStatusService, TransitionContext
from .storage import BlobStorage

logger = logging.getLogger(__name__)


class BatchOperationType(str, Enum):
    GENERATE = "GENERATE"
    APPROVE = "APPROVE"
    SEND = "SEND"
    ARCHIVE = "ARCHIVE"
    DELETE = "DELETE"
    EXPORT = "EXPORT"


class BatchStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_BATCH_STATUSES = (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED)


class ItemOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


# Rough per-document cost used for duration estimates
SECONDS_PER_DOCUMENT = {
    BatchOperationType.APPROVE: 2,
    BatchOperationType.SEND: 5,
    BatchOperationType.ARCHIVE: 1,
    BatchOperationType.DELETE: 1,
    BatchOperationType.EXPORT: 3,
    BatchOperationType.GENERATE: 10,
}


def coerce_operation_type(value: Any) -> BatchOperationType:
    if isinstance(value, BatchOperationType):
        return value
    try:
        return BatchOperationType(str(value).strip().upper())
    except ValueError:
        raise WorkflowError(
            ErrorCode.INVALID_OPERATION_TYPE,
            f"Unknown batch operation type {value!r}",
            details={"field": "operation_type", "expected": [t.value for t in BatchOperationType],
                     "received": value},
        )


# =============================================================================
# SELECTION
# =============================================================================

@dataclass
class SelectionCriteria:
    employee_ids: List[str] = field(default_factory=list)
    document_types: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)
    period_ids: List[str] = field(default_factory=list)
    date_range: Optional[Dict[str, str]] = None
    branch_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_ids": list(self.employee_ids),
            "document_types": list(self.document_types),
            "statuses": list(self.statuses),
            "period_ids": list(self.period_ids),
            "date_range": self.date_range,
            "branch_id": self.branch_id,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SelectionCriteria":
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None})


def _invalid_criteria(field_name: str, received: Any, reason: str) -> WorkflowError:
    return WorkflowError(
        ErrorCode.INVALID_SELECTION_CRITERIA,
        f"Invalid selection criteria ({field_name}): {reason}",
        details={"field": field_name, "received": received},
    )


def _period_filter(period_id: str) -> Dict[str, Any]:
    """Filter for a YYYY-MM or YYYY period id."""
    parts = str(period_id).split("-")
    try:
        year = int(parts[0])
        month = int(parts[1]) if len(parts) > 1 else None
    except ValueError:
        raise _invalid_criteria("period_ids", period_id, "expected YYYY or YYYY-MM")
    if len(parts) > 2 or (month is not None and not 1 <= month <= 12):
        raise _invalid_criteria("period_ids", period_id, "expected YYYY or YYYY-MM")
    condition: Dict[str, Any] = {"period_year": year}
    if month is not None:
        condition["period_month"] = month
    return condition


def _parse_bound(value: str, end: bool) -> str:
    try:
        parsed = isoparse(value)
    except (TypeError, ValueError):
        raise _invalid_criteria("date_range", value, "not an ISO date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    # A bare end date covers that whole day
    if end and len(value) <= 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed.astimezone(timezone.utc).isoformat()


def build_selection_query(criteria: SelectionCriteria) -> Dict[str, Any]:
    """Mongo-style filter for the criteria. Deleted documents are never selected."""
    query: Dict[str, Any] = {"is_deleted": {"$ne": True}}

    if criteria.employee_ids:
        query["employee_id"] = {"$in": list(criteria.employee_ids)}

    if criteria.document_types:
        types = []
        for value in criteria.document_types:
            doc_type = coerce_document_type(value)
            if doc_type is None:
                raise _invalid_criteria("document_types", value, "unknown document type")
            types.append(doc_type.value)
        query["document_type"] = {"$in": types}

    if criteria.statuses:
        statuses = []
        for value in criteria.statuses:
            status = coerce_status(value)
            if status is None:
                raise _invalid_criteria("statuses", value, "unknown status")
            statuses.append(status.value)
        query["status"] = {"$in": statuses}

    if criteria.period_ids:
        query["$or"] = [_period_filter(p) for p in criteria.period_ids]

    if criteria.date_range:
        created: Dict[str, str] = {}
        start = criteria.date_range.get("start") or criteria.date_range.get("from")
        end = criteria.date_range.get("end") or criteria.date_range.get("to")
        if start:
            created["$gte"] = _parse_bound(start, end=False)
        if end:
            created["$lte"] = _parse_bound(end, end=True)
        if created:
            query["created_at"] = created

    if criteria.branch_id:
        query["branch_id"] = criteria.branch_id

    if criteria.tags:
        query["tags"] = {"$in": list(criteria.tags)}

    return query


# =============================================================================
# OPERATION
# =============================================================================

@dataclass
class BatchOperation:
    operation_id: str
    operation_type: BatchOperationType
    criteria: SelectionCriteria
    parameters: Dict[str, Any]
    initiated_by: str
    status: BatchStatus = BatchStatus.QUEUED
    total_documents: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    document_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    results: List[Dict[str, Any]] = field(default_factory=list)
    cancel_requested: bool = False

    @property
    def progress_percentage(self) -> int:
        if not self.total_documents:
            return 0
        return round(self.processed / self.total_documents * 100)

    @property
    def successful_ids(self) -> List[str]:
        return [r["document_id"] for r in self.results if r["status"] == ItemOutcome.SUCCESS.value]

    @property
    def failed_ids(self) -> List[str]:
        return [r["document_id"] for r in self.results if r["status"] != ItemOutcome.SUCCESS.value]

    def summary(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "total_documents": self.total_documents,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "progress_percentage": self.progress_percentage,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary()
        data.update({
            "criteria": self.criteria.to_dict(),
            "parameters": self.parameters,
            "initiated_by": self.initiated_by,
            "document_ids": list(self.document_ids),
            "started_at": self.started_at,
            "errors": list(self.errors),
            "results": list(self.results),
            "successful_ids": self.successful_ids,
            "failed_ids": self.failed_ids,
            "cancel_requested": self.cancel_requested,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchOperation":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["operation_type"] = BatchOperationType(values["operation_type"])
        values["status"] = BatchStatus(values.get("status", BatchStatus.QUEUED.value))
        values["criteria"] = SelectionCriteria.from_dict(values.get("criteria"))
        values.setdefault("parameters", {})
        return cls(**values)


ItemHandler = Callable[[Dict[str, Any], BatchOperation], Awaitable[Dict[str, Any]]]


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class BatchOrchestrator:
    """Runs batch operations over the status service and generation pipeline."""

    def __init__(
        self,
        documents: Repository,
        status_service: DocumentStatusService,
        storage: Optional[BlobStorage] = None,
        pipeline: Optional[DocumentGenerationPipeline] = None,
        repository: Optional[Repository] = None,
        max_documents: int = BATCH_CONFIG["max_documents"],
        max_concurrent: int = BATCH_CONFIG["max_concurrent"],
        chunk_size: int = BATCH_CONFIG["chunk_size"],
        timeout_seconds: float = BATCH_CONFIG["timeout_ms"] / 1000,
        dependency_timeout: float = DEPENDENCY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.documents = documents
        self.status_service = status_service
        self.storage = storage
        self.pipeline = pipeline
        self.repository = repository or InMemoryRepository("operation_id")
        self.max_documents = max_documents
        self.max_concurrent = max_concurrent
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.dependency_timeout = dependency_timeout
        self._clock = clock
        self._monotonic = monotonic
        self._live: Dict[str, BatchOperation] = {}
        self._background: Dict[str, asyncio.Task] = {}
        self._last_id_ms = 0

        self._handlers: Dict[BatchOperationType, ItemHandler] = {
            BatchOperationType.APPROVE: self._approve,
            BatchOperationType.SEND: self._send,
            BatchOperationType.ARCHIVE: self._archive,
            BatchOperationType.DELETE: self._delete,
            BatchOperationType.EXPORT: self._export,
            BatchOperationType.GENERATE: self._generate,
        }
        missing = [t.value for t in BatchOperationType if t not in self._handlers]
        if missing:
            raise WorkflowError(ErrorCode.CONFIGURATION_ERROR, f"No batch handler for {missing}",
                                details={"missing": missing})

    # ----------------------------------------------------------------- helpers

    def _next_operation_id(self, operation_type: BatchOperationType) -> str:
        now_ms = int(self._clock().timestamp() * 1000)
        self._last_id_ms = max(now_ms, self._last_id_ms + 1)
        return f"batch_{operation_type.value.lower()}_{self._last_id_ms}"

    async def _save(self, operation: BatchOperation) -> bool:
        try:
            await guarded_call("save_batch_operation",
                               self.repository.set(operation.operation_id, operation.to_dict()),
                               self.dependency_timeout)
        except WorkflowError as e:
            # The live copy stays authoritative for this process
            logger.critical("Failed to persist batch operation %s: %s", operation.operation_id, e.message)
            return False
        return True

    async def _finish(self, operation: BatchOperation) -> None:
        """Persist a terminal operation and stop tracking it in memory once stored."""
        if await self._save(operation):
            self._live.pop(operation.operation_id, None)

    def estimate_duration(self, operation_type: Any, count: int) -> int:
        """Estimated seconds for `count` documents."""
        rate = SECONDS_PER_DOCUMENT[coerce_operation_type(operation_type)]
        return math.ceil(count * rate / self.max_concurrent)

    # -------------------------------------------------------------- validation

    def _blocking_documents(self, operation_type: BatchOperationType,
                            documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        blockers = []
        for document in documents:
            status = document.get("status")
            reason = None
            if operation_type == BatchOperationType.DELETE:
                if status in (DocumentStatus.SENT.value, DocumentStatus.ARCHIVED.value):
                    reason = f"{status} documents cannot be deleted"
            elif operation_type == BatchOperationType.SEND:
                if status != DocumentStatus.APPROVED.value:
                    reason = "document is not approved for sending"
            elif operation_type == BatchOperationType.APPROVE:
                if not is_valid_transition(status, DocumentStatus.APPROVED):
                    reason = f"document cannot be approved from {status}"
            if reason:
                blockers.append({"document_id": document["document_id"], "status": status, "reason": reason})
        return blockers

    # --------------------------------------------------------------------- run

    async def run(
        self,
        operation_type: Any,
        criteria: Any,
        parameters: Optional[Dict[str, Any]] = None,
        actor_id: str = "system",
        run_async: bool = False,
    ) -> BatchOperation:
        """
        Select, validate and process documents.

        Selection and state-validation failures raise WorkflowError before any
        document is touched. Per-item failures are recorded on the operation.
        """
        operation_type = coerce_operation_type(operation_type)
        if not isinstance(criteria, SelectionCriteria):
            criteria = SelectionCriteria.from_dict(criteria)
        parameters = parameters or {}
        context = ErrorContext(operation=f"batch_{operation_type.value.lower()}",
                               component="BatchOrchestrator", user_id=actor_id)

        query = build_selection_query(criteria)
        total = await guarded_call("count_documents", self.documents.count(query), self.dependency_timeout, context)
        if total == 0:
            raise WorkflowError(ErrorCode.NO_MATCHING_DOCUMENTS, "No document matches the selection criteria",
                                details={"criteria": criteria.to_dict()}, context=context)
        if total > self.max_documents:
            raise WorkflowError(ErrorCode.TOO_MANY_DOCUMENTS,
                                f"{total} documents selected, maximum is {self.max_documents}",
                                details={"selected": total, "maximum": self.max_documents}, context=context)

        documents = await guarded_call(
            "select_documents",
            self.documents.find(query, sort=[("created_at", 1)]),
            self.dependency_timeout,
            context,
        )
        blockers = self._blocking_documents(operation_type, documents)
        if blockers:
            raise WorkflowError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                f"{len(blockers)} document(s) block the {operation_type.value} batch: "
                f"{', '.join(b['document_id'] for b in blockers)}",
                details={"blocking_documents": blockers},
                context=context,
            )

        operation = BatchOperation(
            operation_id=self._next_operation_id(operation_type),
            operation_type=operation_type,
            criteria=criteria,
            parameters=parameters,
            initiated_by=actor_id,
            total_documents=len(documents),
            document_ids=[d["document_id"] for d in documents],
            created_at=self._clock().isoformat(),
        )
        self._live[operation.operation_id] = operation
        await self._save(operation)
        logger.info("Batch %s created: %s on %d documents by %s",
                    operation.operation_id, operation_type.value, len(documents), actor_id)

        if run_async:
            self._background[operation.operation_id] = asyncio.create_task(
                self._run_background(operation, documents)
            )
            return operation

        await self._execute(operation, documents)
        return operation

    async def _run_background(self, operation: BatchOperation, documents: List[Dict[str, Any]]) -> None:
        try:
            if operation.cancel_requested:
                logger.info("Batch %s was cancelled before it started", operation.operation_id)
                return
            await self._execute(operation, documents)
        except Exception as e:
            logger.critical("Batch %s aborted: %s", operation.operation_id, str(e))
            operation.status = BatchStatus.FAILED
            operation.completed_at = self._clock().isoformat()
            operation.errors.append({
                "document_id": "SYSTEM",
                "error_code": ErrorCode.INTERNAL_ERROR.value,
                "message": str(e),
                "retryable": False,
            })
            await self._finish(operation)
        finally:
            if self._background.get(operation.operation_id) is asyncio.current_task():
                del self._background[operation.operation_id]

    async def _execute(self, operation: BatchOperation, documents: List[Dict[str, Any]]) -> None:
        operation.status = BatchStatus.PROCESSING
        operation.started_at = self._clock().isoformat()
        await self._save(operation)

        handler = self._handlers[operation.operation_type]
        semaphore = asyncio.Semaphore(self.max_concurrent)
        deadline = self._monotonic() + self.timeout_seconds

        for offset in range(0, len(documents), self.chunk_size):
            chunk = documents[offset:offset + self.chunk_size]
            await asyncio.gather(*[
                self._process_item(operation, document, handler, semaphore, deadline)
                for document in chunk
            ])

        operation.status = (
            BatchStatus.FAILED
            if operation.total_documents and operation.failed == operation.total_documents
            else BatchStatus.COMPLETED
        )
        operation.completed_at = self._clock().isoformat()
        await self._finish(operation)
        logger.info("Batch %s %s: %d successful, %d failed", operation.operation_id,
                    operation.status.value, operation.successful, operation.failed)

    async def _process_item(self, operation: BatchOperation, document: Dict[str, Any], handler: ItemHandler,
                            semaphore: asyncio.Semaphore, deadline: float) -> None:
        document_id = document["document_id"]
        async with semaphore:
            if self._monotonic() >= deadline:
                error = timeout_exceeded(f"batch {operation.operation_id}", self.timeout_seconds * 1000)
                self._record_failure(operation, document_id, error, ItemOutcome.SKIPPED)
                return
            try:
                result = await handler(document, operation)
            except Exception as e:
                cause = from_exception(e, ErrorContext(
                    operation=f"batch_{operation.operation_type.value.lower()}",
                    component="BatchOrchestrator",
                    user_id=operation.initiated_by,
                    document_id=document_id,
                ))
                logger.warning("Batch %s: %s failed (%s)", operation.operation_id, document_id, cause.code.value)
                self._record_failure(operation, document_id, cause, ItemOutcome.FAILED)
            else:
                operation.successful += 1
                operation.processed += 1
                operation.results.append({
                    "document_id": document_id,
                    "status": ItemOutcome.SUCCESS.value,
                    "result": result,
                })
        await self._save(operation)

    def _record_failure(self, operation: BatchOperation, document_id: str, cause: WorkflowError,
                        outcome: ItemOutcome) -> None:
        error = WorkflowError(
            ErrorCode.DOCUMENT_PROCESSING_FAILED,
            f"{document_id}: {cause.message}",
            details={"document_id": document_id, "cause_code": cause.code.value},
            context=cause.context,
            cause=cause,
        )
        operation.failed += 1
        operation.processed += 1
        operation.errors.append({
            "document_id": document_id,
            "error_code": error.code.value,
            "cause_code": cause.code.value,
            "message": cause.message,
            "retryable": cause.retryable,
        })
        operation.results.append({
            "document_id": document_id,
            "status": outcome.value,
            "result": None,
            "error": cause.to_client_dict(),
        })

    # ---------------------------------------------------------------- handlers

    def _context(self, operation: BatchOperation, document_id: str, reason: str, **kwargs) -> TransitionContext:
        return TransitionContext(
            user_id=operation.initiated_by,
            trigger=TransitionTrigger.USER_ACTION,
            reason=operation.parameters.get("reason") or reason,
            comments=operation.parameters.get("comments"),
            request_id=f"{operation.operation_id}-{document_id}",
            metadata={"batch_operation": operation.operation_id},
            **kwargs,
        )

    async def _transition(self, document, operation, target: DocumentStatus, reason: str, **kwargs):
        document_id = document["document_id"]
        result = await self.status_service.transition(
            document_id, target, self._context(operation, document_id, reason, **kwargs)
        )
        if not result.success:
            raise result.error
        return result

    async def _approve(self, document, operation):
        result = await self._transition(
            document, operation, DocumentStatus.APPROVED, "Batch approval",
            approval_comments=operation.parameters.get("comments"),
        )
        return {"approved": True, "audit_id": result.audit_id}

    async def _send(self, document, operation):
        result = await self._transition(
            document, operation, DocumentStatus.SENT, "Batch sending",
            sent_to=list(operation.parameters.get("recipients") or []),
        )
        return {"sent": True, "audit_id": result.audit_id}

    async def _archive(self, document, operation):
        result = await self._transition(document, operation, DocumentStatus.ARCHIVED, "Batch archiving")
        return {"archived": True, "audit_id": result.audit_id}

    async def _delete(self, document, operation):
        outcome = await soft_delete_document(self.documents, document, operation.initiated_by,
                                             self._clock().isoformat(), self.dependency_timeout)
        return {"deleted": True, "restored_latest": outcome["restored_latest"]}

    async def _export(self, document, operation):
        document_id = document["document_id"]
        file_info = document.get("file_info") or {}
        if self.storage is None or not file_info.get("path"):
            raise WorkflowError(ErrorCode.STORAGE_READ_FAILED, f"No stored file for {document_id}",
                                details={"document_id": document_id})
        data = await guarded_call(
            "export_document",
            self.storage.retrieve(file_info["path"], file_info.get("checksum")),
            self.dependency_timeout,
        )
        return {"exported": True, "format": operation.parameters.get("format", "pdf"), "size": len(data)}

    async def _generate(self, document, operation):
        if self.pipeline is None:
            raise WorkflowError(ErrorCode.CONFIGURATION_ERROR, "Batch regeneration needs a generation pipeline")
        request = GenerationRequest(
            employee_id=document["employee_id"],
            document_type=document["document_type"],
            period_year=document["period_year"],
            period_month=document.get("period_month"),
            period_start=document.get("period_start"),
            period_end=document.get("period_end"),
            payroll=dict(document.get("salary_data") or {}),
            force_regenerate=True,
            branch_id=document.get("branch_id"),
            requested_by=operation.initiated_by,
            request_id=f"{operation.operation_id}-{document['document_id']}",
        )
        result = await self.pipeline.generate(request)
        if not result.success:
            raise result.error
        return {"document_id": result.document_id, "status": result.status, "version": result.version}

    # ---------------------------------------------------------------- queries

    async def get_operation(self, operation_id: str) -> BatchOperation:
        operation = self._live.get(operation_id)
        if operation is not None:
            return operation
        stored = await guarded_call("load_batch_operation", self.repository.get(operation_id),
                                    self.dependency_timeout)
        if stored is None:
            raise WorkflowError(ErrorCode.OPERATION_NOT_FOUND, f"Batch operation {operation_id} not found",
                                details={"operation_id": operation_id})
        return BatchOperation.from_dict(stored)

    async def cancel_operation(self, operation_id: str, actor_id: str) -> Dict[str, Any]:
        """Cancel a QUEUED operation. Only its initiator may cancel it."""
        operation = await self.get_operation(operation_id)
        if operation.initiated_by != actor_id:
            raise WorkflowError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                f"Only {operation.initiated_by} can cancel {operation_id}",
                details={"operation_id": operation_id, "initiated_by": operation.initiated_by},
            )
        if operation.status != BatchStatus.QUEUED:
            raise WorkflowError(
                ErrorCode.OPERATION_NOT_CANCELLABLE,
                f"Batch operation {operation_id} is {operation.status.value}",
                details={"operation_id": operation_id, "status": operation.status.value},
            )
        operation.cancel_requested = True
        operation.status = BatchStatus.CANCELLED
        operation.completed_at = self._clock().isoformat()
        await self._finish(operation)
        logger.info("Batch %s cancelled by %s", operation_id, actor_id)
        return {"success": True, "operation_id": operation_id, "status": operation.status.value}

    async def list_operations(self, actor_id: Optional[str] = None, limit: int = 20) -> Dict[str, Any]:
        query = {"initiated_by": actor_id} if actor_id else None
        stored = await guarded_call(
            "list_batch_operations",
            self.repository.find(query, sort=[("created_at", -1)], limit=limit),
            self.dependency_timeout,
        )
        operations = []
        for data in stored:
            live = self._live.get(data["operation_id"])
            operations.append(live.summary() if live else BatchOperation.from_dict(data).summary())

        by_status = {s.value: 0 for s in BatchStatus}
        for op in operations:
            by_status[op["status"]] += 1
        return {
            "operations": operations,
            "summary": {
                "total": len(operations),
                "active": by_status[BatchStatus.QUEUED.value] + by_status[BatchStatus.PROCESSING.value],
                "by_status": by_status,
            },
        }

    async def recover(self) -> List[str]:
        """
        Fail operations a previous process left QUEUED or PROCESSING.

        Their in-memory state died with that process, so they can never
        complete; the documents they already handled keep their new state.
        """
        stale = await guarded_call(
            "find_stale_batch_operations",
            self.repository.find({"status": {"$in": [BatchStatus.QUEUED.value, BatchStatus.PROCESSING.value]}}),
            self.dependency_timeout,
        )
        failed = []
        for data in stale:
            if data["operation_id"] in self._live:
                continue
            operation = BatchOperation.from_dict(data)
            operation.status = BatchStatus.FAILED
            operation.completed_at = self._clock().isoformat()
            operation.errors.append({
                "document_id": "SYSTEM",
                "error_code": ErrorCode.INTERNAL_ERROR.value,
                "message": "Interrupted by a service restart",
                "retryable": True,
            })
            await self._save(operation)
            failed.append(operation.operation_id)
        if failed:
            logger.warning("Marked %d interrupted batch operation(s) as FAILED: %s", len(failed), ", ".join(failed))
        return failed

    def tracked(self) -> Dict[str, int]:
        return {"live": len(self._live), "background": len(self._background)}

    async def drain(self) -> None:
        """Wait for background operations started so far."""
        pending = [t for t in self._background.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
