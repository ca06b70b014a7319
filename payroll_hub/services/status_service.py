"""
Payroll Document Hub - Document Status Service

Executes status transitions for payroll documents. This is the only code path
allowed to change a document's status.

Transition flow:
1. Load the document and resolve its current status
2. Validate the edge against the status rules (skipped with force)
3. Run business rules (always, even when forced)
4. Apply status-specific side effects (fixed dispatch table)
5. Persist status + side-effect fields
6. Append exactly one audit record (success or failure)
7. Notify registered handlers (best-effort)

transition() never raises: every failure is converted into a WorkflowError
and returned in TransitionResult.error.
"""

import asyncio
import inspect
import logging
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..config import DEPENDENCY_TIMEOUT_SECONDS, STATUS_BATCH_SIZE
from .audit_trail import AuditTrail, StatusChangeAuditRecord
from .error_handler import ErrorHandler
from .errors import (
    ErrorCode, ErrorContext, WorkflowError, current_status_unknown, document_not_found, from_exception,
    guarded_call,
)
from .models import ApprovalInfo, DistributionInfo, ErrorInfo, GenerationInfo
from .repository import Repository
from .status_rules import (
    DeliveryMethod, DeliveryStatus, DocumentStatus, StatusTransition, TransitionTrigger, coerce_status,
    describe_status, get_transition,
)
from .validators import validate_status_transition

logger = logging.getLogger(__name__)


NOTIFICATION_PRIORITY = {
    DocumentStatus.GENERATION_FAILED.value: "URGENT",
    DocumentStatus.APPROVED.value: "HIGH",
    DocumentStatus.SENT.value: "HIGH",
    DocumentStatus.GENERATED.value: "NORMAL",
    DocumentStatus.PENDING_APPROVAL.value: "NORMAL",
}


def notification_priority(status: str) -> str:
    return NOTIFICATION_PRIORITY.get(status, "LOW")


# =============================================================================
# CONTEXT & RESULT
# =============================================================================

@dataclass
class TransitionContext:
    """Who is changing the status, why, and any status-specific payload."""
    user_id: str = "system"
    trigger: TransitionTrigger = TransitionTrigger.USER_ACTION
    reason: Optional[str] = None
    comments: Optional[str] = None
    force: bool = False
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    sent_to: Optional[List[str]] = None
    approval_comments: Optional[str] = None
    business_impact: Optional[Dict[str, Any]] = None
    # Error that caused an ERROR_EVENT transition (stored in the audit record)
    cause: Optional[WorkflowError] = None
    # Extra document fields persisted together with the new status
    document_updates: Dict[str, Any] = field(default_factory=dict)

    def derive(self, **changes) -> "TransitionContext":
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values["metadata"] = dict(self.metadata)
        values["document_updates"] = dict(self.document_updates)
        values.update(changes)
        return TransitionContext(**values)


@dataclass
class TransitionResult:
    success: bool
    document_id: str
    new_status: Optional[str] = None
    previous_status: Optional[str] = None
    error: Optional[WorkflowError] = None
    audit_id: Optional[str] = None
    processing_time_ms: float = 0.0
    side_effects_executed: List[str] = field(default_factory=list)
    validation_warnings: List[str] = field(default_factory=list)

    def to_dict(self, client: bool = True) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "document_id": self.document_id,
            "new_status": self.new_status,
            "previous_status": self.previous_status,
            "audit_id": self.audit_id,
            "processing_time_ms": self.processing_time_ms,
            "side_effects_executed": self.side_effects_executed,
            "validation_warnings": self.validation_warnings,
        }
        if self.error is not None:
            result["error"] = self.error.to_client_dict() if client else self.error.to_dict()
        return result


RuleResult = Optional[str]
BusinessRule = Callable[[Dict[str, Any], DocumentStatus, TransitionContext, Optional[StatusTransition]],
                        Union[RuleResult, Awaitable[RuleResult]]]
NotificationHandler = Callable[[Dict[str, Any]], Awaitable[None]]


# =============================================================================
# BUSINESS RULES
# =============================================================================

def approval_comments_rule(document, target, context, transition) -> RuleResult:
    """Approval edges should carry a comment."""
    if transition is not None and transition.requires_approval:
        if not (context.approval_comments or context.comments):
            return "Approval recorded without comments"
    return None


def recipients_rule(document, target, context, transition) -> RuleResult:
    """SENT without recipients is accepted and recorded as an empty recipient list."""
    if target == DocumentStatus.SENT and not context.sent_to:
        return "No recipients provided; distribution_info.sent_to recorded as empty"
    return None


def make_working_hours_rule(start_hour: int = 8, end_hour: int = 18,
                            clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> BusinessRule:
    """Blocks user-initiated distribution outside Monday-Friday working hours."""

    def working_hours_rule(document, target, context, transition) -> RuleResult:
        if target != DocumentStatus.SENT or context.trigger != TransitionTrigger.USER_ACTION:
            return None
        now = clock()
        if now.weekday() >= 5 or not (start_hour <= now.hour < end_hour):
            raise WorkflowError(
                ErrorCode.BUSINESS_RULE_VIOLATION,
                "Documents can only be sent during working hours",
                details={"rule": "working_hours", "start_hour": start_hour, "end_hour": end_hour,
                         "received": now.isoformat()},
            )
        return None

    return working_hours_rule


# =============================================================================
# SIDE EFFECTS
# =============================================================================

# Each effect overwrites its fields with the current values, so re-applying the
# same target status leaves the document in the same shape.

def _stamp_approval(document, context, now):
    info = ApprovalInfo.from_dict(document.get("approval_info"))
    info.approved_by = context.user_id
    info.approved_at = now
    info.comments = context.approval_comments or context.comments
    return {"approval_info": info.to_dict()}


def _stamp_distribution(document, context, now):
    info = DistributionInfo.from_dict(document.get("distribution_info"))
    info.sent_by = context.user_id
    info.sent_at = now
    info.sent_to = list(context.sent_to or [])
    info.delivery_status = DeliveryStatus.PENDING.value
    if info.delivery_method is None:
        info.delivery_method = context.metadata.get("delivery_method", DeliveryMethod.EMAIL.value)
    return {"distribution_info": info.to_dict()}


def _stamp_archive(document, context, now):
    return {"archived_by": context.user_id, "archived_at": now}


def _stamp_generated(document, context, now):
    info = GenerationInfo.from_dict(document.get("generation_info"))
    if info.generated_at:
        return {}
    info.generated_at = now
    return {"generation_info": info.to_dict()}


def _record_failure(document, context, now):
    info = ErrorInfo.from_dict(document.get("error_info"))
    info.failed_at = now
    info.failure_count += 1
    if context.cause is not None:
        info.last_error = context.cause.to_audit_error_details()
    return {"error_info": info.to_dict()}


def _request_approval(document, context, now):
    info = ApprovalInfo.from_dict(document.get("approval_info"))
    info.requested_by = context.user_id
    info.requested_at = now
    return {"approval_info": info.to_dict()}


SIDE_EFFECTS: Dict[DocumentStatus, Callable[[Dict[str, Any], TransitionContext, str], Dict[str, Any]]] = {
    DocumentStatus.APPROVED: _stamp_approval,
    DocumentStatus.SENT: _stamp_distribution,
    DocumentStatus.ARCHIVED: _stamp_archive,
    DocumentStatus.GENERATED: _stamp_generated,
    DocumentStatus.GENERATION_FAILED: _record_failure,
    DocumentStatus.PENDING_APPROVAL: _request_approval,
}


# =============================================================================
# SERVICE
# =============================================================================

class DocumentStatusService:
    """Validates and executes payroll document status transitions."""

    def __init__(
        self,
        documents: Repository,
        audit_trail: AuditTrail,
        error_handler: Optional[ErrorHandler] = None,
        timeout_seconds: float = DEPENDENCY_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.documents = documents
        self.audit_trail = audit_trail
        self.error_handler = error_handler or ErrorHandler()
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._business_rules: Dict[str, BusinessRule] = {
            "approval_comments": approval_comments_rule,
            "recipients": recipients_rule,
        }
        self._notification_handlers: List[NotificationHandler] = []
        # Entries vanish once no transition holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ---------------------------------------------------------------- registry

    def register_business_rule(self, name: str, rule: BusinessRule) -> None:
        self._business_rules[name] = rule
        logger.info("Registered business rule: %s", name)

    def register_notification_handler(self, handler: NotificationHandler) -> None:
        self._notification_handlers.append(handler)

    # ----------------------------------------------------------------- helpers

    async def _call(self, operation: str, awaitable: Awaitable[Any], context: ErrorContext) -> Any:
        return await guarded_call(operation, awaitable, self.timeout_seconds, context)

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def _run_business_rules(self, document, target, context, transition) -> List[str]:
        warnings = []
        for name, rule in self._business_rules.items():
            outcome = rule(document, target, context, transition)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome:
                warnings.append(outcome)
                logger.debug("Business rule %s warning: %s", name, outcome)
        return warnings

    # -------------------------------------------------------------- transition

    async def transition(
        self,
        document_id: str,
        target_status: Union[str, DocumentStatus],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Move one document to `target_status`. Always returns, never raises."""
        async with self._lock_for(document_id):
            return await self._transition(document_id, target_status, context or TransitionContext())

    async def _transition(self, document_id, target_status, context: TransitionContext) -> TransitionResult:
        started = time.perf_counter()
        error_context = ErrorContext(
            operation="transition_status",
            component="DocumentStatusService",
            user_id=context.user_id,
            document_id=document_id,
            request_id=context.request_id,
            session_id=context.session_id,
        )
        target = coerce_status(target_status)
        to_label = target.value if target else str(target_status)
        from_status: Optional[str] = None
        transition: Optional[StatusTransition] = None
        side_effects: List[str] = []
        warnings: List[str] = []
        forced = False

        try:
            document = await self._call("load_document", self.documents.get(document_id), error_context)
            if document is None:
                raise document_not_found(document_id, error_context)

            from_status = document.get("status")
            current = coerce_status(from_status)
            if current is None:
                raise current_status_unknown(document_id, from_status, error_context)

            validate_status_transition(current, target_status, context.force, error_context)
            transition = get_transition(current, target)
            if transition is None:
                forced = True
                logger.warning(
                    "Forced status transition: doc=%s, %s -> %s (by=%s, reason=%s)",
                    document_id, current.value, target.value, context.user_id, context.reason,
                )

            warnings = await self._run_business_rules(document, target, context, transition)

            now = self._clock().isoformat()
            updates: Dict[str, Any] = dict(context.document_updates)
            effect = SIDE_EFFECTS.get(target)
            if effect is not None:
                effect_updates = effect({**document, **updates}, context, now)
                updates.update(effect_updates)
                if effect_updates:
                    side_effects = [effect.__name__.lstrip("_")]
            updates.update({
                "status": target.value,
                "updated_at": now,
                "status_updated_by": context.user_id,
            })
            await self._call("update_document", self.documents.update(document_id, updates), error_context)

        except Exception as e:
            error = from_exception(e, error_context)
            elapsed = round((time.perf_counter() - started) * 1000, 2)
            audit_id = await self._write_audit(
                document_id, from_status, to_label, context, transition, elapsed,
                success=False, forced=forced, error=error, warnings=warnings,
            )
            await self.error_handler.handle(error)
            return TransitionResult(
                success=False,
                document_id=document_id,
                previous_status=from_status,
                new_status=from_status,
                error=error,
                audit_id=audit_id,
                processing_time_ms=elapsed,
                validation_warnings=warnings,
            )

        elapsed = round((time.perf_counter() - started) * 1000, 2)
        audit_id = await self._write_audit(
            document_id, from_status, target.value, context, transition, elapsed,
            success=True, forced=forced, side_effects=side_effects, warnings=warnings,
        )

        logger.info(
            "Status transition: doc=%s, %s -> %s (trigger=%s, by=%s, %.1fms)",
            document_id, from_status, target.value, context.trigger.value, context.user_id, elapsed,
        )
        await self._notify(document, from_status, target.value, context)

        return TransitionResult(
            success=True,
            document_id=document_id,
            new_status=target.value,
            previous_status=from_status,
            audit_id=audit_id,
            processing_time_ms=elapsed,
            side_effects_executed=side_effects,
            validation_warnings=warnings,
        )

    async def _write_audit(self, document_id, from_status, to_status, context, transition, elapsed,
                           success, forced, error=None, side_effects=None, warnings=None) -> Optional[str]:
        business_impact = context.business_impact
        if forced:
            business_impact = {
                **(business_impact or {}),
                "critical": True,
                "classification": "FORCED_TRANSITION",
                "affected_users": (business_impact or {}).get("affected_users", 1),
            }

        error_details = None
        if error is not None:
            error_details = error.to_audit_error_details()
        elif context.cause is not None:
            error_details = context.cause.to_audit_error_details()

        record = StatusChangeAuditRecord(
            document_id=document_id,
            from_status=from_status,
            to_status=to_status,
            trigger=context.trigger.value,
            changed_by=context.user_id,
            success=success,
            forced=forced,
            reason=context.reason,
            comments=context.comments,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
            session_id=context.session_id,
            request_id=context.request_id,
            approval_required=bool(transition and transition.requires_approval),
            processing_time_ms=elapsed,
            metadata={
                **context.metadata,
                "side_effects": side_effects or [],
                "validation_warnings": warnings or [],
            },
            error_details=error_details,
            business_impact=business_impact,
        )
        try:
            return await asyncio.wait_for(self.audit_trail.append(record), timeout=self.timeout_seconds)
        except Exception as e:
            # The transition outcome stands; a lost audit record is an operational emergency
            logger.critical("Failed to write audit record for %s (%s -> %s): %s",
                            document_id, from_status, to_status, str(e))
            return None

    async def _notify(self, document, from_status, to_status, context) -> None:
        if not self._notification_handlers:
            return
        notification = {
            "type": "STATUS_CHANGED",
            "document_id": document.get("document_id"),
            "document_type": document.get("document_type"),
            "employee_id": document.get("employee_id"),
            "from_status": from_status,
            "to_status": to_status,
            "priority": notification_priority(to_status),
            "changed_by": context.user_id,
            "timestamp": self._clock().isoformat(),
        }
        for handler in self._notification_handlers:
            try:
                await handler(notification)
            except Exception as e:
                logger.error("Notification handler failed for %s: %s", notification["document_id"], str(e))

    # ---------------------------------------------------------------- batch

    async def batch_transition(
        self,
        document_ids: List[str],
        target_status: Union[str, DocumentStatus],
        context: Optional[TransitionContext] = None,
    ) -> Dict[str, Any]:
        """Transition many documents; individual failures never stop the batch."""
        context = context or TransitionContext()
        unique_ids = list(dict.fromkeys(document_ids))
        results: List[TransitionResult] = []

        for offset in range(0, len(unique_ids), STATUS_BATCH_SIZE):
            chunk = unique_ids[offset:offset + STATUS_BATCH_SIZE]
            results.extend(await asyncio.gather(*[
                self.transition(
                    doc_id,
                    target_status,
                    context.derive(request_id=f"{context.request_id or 'batch'}-{doc_id}"),
                )
                for doc_id in chunk
            ]))

        successful = [r.document_id for r in results if r.success]
        failed = [
            {"document_id": r.document_id, "error": r.error.to_client_dict() if r.error else None}
            for r in results if not r.success
        ]
        logger.info("Batch transition to %s: %d successful, %d failed",
                    target_status, len(successful), len(failed))
        return {
            "total": len(results),
            "successful": successful,
            "failed": failed,
            "results": results,
        }

    # ---------------------------------------------------------------- queries

    async def get_status_history(self, document_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in await self.audit_trail.history(document_id, limit)]

    async def get_document_status(self, document_id: str, include_history: bool = False,
                                  history_limit: int = 50) -> Dict[str, Any]:
        """Current status, display info and (optionally) the audit history."""
        context = ErrorContext(operation="get_document_status", document_id=document_id)
        document = await self._call("load_document", self.documents.get(document_id), context)
        if document is None or document.get("is_deleted"):
            raise document_not_found(document_id, context)

        info = describe_status(document.get("status"))
        info.update({
            "document_id": document_id,
            "document_type": document.get("document_type"),
            "employee_id": document.get("employee_id"),
            "updated_at": document.get("updated_at"),
            "version": document.get("version", 1),
            "is_latest_version": document.get("is_latest_version", True),
        })
        if include_history:
            info["history"] = await self.get_status_history(document_id, history_limit)
        return info

    async def get_documents_by_status(self, status: Union[str, DocumentStatus], page: int = 1,
                                      page_size: int = 20) -> Dict[str, Any]:
        target = coerce_status(status)
        if target is None:
            raise WorkflowError(ErrorCode.INVALID_STATUS_TRANSITION, f"Unknown status {status!r}",
                                details={"field": "status", "received": status})
        page = max(page, 1)
        query = {"status": target.value, "is_deleted": {"$ne": True}}
        context = ErrorContext(operation="get_documents_by_status")
        total = await self._call("count_documents", self.documents.count(query), context)
        documents = await self._call(
            "find_documents",
            self.documents.find(query, sort=[("updated_at", -1)], skip=(page - 1) * page_size, limit=page_size),
            context,
        )
        return {
            "documents": documents,
            "total": total,
            "page": page,
            "page_size": page_size,
            "pages": (total + page_size - 1) // page_size if page_size else 0,
        }

    async def get_transition_statistics(self, start: Optional[datetime] = None,
                                        end: Optional[datetime] = None) -> Dict[str, Any]:
        return await self.audit_trail.statistics(start, end)
