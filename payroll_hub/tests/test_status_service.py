"""
Tests for the document status transition engine.

Every call to transition() must append exactly one audit record, whether
the transition succeeds or fails, and must never raise.
"""
import asyncio
import gc
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from payroll_hub.services.errors import ErrorCode, WorkflowError
from payroll_hub.services.status_rules import DocumentStatus, TransitionTrigger
from payroll_hub.services.status_service import (
    DocumentStatusService, TransitionContext, make_working_hours_rule,
)

SATURDAY_MORNING = datetime(2024, 2, 3, 10, 0, tzinfo=timezone.utc)


class TestTransition:
    """Single-document transitions."""

    @pytest.mark.asyncio
    async def test_approve_generated_document(self, hub, make_document):
        await make_document("DOC1", "GENERATED")

        result = await hub.status_service.transition(
            "DOC1", "APPROVED",
            TransitionContext(user_id="hr.manager", approval_comments="Vérifié"),
        )

        assert result.success is True
        assert result.previous_status == "GENERATED"
        assert result.new_status == "APPROVED"
        assert result.side_effects_executed == ["stamp_approval"]
        assert result.validation_warnings == []
        document = await hub.documents.get("DOC1")
        assert document["status"] == "APPROVED"
        assert document["approval_info"]["approved_by"] == "hr.manager"
        assert document["approval_info"]["comments"] == "Vérifié"
        assert document["status_updated_by"] == "hr.manager"

        (record,) = await hub.audit_trail.history("DOC1")
        assert record.audit_id == result.audit_id
        assert record.from_status == "GENERATED"
        assert record.to_status == "APPROVED"
        assert record.approval_required is True
        assert record.success is True

    @pytest.mark.asyncio
    async def test_approval_without_comments_is_a_warning(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        result = await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(user_id="u1"))
        assert result.success is True
        assert result.validation_warnings == ["Approval recorded without comments"]

    @pytest.mark.asyncio
    async def test_illegal_edge_leaves_status_unchanged(self, hub, make_document):
        await make_document("DOC1", "SENT")

        result = await hub.status_service.transition("DOC1", "GENERATED")

        assert result.success is False
        assert result.error.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert result.error.details["allowed_transitions"] == ["ARCHIVED"]
        assert result.new_status == "SENT"
        assert (await hub.documents.get("DOC1"))["status"] == "SENT"

        (record,) = await hub.audit_trail.history("DOC1")
        assert record.success is False
        assert record.error_details["error_type"] == "INVALID_STATUS_TRANSITION"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("from_status,to_status", [
        ("CALCULATION_PENDING", "SENT"),
        ("GENERATED", "CALCULATION_PENDING"),
        ("ARCHIVED", "GENERATED"),
        ("APPROVED", "GENERATED"),
        ("PREVIEW_GENERATED", "GENERATED"),
    ])
    async def test_edges_outside_the_graph_are_rejected(self, hub, make_document, from_status, to_status):
        await make_document("DOC1", from_status)
        result = await hub.status_service.transition("DOC1", to_status)
        assert result.error.code == ErrorCode.INVALID_STATUS_TRANSITION
        assert (await hub.documents.get("DOC1"))["status"] == from_status
        assert await hub.audit_trail.count("DOC1") == 1

    @pytest.mark.asyncio
    async def test_missing_document(self, hub):
        result = await hub.status_service.transition("NOPE", "APPROVED")
        assert result.success is False
        assert result.error.code == ErrorCode.DOCUMENT_NOT_FOUND
        assert await hub.audit_trail.count("NOPE") == 1

    @pytest.mark.asyncio
    async def test_unknown_current_status(self, hub, make_document):
        await make_document("DOC1", "LEGACY_STATE")
        result = await hub.status_service.transition("DOC1", "ARCHIVED")
        assert result.error.code == ErrorCode.CURRENT_STATUS_UNKNOWN
        assert result.error.details["received"] == "LEGACY_STATE"

    @pytest.mark.asyncio
    async def test_unknown_target_status(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        result = await hub.status_service.transition("DOC1", "PUBLISHED")
        assert result.success is False
        assert result.error.code == ErrorCode.INVALID_STATUS_TRANSITION
        (record,) = await hub.audit_trail.history("DOC1")
        assert record.to_status == "PUBLISHED"

    @pytest.mark.asyncio
    async def test_one_audit_record_per_call(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        calls = ["APPROVED", "APPROVED", "GENERATED", "SENT", "SENT", "ARCHIVED"]
        for i, target in enumerate(calls, start=1):
            await hub.status_service.transition("DOC1", target, TransitionContext(sent_to=["a@b.ma"]))
            assert await hub.audit_trail.count("DOC1") == i

    @pytest.mark.asyncio
    async def test_document_locks_are_released_after_transitions(self, hub, make_document):
        for i in range(5):
            await make_document(f"DOC{i}", "GENERATED")
            await hub.status_service.transition(f"DOC{i}", "APPROVED", TransitionContext(user_id="u1"))
        gc.collect()
        assert len(hub.status_service._locks) == 0

    @pytest.mark.asyncio
    async def test_repeating_a_target_is_a_self_loop(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        first = await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(user_id="u1"))
        approved_at = (await hub.documents.get("DOC1"))["approval_info"]["approved_at"]

        second = await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(user_id="u2"))

        assert first.success is True
        assert second.success is False
        assert second.error.code == ErrorCode.INVALID_STATUS_TRANSITION
        document = await hub.documents.get("DOC1")
        assert document["approval_info"]["approved_at"] == approved_at
        assert document["approval_info"]["approved_by"] == "u1"

    @pytest.mark.asyncio
    async def test_document_updates_are_persisted_with_status(self, hub, make_document):
        await make_document("DOC1", "GENERATING")
        result = await hub.status_service.transition(
            "DOC1", "GENERATED",
            TransitionContext(trigger=TransitionTrigger.SYSTEM_EVENT,
                              document_updates={"file_info": {"path": "x.pdf"}}),
        )
        assert result.success is True
        document = await hub.documents.get("DOC1")
        assert document["file_info"] == {"path": "x.pdf"}
        assert document["generation_info"]["generated_at"]

    @pytest.mark.asyncio
    async def test_failure_transition_records_cause(self, hub, make_document):
        await make_document("DOC1", "GENERATING")
        cause = WorkflowError(ErrorCode.PDF_GENERATION_FAILED, "renderer crashed")

        await hub.status_service.transition(
            "DOC1", "GENERATION_FAILED",
            TransitionContext(trigger=TransitionTrigger.ERROR_EVENT, cause=cause),
        )

        document = await hub.documents.get("DOC1")
        assert document["error_info"]["failure_count"] == 1
        assert document["error_info"]["last_error"]["error_type"] == "PDF_GENERATION_FAILED"
        (record,) = await hub.audit_trail.history("DOC1")
        assert record.success is True
        assert record.trigger == "ERROR_EVENT"
        assert record.error_details["error_message"] == "renderer crashed"


class TestDistribution:
    """Reaching SENT."""

    @pytest.mark.asyncio
    async def test_sent_with_recipients(self, hub, make_document):
        await make_document("DOC1", "APPROVED")
        result = await hub.status_service.transition(
            "DOC1", "SENT", TransitionContext(user_id="payroll.officer", sent_to=["f.alaoui@example.ma"]),
        )
        assert result.success is True
        info = (await hub.documents.get("DOC1"))["distribution_info"]
        assert info["sent_to"] == ["f.alaoui@example.ma"]
        assert info["sent_by"] == "payroll.officer"
        assert info["delivery_method"] == "EMAIL"
        assert info["delivery_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_sent_without_recipients_records_empty_list(self, hub, make_document):
        await make_document("DOC1", "APPROVED")
        result = await hub.status_service.transition("DOC1", "SENT")
        assert result.success is True
        assert (await hub.documents.get("DOC1"))["distribution_info"]["sent_to"] == []
        assert len(result.validation_warnings) == 1
        assert "No recipients" in result.validation_warnings[0]


class TestForcedTransitions:
    """force bypasses the graph check only."""

    @pytest.mark.asyncio
    async def test_forced_transition_is_flagged_critical(self, hub, make_document, caplog):
        await make_document("DOC1", "SENT")

        with caplog.at_level(logging.WARNING, logger="payroll_hub.services.status_service"):
            result = await hub.status_service.transition(
                "DOC1", "GENERATED",
                TransitionContext(user_id="admin", force=True, reason="Correction"),
            )

        assert result.success is True
        assert (await hub.documents.get("DOC1"))["status"] == "GENERATED"
        (record,) = await hub.audit_trail.history("DOC1")
        assert record.forced is True
        assert record.business_impact["critical"] is True
        assert record.business_impact["classification"] == "FORCED_TRANSITION"
        assert record.risk_level == "CRITICAL"
        assert any("Forced status transition" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_force_on_a_legal_edge_is_not_flagged(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        await hub.status_service.transition("DOC1", "ARCHIVED", TransitionContext(force=True))
        (record,) = await hub.audit_trail.history("DOC1")
        assert record.forced is False
        assert record.business_impact is None

    @pytest.mark.asyncio
    async def test_force_never_allows_self_loop(self, hub, make_document):
        await make_document("DOC1", "APPROVED")
        result = await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(force=True))
        assert result.success is False
        assert result.error.code == ErrorCode.INVALID_STATUS_TRANSITION

    @pytest.mark.asyncio
    async def test_business_rules_still_apply_when_forced(self, hub, make_document):
        hub.status_service.register_business_rule(
            "working_hours", make_working_hours_rule(clock=lambda: SATURDAY_MORNING),
        )
        await make_document("DOC1", "GENERATED")

        result = await hub.status_service.transition(
            "DOC1", "SENT", TransitionContext(force=True, sent_to=["a@b.ma"]),
        )

        assert result.success is False
        assert result.error.code == ErrorCode.BUSINESS_RULE_VIOLATION
        assert (await hub.documents.get("DOC1"))["status"] == "GENERATED"

    @pytest.mark.asyncio
    async def test_working_hours_ignore_system_events(self, hub, make_document):
        hub.status_service.register_business_rule(
            "working_hours", make_working_hours_rule(clock=lambda: SATURDAY_MORNING),
        )
        await make_document("DOC1", "APPROVED")
        result = await hub.status_service.transition(
            "DOC1", "SENT", TransitionContext(trigger=TransitionTrigger.SCHEDULED_EVENT, sent_to=["a@b.ma"]),
        )
        assert result.success is True


class TestDependencyFailures:
    """Store failures and timeouts become structured errors."""

    @pytest.mark.asyncio
    async def test_store_failure_is_sanitized(self, hub):
        documents = MagicMock()
        documents.get = AsyncMock(side_effect=ConnectionError("mongodb://admin:pw@db refused"))
        service = DocumentStatusService(documents, hub.audit_trail, hub.error_handler)

        result = await service.transition("DOC1", "APPROVED")

        assert result.success is False
        assert result.error.code == ErrorCode.DATABASE_CONNECTION_FAILED
        client = result.to_dict()["error"]
        assert "pw@db" not in str(client)
        assert client["request_id"]
        assert await hub.audit_trail.count("DOC1") == 1

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, hub):
        async def slow_get(key):
            await asyncio.sleep(1)

        documents = MagicMock()
        documents.get = slow_get
        service = DocumentStatusService(documents, hub.audit_trail, hub.error_handler, timeout_seconds=0.01)

        result = await service.transition("DOC1", "APPROVED")

        assert result.error.code == ErrorCode.TIMEOUT_EXCEEDED

    @pytest.mark.asyncio
    async def test_audit_write_failure_does_not_undo_transition(self, hub, make_document, caplog):
        await make_document("DOC1", "GENERATED")
        audit_trail = MagicMock()
        audit_trail.append = AsyncMock(side_effect=RuntimeError("audit store down"))
        service = DocumentStatusService(hub.documents, audit_trail, hub.error_handler)

        with caplog.at_level(logging.CRITICAL, logger="payroll_hub.services.status_service"):
            result = await service.transition("DOC1", "ARCHIVED")

        assert result.success is True
        assert result.audit_id is None
        assert (await hub.documents.get("DOC1"))["status"] == "ARCHIVED"
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    @pytest.mark.asyncio
    async def test_failing_notification_handler_is_isolated(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        received = []

        async def broken(notification):
            raise RuntimeError("smtp down")

        async def recorder(notification):
            received.append(notification)

        hub.status_service.register_notification_handler(broken)
        hub.status_service.register_notification_handler(recorder)

        result = await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(comments="ok"))

        assert result.success is True
        assert received[0]["to_status"] == "APPROVED"
        assert received[0]["priority"] == "HIGH"


class TestBatchTransition:
    """Partial failure never aborts the batch."""

    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        await make_document("DOC2", "SENT")
        await make_document("DOC3", "GENERATED")

        outcome = await hub.status_service.batch_transition(
            ["DOC1", "DOC2", "DOC3", "MISSING"], DocumentStatus.ARCHIVED,
            TransitionContext(user_id="admin", reason="Year end"),
        )

        assert outcome["total"] == 4
        assert outcome["successful"] == ["DOC1", "DOC3"]
        assert [f["document_id"] for f in outcome["failed"]] == ["DOC2", "MISSING"]
        assert len(outcome["successful"]) + len(outcome["failed"]) == outcome["total"]
        assert outcome["failed"][1]["error"]["code"] == "DOCUMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_processed_once(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        outcome = await hub.status_service.batch_transition(["DOC1", "DOC1"], "ARCHIVED")
        assert outcome["total"] == 1
        assert await hub.audit_trail.count("DOC1") == 1

    @pytest.mark.asyncio
    async def test_all_fail(self, hub):
        outcome = await hub.status_service.batch_transition(["A", "B"], "ARCHIVED")
        assert outcome["successful"] == []
        assert len(outcome["failed"]) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, hub):
        outcome = await hub.status_service.batch_transition([], "ARCHIVED")
        assert outcome["total"] == 0
        assert outcome["successful"] == [] and outcome["failed"] == []


class TestQueries:

    @pytest.mark.asyncio
    async def test_document_status_with_history(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        await hub.status_service.transition("DOC1", "APPROVED", TransitionContext(comments="ok"))
        await hub.status_service.transition("DOC1", "SENT", TransitionContext(sent_to=["a@b.ma"]))

        info = await hub.status_service.get_document_status("DOC1", include_history=True, history_limit=1)

        assert info["status"] == "SENT"
        assert info["label"] == "Envoyé"
        assert info["allowed_transitions"] == ["ARCHIVED"]
        assert [h["to_status"] for h in info["history"]] == ["SENT"]

    @pytest.mark.asyncio
    async def test_deleted_document_is_not_found(self, hub, make_document):
        await make_document("DOC1", "GENERATED", is_deleted=True)
        with pytest.raises(WorkflowError) as exc:
            await hub.status_service.get_document_status("DOC1")
        assert exc.value.code == ErrorCode.DOCUMENT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_documents_by_status_paginates(self, hub, make_document):
        for i in range(5):
            await make_document(f"DOC{i}", "GENERATED", updated_at=f"2024-02-0{i + 1}T00:00:00+00:00")
        await make_document("DOC9", "GENERATED", is_deleted=True)

        page = await hub.status_service.get_documents_by_status("generated", page=2, page_size=2)

        assert page["total"] == 5
        assert page["pages"] == 3
        assert [d["document_id"] for d in page["documents"]] == ["DOC2", "DOC1"]

    @pytest.mark.asyncio
    async def test_documents_by_unknown_status(self, hub):
        with pytest.raises(WorkflowError):
            await hub.status_service.get_documents_by_status("PUBLISHED")

    @pytest.mark.asyncio
    async def test_transition_statistics(self, hub, make_document):
        await make_document("DOC1", "GENERATED")
        await hub.status_service.transition("DOC1", "ARCHIVED", TransitionContext(user_id="admin"))
        await hub.status_service.transition("DOC1", "GENERATED", TransitionContext(user_id="admin"))

        stats = await hub.status_service.get_transition_statistics()

        assert stats["total_transitions"] == 2
        assert stats["by_user"] == {"admin": 2}
        assert stats["error_rate"] == 0.5
