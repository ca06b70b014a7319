"""
Tests for the append-only status change audit trail.
"""
from datetime import datetime, timedelta, timezone

import pytest

from payroll_hub.services.audit_trail import AuditTrail, RiskLevel, StatusChangeAuditRecord
from payroll_hub.services.repository import InMemoryRepository

FROZEN = datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)


def _record(document_id="DOC1", from_status="GENERATED", to_status="APPROVED", **fields):
    return StatusChangeAuditRecord(
        document_id=document_id,
        from_status=from_status,
        to_status=to_status,
        trigger="USER_ACTION",
        changed_by="hr.manager",
        **fields,
    )


class TestAppend:

    @pytest.mark.asyncio
    async def test_changed_at_strictly_increases_under_a_frozen_clock(self):
        trail = AuditTrail(InMemoryRepository("audit_id"), clock=lambda: FROZEN)
        for _ in range(3):
            await trail.append(_record())

        history = await trail.history("DOC1")
        stamps = [datetime.fromisoformat(r.changed_at) for r in reversed(history)]
        assert stamps[0] == FROZEN
        assert stamps[1] == FROZEN + timedelta(microseconds=1)
        assert stamps[2] > stamps[1]
        assert [r.sequence for r in history] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_clock_going_backwards(self):
        ticks = iter([FROZEN, FROZEN - timedelta(seconds=5)])
        trail = AuditTrail(InMemoryRepository("audit_id"), clock=lambda: next(ticks))
        await trail.append(_record())
        await trail.append(_record(from_status="APPROVED", to_status="SENT"))

        newest, oldest = await trail.history("DOC1")
        assert newest.to_status == "SENT"
        assert newest.changed_at > oldest.changed_at

    @pytest.mark.asyncio
    async def test_checksum_is_verifiable(self):
        trail = AuditTrail(InMemoryRepository("audit_id"))
        await trail.append(_record())
        (record,) = await trail.history("DOC1")
        assert record.verify_integrity()

    @pytest.mark.asyncio
    async def test_ordering_resumes_from_stored_records(self):
        repo = InMemoryRepository("audit_id")
        await AuditTrail(repo, clock=lambda: FROZEN).append(_record())
        # A fresh trail over the same store must not reuse the last timestamp
        await AuditTrail(repo, clock=lambda: FROZEN).append(_record())

        history = await AuditTrail(repo).history("DOC1")
        assert history[0].sequence == 2
        assert history[0].changed_at > history[1].changed_at

    @pytest.mark.asyncio
    async def test_cache_is_bounded_and_evicted_documents_keep_ordering(self):
        trail = AuditTrail(InMemoryRepository("audit_id"), clock=lambda: FROZEN, cache_size=2)
        for document_id in ("DOC1", "DOC2", "DOC3"):
            await trail.append(_record(document_id=document_id))

        assert list(trail._last) == ["DOC2", "DOC3"]
        await trail.append(_record(document_id="DOC1", from_status="APPROVED", to_status="SENT"))

        newest, oldest = await trail.history("DOC1")
        assert (newest.sequence, oldest.sequence) == (2, 1)
        assert newest.changed_at > oldest.changed_at
        assert len(trail._last) == 2

    @pytest.mark.asyncio
    async def test_records_are_frozen(self):
        record = _record()
        with pytest.raises(AttributeError):
            record.to_status = "SENT"

    @pytest.mark.asyncio
    async def test_history_limit_and_count(self):
        trail = AuditTrail(InMemoryRepository("audit_id"))
        for _ in range(4):
            await trail.append(_record())
        await trail.append(_record(document_id="DOC2"))
        assert len(await trail.history("DOC1", limit=2)) == 2
        assert await trail.count("DOC1") == 4
        assert await trail.count() == 5


class TestRiskLevel:

    def test_levels(self):
        assert _record().risk_level == RiskLevel.LOW
        assert _record(approval_required=True).risk_level == RiskLevel.MEDIUM
        assert _record(error_details={"error_type": "X"}).risk_level == RiskLevel.HIGH
        assert _record(business_impact={"critical": True}).risk_level == RiskLevel.CRITICAL


class TestStatistics:

    @pytest.mark.asyncio
    async def test_aggregates(self):
        trail = AuditTrail(InMemoryRepository("audit_id"))
        await trail.append(_record(processing_time_ms=10))
        await trail.append(_record(processing_time_ms=30, business_impact={"critical": True}, forced=True))
        await trail.append(_record(
            from_status="SENT", to_status="GENERATED", success=False,
            error_details={"error_type": "INVALID_STATUS_TRANSITION"},
        ))

        stats = await trail.statistics()
        assert stats["total_transitions"] == 3
        assert stats["by_trigger"] == {"USER_ACTION": 3}
        assert stats["by_user"] == {"hr.manager": 3}
        assert stats["by_transition"]["GENERATED → APPROVED"] == 2
        assert stats["average_processing_time_ms"] == pytest.approx(13.33)
        assert stats["error_rate"] == pytest.approx(0.3333)
        assert stats["critical_transitions"] == 1

    @pytest.mark.asyncio
    async def test_window(self):
        trail = AuditTrail(InMemoryRepository("audit_id"), clock=lambda: FROZEN)
        await trail.append(_record())
        stats = await trail.statistics(start=FROZEN + timedelta(hours=1))
        assert stats["total_transitions"] == 0
        assert stats["error_rate"] == 0.0
