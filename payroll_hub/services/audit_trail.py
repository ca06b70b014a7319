"""
Payroll Document Hub - Status Change Audit Trail

Append-only log of every status transition attempt (successful or not).

Records are immutable: the trail exposes append() and read operations only.
For a single document, records are strictly ordered by completion time; when
two transitions complete within the same clock tick (or the clock steps
backwards) changed_at is nudged forward by one microsecond and a
per-document sequence number breaks any remaining tie.
"""

import asyncio
import hashlib
import logging
import uuid
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Dict, List, Optional

from .repository import Repository

logger = logging.getLogger(__name__)


class RiskLevel:
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def compute_checksum(document_id: str, from_status: Optional[str], to_status: str,
                     changed_by: str, changed_at: str) -> str:
    payload = f"{document_id}|{from_status}|{to_status}|{changed_by}|{changed_at}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class StatusChangeAuditRecord:
    """One transition attempt. Frozen; never updated after append()."""
    document_id: str
    from_status: Optional[str]
    to_status: str
    trigger: str
    changed_by: str
    changed_at: str = ""
    audit_id: str = field(default_factory=lambda: f"audit_{uuid.uuid4().hex}")
    success: bool = True
    forced: bool = False
    reason: Optional[str] = None
    comments: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    approval_required: bool = False
    processing_time_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_details: Optional[Dict[str, Any]] = None
    business_impact: Optional[Dict[str, Any]] = None
    sequence: int = 0
    checksum: Optional[str] = None

    @property
    def risk_level(self) -> str:
        if self.business_impact and self.business_impact.get("critical"):
            return RiskLevel.CRITICAL
        if self.error_details:
            return RiskLevel.HIGH
        if self.approval_required:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def expected_checksum(self) -> str:
        return compute_checksum(self.document_id, self.from_status, self.to_status,
                                self.changed_by, self.changed_at)

    def verify_integrity(self) -> bool:
        return self.checksum == self.expected_checksum()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["risk_level"] = self.risk_level
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusChangeAuditRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class AuditTrail:
    """Append-only audit store for status changes."""

    def __init__(self, repository: Repository,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
                 cache_size: int = 1024):
        self.repository = repository
        self._clock = clock
        # Entries vanish once no append holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # document_id -> (last changed_at, last sequence), least recently used first;
        # an evicted document is re-read from the repository
        self._last: "OrderedDict[str, tuple]" = OrderedDict()
        self.cache_size = cache_size

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def _last_entry(self, document_id: str) -> tuple:
        if document_id in self._last:
            self._last.move_to_end(document_id)
            return self._last[document_id]
        latest = await self.repository.find(
            {"document_id": document_id},
            sort=[("changed_at", -1), ("sequence", -1)],
            limit=1,
        )
        if latest:
            entry = (datetime.fromisoformat(latest[0]["changed_at"]), latest[0].get("sequence", 0))
        else:
            entry = (None, 0)
        self._remember(document_id, entry)
        return entry

    def _remember(self, document_id: str, entry: tuple) -> None:
        self._last[document_id] = entry
        self._last.move_to_end(document_id)
        while len(self._last) > self.cache_size:
            self._last.popitem(last=False)

    async def append(self, record: StatusChangeAuditRecord) -> str:
        """Store a record. The only mutation the trail supports."""
        async with self._lock_for(record.document_id):
            last_at, last_seq = await self._last_entry(record.document_id)
            changed_at = self._clock()
            if last_at is not None and changed_at <= last_at:
                changed_at = last_at + timedelta(microseconds=1)
            sequence = last_seq + 1
            changed_at_iso = changed_at.isoformat()

            data = record.to_dict()
            data.pop("risk_level", None)
            data.update({
                "changed_at": changed_at_iso,
                "sequence": sequence,
                "checksum": compute_checksum(record.document_id, record.from_status,
                                             record.to_status, record.changed_by, changed_at_iso),
            })
            stored = StatusChangeAuditRecord.from_dict(data)

            document = stored.to_dict()
            await self.repository.insert(document)
            self._remember(record.document_id, (changed_at, sequence))

        logger.info(
            "Audit %s: doc=%s, %s -> %s (trigger=%s, by=%s, success=%s)",
            stored.audit_id, stored.document_id, stored.from_status, stored.to_status,
            stored.trigger, stored.changed_by, stored.success,
        )
        return stored.audit_id

    async def history(self, document_id: str, limit: int = 50) -> List[StatusChangeAuditRecord]:
        """Records for a document, newest first."""
        rows = await self.repository.find(
            {"document_id": document_id},
            sort=[("changed_at", -1), ("sequence", -1)],
            limit=limit,
        )
        return [StatusChangeAuditRecord.from_dict(row) for row in rows]

    async def count(self, document_id: Optional[str] = None) -> int:
        query = {"document_id": document_id} if document_id else {}
        return await self.repository.count(query)

    async def statistics(self, start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregate transition stats over an optional time window."""
        query: Dict[str, Any] = {}
        window: Dict[str, str] = {}
        if start:
            window["$gte"] = start.isoformat()
        if end:
            window["$lte"] = end.isoformat()
        if window:
            query["changed_at"] = window

        rows = await self.repository.find(query)
        total = len(rows)
        by_trigger: Dict[str, int] = {}
        by_user: Dict[str, int] = {}
        by_transition: Dict[str, int] = {}
        errors = 0
        critical = 0
        processing_total = 0.0

        for row in rows:
            by_trigger[row["trigger"]] = by_trigger.get(row["trigger"], 0) + 1
            by_user[row["changed_by"]] = by_user.get(row["changed_by"], 0) + 1
            edge = f"{row.get('from_status')} → {row['to_status']}"
            by_transition[edge] = by_transition.get(edge, 0) + 1
            processing_total += row.get("processing_time_ms") or 0
            if row.get("error_details") or not row.get("success", True):
                errors += 1
            if (row.get("business_impact") or {}).get("critical"):
                critical += 1

        return {
            "total_transitions": total,
            "by_trigger": by_trigger,
            "by_user": by_user,
            "by_transition": by_transition,
            "average_processing_time_ms": round(processing_total / total, 2) if total else 0.0,
            "error_rate": round(errors / total, 4) if total else 0.0,
            "critical_transitions": critical,
        }
