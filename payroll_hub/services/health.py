"""
Payroll Document Hub - Health Reporter

Composite health verdict for the document engine. Each sub-check returns
healthy / warning / critical against HEALTH_THRESHOLDS; the overall status
is the worst of them. A sub-check that times out or raises is critical.

Base checks: liveness, database, storage, status-service
Detailed checks add: system (psutil), data-integrity, error-rate,
generation-queue

Maintenance actions are separate, administrator-only mutations.
"""

import asyncio
import logging
import os
import platform
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil

from ..config import (
    ADMIN_ROLE, ENVIRONMENT, ERROR_WINDOW_MINUTES, GENERATION_QUEUE, HEALTH_CHECK_TIMEOUT_SECONDS,
    HEALTH_THRESHOLDS, SERVICE_VERSION, STORAGE_RETENTION_DAYS,
)
from .alerts import AlertNotifier
from .documents import DocumentLibrary
from .error_handler import ErrorHandler
from .errors import ErrorCode, WorkflowError
from .generation import DocumentGenerationPipeline
from .repository import Repository
from .status_rules import DocumentStatus, get_final_statuses
from .status_service import DocumentStatusService
from .storage import BlobStorage

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


HEALTH_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}

BASE_COMPONENTS = ["liveness", "database", "storage", "status-service"]
DETAILED_COMPONENTS = ["system", "data-integrity", "error-rate", "generation-queue"]

MAINTENANCE_ACTIONS = ["refresh-cache", "cleanup-storage", "cleanup-previews", "validate-documents",
                       "reset-metrics"]


def grade(value: float, metric: str) -> HealthStatus:
    """Compare a metric against its critical / warning thresholds."""
    if value > HEALTH_THRESHOLDS["critical"][metric]:
        return HealthStatus.CRITICAL
    if value > HEALTH_THRESHOLDS["warning"][metric]:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def worst(statuses: List[HealthStatus]) -> HealthStatus:
    return max(statuses, key=HEALTH_RANK.__getitem__, default=HealthStatus.HEALTHY)


def http_status_for(status: HealthStatus) -> int:
    return 503 if HealthStatus(status) == HealthStatus.CRITICAL else 200


@dataclass
class HealthCheck:
    component: str
    status: HealthStatus
    message: str
    response_time_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "status": self.status.value,
            "message": self.message,
            "response_time_ms": self.response_time_ms,
            "details": self.details,
            "checked_at": self.checked_at,
        }


@dataclass
class SystemHealth:
    status: HealthStatus
    timestamp: str
    checks: List[HealthCheck]
    uptime: float
    version: str = SERVICE_VERSION
    environment: str = ENVIRONMENT
    metrics: Optional[Dict[str, Any]] = None
    alerts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "uptime": self.uptime,
            "version": self.version,
            "environment": self.environment,
            "checks": [c.to_dict() for c in self.checks],
            "metrics": self.metrics,
            "alerts": self.alerts,
        }


class HealthReporter:
    """Runs health checks and maintenance actions."""

    def __init__(
        self,
        documents: Repository,
        storage: BlobStorage,
        status_service: DocumentStatusService,
        pipeline: Optional[DocumentGenerationPipeline] = None,
        error_handler: Optional[ErrorHandler] = None,
        notifier: Optional[AlertNotifier] = None,
        library: Optional[DocumentLibrary] = None,
        check_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
        cache_ttl_seconds: float = 10.0,
        disk_path: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.documents = documents
        self.storage = storage
        self.status_service = status_service
        self.pipeline = pipeline
        self.error_handler = error_handler or status_service.error_handler
        self.notifier = notifier or self.error_handler.notifier
        self.library = library or DocumentLibrary(documents, storage, clock=clock)
        self.check_timeout = check_timeout
        self.cache_ttl_seconds = cache_ttl_seconds
        self.disk_path = disk_path or os.path.abspath(os.sep)
        self._clock = clock
        self._started = time.monotonic()
        self._cache: Dict[tuple, tuple] = {}
        self._checks: Dict[str, Callable[[], Awaitable[HealthCheck]]] = {
            "liveness": self._check_liveness,
            "database": self._check_database,
            "storage": self._check_storage,
            "status-service": self._check_status_service,
            "system": self._check_system,
            "data-integrity": self._check_data_integrity,
            "error-rate": self._check_error_rate,
            "generation-queue": self._check_generation_queue,
        }

    # ------------------------------------------------------------------ check

    async def check(self, detailed: bool = False, component: Optional[str] = None,
                    include_metrics: bool = False) -> SystemHealth:
        components = BASE_COMPONENTS + (DETAILED_COMPONENTS if detailed else [])
        if component is not None:
            if component not in self._checks:
                raise WorkflowError(
                    ErrorCode.INVALID_SELECTION_CRITERIA,
                    f"Unknown health component {component!r}",
                    details={"field": "component", "expected": list(self._checks), "received": component},
                )
            components = [component]

        key = (detailed, component, include_metrics)
        cached = self._cache.get(key)
        if cached and time.monotonic() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        checks = await asyncio.gather(*[self._run_check(name) for name in components])
        status = worst([c.status for c in checks])
        alerts = [f"{c.component}: {c.message}" for c in checks if c.status == HealthStatus.CRITICAL]

        health = SystemHealth(
            status=status,
            timestamp=self._clock().isoformat(),
            checks=list(checks),
            uptime=round(time.monotonic() - self._started, 2),
            alerts=alerts,
        )
        if include_metrics:
            health.metrics = await self.collect_metrics()

        if alerts:
            await self.notifier.send("HEALTH_CRITICAL", {"status": status.value, "alerts": alerts})
        elif status == HealthStatus.WARNING:
            logger.warning("Health check warning: %s",
                           ", ".join(c.component for c in checks if c.status == HealthStatus.WARNING))

        self._cache[key] = (time.monotonic(), health)
        return health

    async def _run_check(self, name: str) -> HealthCheck:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(self._checks[name](), timeout=self.check_timeout)
        except asyncio.TimeoutError:
            message = f"Check timed out after {self.check_timeout}s"
        except Exception as e:
            message = f"Check failed: {e}"
        logger.error("Health check %s critical: %s", name, message)
        return HealthCheck(
            component=name,
            status=HealthStatus.CRITICAL,
            message=message,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    # ----------------------------------------------------------------- checks

    async def _check_liveness(self) -> HealthCheck:
        return HealthCheck(component="liveness", status=HealthStatus.HEALTHY, message="Service is responding")

    async def _check_database(self) -> HealthCheck:
        started = time.perf_counter()
        await self.documents.ping()
        await self.documents.find({}, limit=1)
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        return HealthCheck(
            component="database",
            status=grade(elapsed, "database_response_time"),
            message=f"Database responding in {elapsed:.0f}ms",
            response_time_ms=elapsed,
        )

    async def _check_storage(self) -> HealthCheck:
        started = time.perf_counter()
        round_trip = await self.storage.health_check()
        metrics = await self.storage.get_metrics()
        elapsed = round((time.perf_counter() - started) * 1000, 2)

        statuses = [
            grade(elapsed, "storage_response_time"),
            grade(metrics["error_rate"], "error_rate"),
            grade(metrics["storage_utilization"], "disk_usage"),
        ]
        if not round_trip["healthy"]:
            statuses.append(HealthStatus.CRITICAL)
        status = worst(statuses)
        message = "Storage healthy" if status == HealthStatus.HEALTHY else (
            f"Storage degraded: {elapsed:.0f}ms, utilization {metrics['storage_utilization']:.1%}, "
            f"error rate {metrics['error_rate']:.2%}"
        )
        return HealthCheck(
            component="storage",
            status=status,
            message=message,
            response_time_ms=elapsed,
            details={
                "provider": round_trip["provider"],
                "round_trip_ok": round_trip["healthy"],
                "utilization": metrics["storage_utilization"],
                "error_rate": metrics["error_rate"],
                "total_files": metrics["total_files"],
                "total_size": metrics["total_size"],
            },
        )

    async def _check_status_service(self) -> HealthCheck:
        started = time.perf_counter()
        await self.status_service.get_documents_by_status(DocumentStatus.GENERATED, page_size=1)
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        slow = elapsed > HEALTH_THRESHOLDS["critical"]["database_response_time"]
        return HealthCheck(
            component="status-service",
            status=HealthStatus.WARNING if slow else HealthStatus.HEALTHY,
            message=f"Status service responding in {elapsed:.0f}ms",
            response_time_ms=elapsed,
        )

    async def _check_system(self) -> HealthCheck:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(self.disk_path)
        memory_usage = memory.percent / 100
        disk_usage = disk.percent / 100
        status = worst([grade(memory_usage, "memory_usage"), grade(disk_usage, "disk_usage")])
        return HealthCheck(
            component="system",
            status=status,
            message=f"Memory {memory_usage:.1%}, disk {disk_usage:.1%}",
            details={
                "memory": {
                    "total_gb": round(memory.total / (1024 ** 3), 2),
                    "available_gb": round(memory.available / (1024 ** 3), 2),
                    "usage_percent": memory.percent,
                },
                "disk": {
                    "path": self.disk_path,
                    "total_gb": round(disk.total / (1024 ** 3), 2),
                    "free_gb": round(disk.free / (1024 ** 3), 2),
                    "usage_percent": disk.percent,
                },
                "cpu_count": psutil.cpu_count(),
                "python_version": platform.python_version(),
            },
        )

    async def _check_data_integrity(self) -> HealthCheck:
        now = self._clock()
        stuck_before = (now - timedelta(milliseconds=GENERATION_QUEUE["timeout_ms"])).isoformat()
        live = {"is_deleted": {"$ne": True}}

        unknown_status = await self.documents.count({
            **live, "status": {"$nin": [s.value for s in DocumentStatus]},
        })
        stuck_generating = await self.documents.count({
            **live, "status": DocumentStatus.GENERATING.value, "updated_at": {"$lt": stuck_before},
        })
        missing_file = await self.documents.count({
            **live, "status": {"$in": get_final_statuses()}, "file_info": None,
        })
        total = unknown_status + stuck_generating + missing_file

        if total > 10:
            status = HealthStatus.CRITICAL
        elif total > 0:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY
        return HealthCheck(
            component="data-integrity",
            status=status,
            message="Data integrity checks passed" if not total else f"Data integrity issues found: {total} total",
            details={
                "unknown_status": unknown_status,
                "stuck_generating": stuck_generating,
                "missing_file": missing_file,
                "total_issues": total,
            },
        )

    async def _check_error_rate(self) -> HealthCheck:
        since = self._clock() - timedelta(minutes=ERROR_WINDOW_MINUTES)
        stats = await self.status_service.get_transition_statistics(start=since)
        error_rate = stats["error_rate"]
        metrics = self.error_handler.get_error_metrics()
        return HealthCheck(
            component="error-rate",
            status=grade(error_rate, "error_rate"),
            message=f"Transition error rate {error_rate:.2%} over {ERROR_WINDOW_MINUTES} minutes",
            details={
                "transitions": stats["total_transitions"],
                "error_rate": error_rate,
                "total_errors": metrics["total_errors"],
                "recent_by_category": metrics["recent_by_category"],
            },
        )

    async def _check_generation_queue(self) -> HealthCheck:
        if self.pipeline is None:
            return HealthCheck(component="generation-queue", status=HealthStatus.HEALTHY,
                               message="No generation pipeline configured")
        stats = self.pipeline.queue_stats()
        status = HealthStatus.WARNING if stats["dead_letter"] else HealthStatus.HEALTHY
        return HealthCheck(
            component="generation-queue",
            status=status,
            message=f"{stats['pending']} pending, {stats['dead_letter']} dead-lettered",
            details=stats,
        )

    # ---------------------------------------------------------------- metrics

    async def collect_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {}
        collectors = {
            "storage": self.storage.get_metrics,
            "documents": self._document_counts,
            "transitions": self.status_service.get_transition_statistics,
        }
        for name, collect in collectors.items():
            try:
                metrics[name] = await asyncio.wait_for(collect(), timeout=self.check_timeout)
            except Exception as e:
                logger.error("Failed to collect %s metrics: %s", name, str(e))
                metrics[name] = {"error": str(e)}
        metrics["errors"] = self.error_handler.get_error_metrics()
        if self.pipeline is not None:
            metrics["generation_queue"] = self.pipeline.queue_stats()
        return metrics

    async def _document_counts(self) -> Dict[str, Any]:
        by_status = {}
        for status in DocumentStatus:
            by_status[status.value] = await self.documents.count({
                "status": status.value, "is_deleted": {"$ne": True},
            })
        return {"total": sum(by_status.values()), "by_status": by_status}

    # ------------------------------------------------------------ maintenance

    async def run_maintenance(self, action: str, params: Optional[Dict[str, Any]] = None,
                              actor_id: str = "system", actor_role: Optional[str] = None) -> Dict[str, Any]:
        """Administrator-only maintenance. Unknown actions are rejected."""
        if actor_role != ADMIN_ROLE:
            raise WorkflowError(
                ErrorCode.INSUFFICIENT_PERMISSIONS,
                f"Maintenance requires the {ADMIN_ROLE} role",
                details={"action": action, "received": actor_role, "expected": ADMIN_ROLE},
            )
        if action not in MAINTENANCE_ACTIONS:
            raise WorkflowError(
                ErrorCode.INVALID_OPERATION_TYPE,
                f"Unknown maintenance action {action!r}",
                details={"field": "action", "expected": MAINTENANCE_ACTIONS, "received": action},
            )
        params = params or {}
        logger.info("Maintenance %s requested by %s", action, actor_id)

        if action == "refresh-cache":
            self._cache.clear()
            result: Dict[str, Any] = {"message": "Health cache refreshed"}
        elif action == "cleanup-storage":
            retention_days = int(params.get("retention_days", STORAGE_RETENTION_DAYS))
            result = await self.library.cleanup_expired_documents(retention_days)
        elif action == "cleanup-previews":
            if self.pipeline is None:
                raise WorkflowError(ErrorCode.CONFIGURATION_ERROR, "No generation pipeline configured")
            result = await self.pipeline.cleanup_expired_previews()
        elif action == "validate-documents":
            result = await self._validate_documents(int(params.get("limit", 100)))
        else:
            self.error_handler.reset_metrics()
            result = {"message": "Error metrics reset"}

        return {"action": action, "result": result, "timestamp": self._clock().isoformat()}

    async def _validate_documents(self, limit: int) -> Dict[str, Any]:
        """Re-read stored files and verify their checksums."""
        documents = await self.documents.find(
            {"is_deleted": {"$ne": True}, "file_info": {"$ne": None}},
            sort=[("updated_at", -1)],
            limit=limit,
        )
        valid, corrupted, missing = 0, [], []
        for document in documents:
            file_info = document.get("file_info") or {}
            path = file_info.get("path")
            if not path or not await self.storage.exists(path):
                missing.append(document["document_id"])
                continue
            try:
                await self.storage.retrieve(path, file_info.get("checksum"))
                valid += 1
            except WorkflowError as e:
                logger.error("Document %s failed validation: %s", document["document_id"], e.message)
                corrupted.append(document["document_id"])
        return {
            "documents_checked": len(documents),
            "valid_documents": valid,
            "corrupted_documents": corrupted,
            "missing_documents": missing,
        }
