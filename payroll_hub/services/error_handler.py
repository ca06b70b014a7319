"""
Payroll Document Hub - Global Error Handler

Central sink for WorkflowErrors:
1. Logs each error once, at a level derived from its severity
2. Tracks in-memory metrics per error code
3. Raises alerts for CRITICAL errors and for error spikes per category
4. Runs automated recovery actions until one succeeds
"""

import logging
from collections import deque
from datetime import datetime, timezone, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from ..config import ERROR_SPIKE_THRESHOLD, ERROR_WINDOW_MINUTES
from .alerts import AlertNotifier
from .errors import ErrorCategory, ErrorSeverity, WorkflowError

logger = logging.getLogger(__name__)

SEVERITY_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}

AlertHook = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class ErrorHandler:
    """Logs, counts and (when possible) recovers from workflow errors."""

    def __init__(
        self,
        notifier: Optional[AlertNotifier] = None,
        window_minutes: int = ERROR_WINDOW_MINUTES,
        spike_threshold: int = ERROR_SPIKE_THRESHOLD,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.notifier = notifier or AlertNotifier()
        self.window = timedelta(minutes=window_minutes)
        self.spike_threshold = spike_threshold
        self._clock = clock
        self._alert_hooks: List[AlertHook] = []
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._category_window: Dict[str, Deque[datetime]] = {}
        self._total_handled = 0
        self._last_reset = self._clock()

    def register_alert_hook(self, hook: AlertHook) -> None:
        self._alert_hooks.append(hook)

    async def handle(self, error: WorkflowError) -> bool:
        """
        Process an error. Returns True when an automated recovery action succeeded.

        An error is processed at most once; later calls with the same
        instance return False without logging, counting or alerting.
        """
        if error.handled:
            return False
        error.handled = True
        self._log(error)
        now = self._clock()
        self._record(error, now)

        if error.severity == ErrorSeverity.CRITICAL:
            await self._alert("CRITICAL_ERROR", {
                "code": error.code.value,
                "message": error.message,
                "context": error.context.to_dict(),
            })

        recent = self._window_count(error.category, now)
        if recent > self.spike_threshold:
            await self._alert("ERROR_SPIKE", {
                "category": error.category.value,
                "count": recent,
                "time_window_minutes": int(self.window.total_seconds() // 60),
            })

        return await self._attempt_recovery(error)

    def _log(self, error: WorkflowError) -> None:
        level = SEVERITY_LOG_LEVELS[error.severity]
        logger.log(
            level,
            "[%s] %s (severity=%s, category=%s, document=%s, request=%s)",
            error.code.value, error.message, error.severity.value, error.category.value,
            error.context.document_id, error.context.request_id,
            extra={"workflow_error": error.to_dict()},
        )

    def _record(self, error: WorkflowError, now: datetime) -> None:
        self._total_handled += 1
        key = error.code.value
        entry = self._metrics.get(key)
        if entry is None:
            entry = {
                "count": 0,
                "first_occurrence": now.isoformat(),
                "last_occurrence": now.isoformat(),
                "successful_recoveries": 0,
                "failed_recoveries": 0,
                "severity": error.severity.value,
                "category": error.category.value,
            }
            self._metrics[key] = entry
        entry["count"] += 1
        entry["last_occurrence"] = now.isoformat()

        window = self._category_window.setdefault(error.category.value, deque())
        window.append(now)

    def _window_count(self, category: ErrorCategory, now: datetime) -> int:
        window = self._category_window.get(category.value)
        if not window:
            return 0
        cutoff = now - self.window
        while window and window[0] < cutoff:
            window.popleft()
        return len(window)

    async def _alert(self, alert_type: str, data: Dict[str, Any]) -> None:
        await self.notifier.send(alert_type, data)
        for hook in self._alert_hooks:
            try:
                await hook(alert_type, data)
            except Exception as e:
                logger.error("Alert hook failed for %s: %s", alert_type, str(e))

    async def _attempt_recovery(self, error: WorkflowError) -> bool:
        candidates = [a for a in error.recovery_actions if a.automated and a.execute is not None]
        if not candidates:
            return False

        entry = self._metrics[error.code.value]
        for action in candidates:
            try:
                recovered = await action.execute()
            except Exception as e:
                logger.warning("Recovery action %s failed for %s: %s",
                               action.strategy.value, error.code.value, str(e))
                recovered = False
            if recovered:
                entry["successful_recoveries"] += 1
                logger.info("Recovered from %s via %s", error.code.value, action.strategy.value)
                return True

        entry["failed_recoveries"] += 1
        return False

    def get_error_metrics(self) -> Dict[str, Any]:
        now = self._clock()
        by_category = {c.value: self._window_count(c, now) for c in ErrorCategory}
        return {
            "total_errors": self._total_handled,
            "by_code": {code: dict(entry) for code, entry in self._metrics.items()},
            "recent_by_category": by_category,
            "window_minutes": int(self.window.total_seconds() // 60),
            "last_reset": self._last_reset.isoformat(),
        }

    def reset_metrics(self) -> None:
        self._metrics.clear()
        self._category_window.clear()
        self._total_handled = 0
        self._last_reset = self._clock()
        logger.info("Error metrics reset")
