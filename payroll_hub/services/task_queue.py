"""
Payroll Document Hub - Generation Task Queue

In-process queue for generation work that could not be admitted immediately.

- AdmissionController bounds simultaneous generation work (shared by the
  synchronous path and the queue workers)
- TaskQueue runs queued tasks with an optional start delay, fixed-delay
  retries up to max_attempts and a dead-letter list on exhaustion

Task state is mirrored into a repository so queued work is visible to status
queries. The sleep function is injectable so retry behaviour can be tested
without waiting on the wall clock.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import WorkflowError, from_exception
from .repository import Repository

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    COMPLETED = "COMPLETED"
    DEAD_LETTER = "DEAD_LETTER"
    CANCELLED = "CANCELLED"


ACTIVE_STATES = (TaskState.QUEUED, TaskState.RUNNING, TaskState.RETRY_SCHEDULED)
TERMINAL_STATES = (TaskState.COMPLETED, TaskState.DEAD_LETTER, TaskState.CANCELLED)


class AdmissionController:
    """Counting gate for generation work."""

    def __init__(self, max_concurrent: int):
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.active = 0

    def has_capacity(self) -> bool:
        return not self._semaphore.locked()

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            self.active += 1
            try:
                yield
            finally:
                self.active -= 1

    def stats(self) -> Dict[str, int]:
        return {"active": self.active, "max_concurrent": self.max_concurrent}


@dataclass
class QueuedTask:
    task_id: str
    payload: Dict[str, Any]
    max_attempts: int
    retry_delay: float
    attempts: int = 0
    state: TaskState = TaskState.QUEUED
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "payload": self.payload,
            "max_attempts": self.max_attempts,
            "retry_delay": self.retry_delay,
            "attempts": self.attempts,
            "state": self.state.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_attempts: int, retry_delay: float) -> "QueuedTask":
        return cls(
            task_id=data["task_id"],
            payload=data.get("payload") or {},
            max_attempts=data.get("max_attempts") or max_attempts,
            retry_delay=retry_delay if data.get("retry_delay") is None else data["retry_delay"],
            attempts=data.get("attempts", 0),
            state=TaskState(data.get("state", TaskState.QUEUED.value)),
            created_at=data.get("created_at") or datetime.now(timezone.utc).isoformat(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            last_error=data.get("last_error"),
        )


TaskHandler = Callable[[QueuedTask], Awaitable[Any]]
DeadLetterHandler = Callable[[QueuedTask, WorkflowError], Awaitable[None]]


class TaskQueue:
    """
    Delay / retry / dead-letter queue over an AdmissionController.

    Only live tasks are indexed by id. A task that reaches a terminal state
    moves to a bounded history of the most recent `history_size` finished
    tasks; older ones remain readable from the repository.
    """

    def __init__(
        self,
        handler: TaskHandler,
        admission: AdmissionController,
        repository: Optional[Repository] = None,
        on_dead_letter: Optional[DeadLetterHandler] = None,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        history_size: int = 500,
    ):
        self.handler = handler
        self.admission = admission
        self.repository = repository
        self.on_dead_letter = on_dead_letter
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.history_size = history_size
        self._sleep = sleep
        self._tasks: Dict[str, QueuedTask] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._order: List[str] = []
        self._finished: "OrderedDict[str, QueuedTask]" = OrderedDict()

    async def _persist(self, task: QueuedTask) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.set(task.task_id, task.to_dict())
        except Exception as e:
            logger.error("Failed to persist task %s: %s", task.task_id, str(e))

    async def enqueue(
        self,
        task_id: str,
        payload: Dict[str, Any],
        delay: float = 0.0,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> QueuedTask:
        existing = self._tasks.get(task_id)
        if existing and existing.state in ACTIVE_STATES:
            return existing

        task = QueuedTask(
            task_id=task_id,
            payload=payload,
            max_attempts=max_attempts or self.max_attempts,
            retry_delay=self.retry_delay if retry_delay is None else retry_delay,
        )
        await self._start(task, delay)
        logger.info("Queued task %s (position %d)", task_id, self.position(task_id))
        return task

    async def recover(self) -> List[QueuedTask]:
        """
        Re-enqueue tasks a previous process persisted in an active state.

        An interrupted RUNNING task keeps its attempt count, so a task that
        was on its last attempt gets exactly one more run.
        """
        if self.repository is None:
            return []
        stored = await self.repository.find(
            {"state": {"$in": [s.value for s in ACTIVE_STATES]}},
            sort=[("created_at", 1)],
        )
        recovered = []
        for record in stored:
            if record["task_id"] in self._tasks:
                continue
            task = QueuedTask.from_dict(record, self.max_attempts, self.retry_delay)
            task.state = TaskState.QUEUED
            await self._start(task, 0.0)
            recovered.append(task)
        if recovered:
            logger.warning("Recovered %d persisted task(s): %s", len(recovered),
                           ", ".join(t.task_id for t in recovered))
        return recovered

    async def _start(self, task: QueuedTask, delay: float) -> None:
        self._finished.pop(task.task_id, None)
        self._tasks[task.task_id] = task
        if task.task_id not in self._order:
            self._order.append(task.task_id)
        await self._persist(task)
        self._workers[task.task_id] = asyncio.create_task(self._run(task, delay))

    def _retire(self, task: QueuedTask) -> None:
        if self._tasks.get(task.task_id) is task:
            del self._tasks[task.task_id]
            if task.task_id in self._order:
                self._order.remove(task.task_id)
        if task.task_id not in self._tasks:
            self._finished[task.task_id] = task
            self._finished.move_to_end(task.task_id)
            while len(self._finished) > self.history_size:
                self._finished.popitem(last=False)

    async def _run(self, task: QueuedTask, delay: float) -> None:
        try:
            await self._attempt_until_done(task, delay)
        finally:
            if task.state in TERMINAL_STATES:
                self._retire(task)
            if self._workers.get(task.task_id) is asyncio.current_task():
                del self._workers[task.task_id]

    async def _attempt_until_done(self, task: QueuedTask, delay: float) -> None:
        if delay:
            await self._sleep(delay)

        while True:
            async with self.admission.slot():
                if task.state == TaskState.CANCELLED:
                    return
                task.state = TaskState.RUNNING
                task.attempts += 1
                task.started_at = task.started_at or datetime.now(timezone.utc).isoformat()
                await self._persist(task)
                try:
                    task.result = await self.handler(task)
                except Exception as e:
                    error = from_exception(e)
                    task.last_error = error.to_audit_error_details()
                    failure = error
                else:
                    task.state = TaskState.COMPLETED
                    task.completed_at = datetime.now(timezone.utc).isoformat()
                    await self._persist(task)
                    logger.info("Task %s completed after %d attempt(s)", task.task_id, task.attempts)
                    return

            if task.attempts >= task.max_attempts:
                task.state = TaskState.DEAD_LETTER
                task.completed_at = datetime.now(timezone.utc).isoformat()
                await self._persist(task)
                logger.error("Task %s dead-lettered after %d attempts: %s",
                             task.task_id, task.attempts, failure.message)
                if self.on_dead_letter:
                    try:
                        await self.on_dead_letter(task, failure)
                    except Exception as e:
                        logger.critical("Dead-letter handler failed for %s: %s", task.task_id, str(e))
                return

            task.state = TaskState.RETRY_SCHEDULED
            await self._persist(task)
            logger.warning("Task %s attempt %d/%d failed (%s), retrying in %.1fs",
                           task.task_id, task.attempts, task.max_attempts, failure.code.value, task.retry_delay)
            await self._sleep(task.retry_delay)

    async def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not started yet."""
        task = self._tasks.get(task_id)
        if task is None or task.state != TaskState.QUEUED:
            return False
        task.state = TaskState.CANCELLED
        task.completed_at = datetime.now(timezone.utc).isoformat()
        self._retire(task)
        await self._persist(task)
        logger.info("Task %s cancelled", task_id)
        return True

    def get(self, task_id: str) -> Optional[QueuedTask]:
        return self._tasks.get(task_id) or self._finished.get(task_id)

    def position(self, task_id: str) -> int:
        """1-based position among tasks still waiting to run (0 if not waiting)."""
        waiting = [t for t in self._order if t in self._tasks and self._tasks[t].state == TaskState.QUEUED]
        return waiting.index(task_id) + 1 if task_id in waiting else 0

    def pending_count(self) -> int:
        return len(self._tasks)

    def dead_letters(self) -> List[QueuedTask]:
        return [t for t in self._finished.values() if t.state == TaskState.DEAD_LETTER]

    def stats(self) -> Dict[str, Any]:
        by_state: Dict[str, int] = {}
        for task in list(self._tasks.values()) + list(self._finished.values()):
            by_state[task.state.value] = by_state.get(task.state.value, 0) + 1
        return {
            "pending": self.pending_count(),
            "dead_letter": len(self.dead_letters()),
            "by_state": by_state,
            "tracked": {"live": len(self._tasks), "workers": len(self._workers), "finished": len(self._finished)},
            **self.admission.stats(),
        }

    async def drain(self) -> None:
        """Wait for every worker started so far."""
        workers = [w for w in self._workers.values() if not w.done()]
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
