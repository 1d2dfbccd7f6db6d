from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal, session_scope
from report_cache import ReportCacheService
from services import BudgetReportService


logger = logging.getLogger(__name__)


class TaskType(str, Enum):
    refresh_report_cache = "refresh_report_cache"


class TaskState(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


ACTIVE_STATES = (TaskState.queued, TaskState.running)


@dataclass(frozen=True)
class TaskStatus:
    id: str
    type: TaskType
    user_id: Optional[int]
    state: TaskState = TaskState.queued
    processed: int = 0
    total: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class TaskProgress:
    """Handle a runner uses to publish progress for its task."""

    def __init__(self, manager: "BackgroundTaskManager", task_id: str, user_id: Optional[int]) -> None:
        self._manager = manager
        self.task_id = task_id
        self.user_id = user_id

    def report(
        self,
        processed: int,
        total: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        self._manager.update(self.task_id, processed=processed, total=total, message=message)


Runner = Callable[[Session, TaskProgress, threading.Event], None]


class BackgroundTaskManager:
    """In-memory task registry polled by clients.

    Runners report progress through :class:`TaskProgress` and watch a
    ``threading.Event`` for cancellation. Status snapshots handed out are
    immutable copies.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        self.session_factory = session_factory
        self._runners: dict[TaskType, Runner] = {}
        self._tasks: dict[str, TaskStatus] = {}
        self._queue: list[str] = []
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def register(self, task_type: TaskType, runner: Runner) -> None:
        self._runners[task_type] = runner

    def enqueue(
        self,
        task_type: TaskType,
        user_id: Optional[int],
        allow_duplicate: bool = False,
    ) -> TaskStatus:
        with self._lock:
            if not allow_duplicate:
                for status in self._tasks.values():
                    if (
                        status.type == task_type
                        and status.user_id == user_id
                        and status.state in ACTIVE_STATES
                    ):
                        return status
            status = TaskStatus(id=uuid.uuid4().hex, type=task_type, user_id=user_id)
            self._tasks[status.id] = status
            self._queue.append(status.id)
            self._cancel_events[status.id] = threading.Event()
            return status

    def get(self, task_id: str) -> Optional[TaskStatus]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_all(self) -> list[TaskStatus]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda s: s.enqueued_at)

    def update(self, task_id: str, **changes) -> None:
        changes = {k: v for k, v in changes.items() if v is not None}
        with self._lock:
            current = self._tasks.get(task_id)
            if current is not None:
                self._tasks[task_id] = replace(current, **changes)

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            status = self._tasks.get(task_id)
            if status is None or status.state not in ACTIVE_STATES:
                return False
            self._cancel_events[task_id].set()
            if status.state == TaskState.queued:
                if task_id in self._queue:
                    self._queue.remove(task_id)
                self._tasks[task_id] = replace(
                    status, state=TaskState.cancelled, finished_at=datetime.utcnow()
                )
            return True

    def run_next(self) -> Optional[TaskStatus]:
        with self._lock:
            task_id = self._queue.pop(0) if self._queue else None
        if task_id is None:
            return None
        return self.run(task_id)

    def run(self, task_id: str) -> TaskStatus:
        with self._lock:
            status = self._tasks.get(task_id)
            if status is None:
                raise ValueError("Task not found")
            if status.state != TaskState.queued:
                return status
            if task_id in self._queue:
                self._queue.remove(task_id)
            runner = self._runners.get(status.type)
            if runner is None:
                raise ValueError(f"No runner registered for {status.type.value}")
            cancel_event = self._cancel_events[task_id]
            self._tasks[task_id] = replace(
                status, state=TaskState.running, started_at=datetime.utcnow()
            )

        logger.info(f"task_started: id={task_id} type={status.type.value} user={status.user_id}")
        try:
            with session_scope(self.session_factory) as session:
                runner(session, TaskProgress(self, task_id, status.user_id), cancel_event)
        except Exception as exc:
            logger.exception(f"task_failed: id={task_id} type={status.type.value}")
            self._finish(task_id, TaskState.failed, error=str(exc))
        else:
            final = TaskState.cancelled if cancel_event.is_set() else TaskState.completed
            self._finish(task_id, final)
            logger.info(f"task_finished: id={task_id} state={final.value}")
        return self.get(task_id)

    def _finish(self, task_id: str, state: TaskState, error: Optional[str] = None) -> None:
        with self._lock:
            current = self._tasks[task_id]
            self._tasks[task_id] = replace(
                current, state=state, error=error, finished_at=datetime.utcnow()
            )


def refresh_report_cache(
    session: Session, status: TaskProgress, cancel_event: threading.Event
) -> None:
    """Recompute every dirty budget report, oldest first.

    Scoped to the task's user when it has one, otherwise all owners.
    """
    cache = ReportCacheService(session)
    total = cache.count_entries_to_refresh(status.user_id)
    status.report(0, total=total, message="Refreshing cached reports")

    processed = 0
    seen: set[tuple[int, object]] = set()
    while not cancel_event.is_set():
        nxt = cache.next_entry_to_refresh(status.user_id)
        if nxt is None:
            break
        owner_user_id, parameter = nxt
        if (owner_user_id, parameter) in seen:
            # recomputing did not clear the entry; its key does not match its range
            logger.warning(
                f"report_cache_refresh_stuck: owner={owner_user_id} "
                f"start={parameter.start} end={parameter.end}"
            )
            break
        seen.add((owner_user_id, parameter))

        BudgetReportService(session, user_id=owner_user_id).get_raw_data(
            parameter.start,
            parameter.end,
            parameter.date_basis,
            ignore_cache=True,
        )
        processed += 1
        status.report(processed, total=max(total, processed))

    status.report(processed, message="Cancelled" if cancel_event.is_set() else "Done")


def build_task_manager(session_factory: sessionmaker = SessionLocal) -> BackgroundTaskManager:
    manager = BackgroundTaskManager(session_factory)
    manager.register(TaskType.refresh_report_cache, refresh_report_cache)
    return manager
