"""Scheduled task execution: polls due tasks and applies them to the directory."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Protocol

from .audit import SYSTEM_ACTOR, AuditLog
from .models import (
    AuditAction,
    RelatedTable,
    ScheduledTask,
    TaskStatus,
    TaskType,
    parse_datetime,
    utc_now,
)
from .storage import TaskStore, VacationStore

logger = logging.getLogger(__name__)


class AccountDirectory(Protocol):
    """The two directory mutations scheduled tasks can trigger."""

    def disable_account(self, user_id: str) -> None:
        ...

    def enable_account(self, user_id: str) -> None:
        ...


class TaskResolutionError(RuntimeError):
    """A task's related entity is missing or unusable. Never retried."""


_AUDIT_ACTIONS = {
    TaskType.VACATION_START: AuditAction.VACATION_EXECUTE_DISABLE,
    TaskType.VACATION_END: AuditAction.VACATION_EXECUTE_ENABLE,
}


@dataclass
class BatchSummary:
    started_at: datetime
    due: int = 0
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "startedAt": self.started_at.isoformat(),
            "due": self.due,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


class SchedulerWorker:
    """Runs one batch of due tasks per call to :meth:`run_once`.

    Tasks are processed one at a time in ``run_at`` order. Each task ends
    ``COMPLETED`` or ``FAILED``; a failure is recorded on that task only and
    the batch carries on. Failed tasks are not retried. Tasks whose type this
    worker does not know are left ``PENDING`` for a worker that does.

    Overlapping batches are only safe with ``claim_tasks`` enabled, which
    moves each task to ``RUNNING`` before the directory call.
    """

    def __init__(
        self,
        tasks: TaskStore,
        vacations: VacationStore,
        directory: AccountDirectory,
        audit: AuditLog,
        claim_tasks: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks = tasks
        self.vacations = vacations
        self.directory = directory
        self.audit = audit
        self.claim_tasks = claim_tasks
        self.clock = clock

    def run_once(self, now: Optional[datetime] = None) -> BatchSummary:
        now = parse_datetime(now) if now is not None else self.clock()
        summary = BatchSummary(started_at=now)
        due = self.tasks.list_pending(now)
        summary.due = len(due)
        if not due:
            logger.debug("No scheduled tasks due at %s", now.isoformat())
            return summary

        logger.info("Found %s due scheduled task(s) at %s", len(due), now.isoformat())
        for task in due:
            outcome = self._process(task, now)
            getattr(summary, outcome).append(task.id)

        logger.info(
            "Scheduled batch finished: %s completed, %s failed, %s skipped",
            len(summary.completed),
            len(summary.failed),
            len(summary.skipped),
        )
        return summary

    def _process(self, task: ScheduledTask, now: datetime) -> str:
        user_id: Optional[str] = None
        task_type = task.task_type
        if task_type is None:
            logger.warning(
                "Skipping task %s with unknown type %r; leaving it pending", task.id, task.type
            )
            return "skipped"
        action: AuditAction = _AUDIT_ACTIONS[task_type]
        try:
            user_id = self._resolve_user(task)

            if self.claim_tasks and not self.tasks.claim(task.id):
                logger.info("Task %s was claimed elsewhere; skipping", task.id)
                return "skipped"

            logger.info("Processing %s for %s (task=%s)", task.type, user_id, task.id)
            if task_type is TaskType.VACATION_START:
                self.directory.disable_account(user_id)
            else:
                self.directory.enable_account(user_id)
        except TaskResolutionError as exc:
            logger.error("Task %s failed: %s", task.id, exc)
            self._mark_failed(task, str(exc), now)
            return "failed"
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Task %s (%s) failed: %s", task.id, task.type, message)
            if user_id is not None:
                self.audit.log(
                    action=action,
                    actor=SYSTEM_ACTOR,
                    target=user_id,
                    details=self._details(task),
                    success=False,
                    error=message,
                )
            self._mark_failed(task, message, now)
            return "failed"

        # The directory change has been applied; a failed status write must
        # not turn it into a failure.
        try:
            self.tasks.update_status(task.id, TaskStatus.COMPLETED, executed_at=now)
        except Exception:
            logger.exception(
                "Executed %s for %s but could not mark task %s completed",
                task.type,
                user_id,
                task.id,
            )
        self.audit.log(
            action=action,
            actor=SYSTEM_ACTOR,
            target=user_id,
            details=self._details(task),
            success=True,
        )
        logger.info("Executed %s for %s (task=%s)", task.type, user_id, task.id)
        return "completed"

    def _resolve_user(self, task: ScheduledTask) -> str:
        kind = task.related_kind
        if kind is not RelatedTable.VACATIONS:
            raise TaskResolutionError(f"Unknown related table: {task.related_table!r}")

        vacation = self.vacations.get(task.related_id)
        if vacation is None:
            raise TaskResolutionError(
                f"Related vacation not found (relatedId={task.related_id})"
            )
        user_id = (vacation.user_id or "").strip()
        if not user_id:
            raise TaskResolutionError(f"User ID missing on vacation {vacation.id}")
        return user_id

    def _mark_failed(self, task: ScheduledTask, message: str, now: datetime) -> None:
        try:
            self.tasks.update_status(task.id, TaskStatus.FAILED, error=message, executed_at=now)
        except Exception:  # pragma: no cover - store outage mid-batch
            logger.exception("Unable to record failure for task %s", task.id)

    @staticmethod
    def _details(task: ScheduledTask) -> dict:
        return {
            "runAt": task.run_at.isoformat(),
            "scheduleId": task.id,
            "vacationId": task.related_id,
        }


def run_forever(
    worker: SchedulerWorker,
    interval_seconds: int,
    stop_event: Optional[threading.Event] = None,
    run_on_start: bool = True,
) -> None:
    """Invoke ``worker.run_once`` every ``interval_seconds`` until stopped."""

    stop_event = stop_event or threading.Event()
    logger.info("Scheduler loop started (interval %ss)", interval_seconds)
    if not run_on_start and stop_event.wait(interval_seconds):
        return
    while not stop_event.is_set():
        try:
            worker.run_once()
        except Exception as exc:  # pragma: no cover - worker resilience
            logger.exception("Scheduler worker encountered an error: %s", exc)
        if stop_event.wait(interval_seconds):
            break
    logger.info("Scheduler loop stopped")


def start_background_worker(
    worker: SchedulerWorker,
    interval_seconds: int,
    run_on_start: bool = True,
) -> tuple[threading.Thread, threading.Event]:
    stop_event = threading.Event()
    thread = threading.Thread(
        target=run_forever,
        args=(worker, interval_seconds, stop_event, run_on_start),
        name="scheduler-worker",
        daemon=True,
    )
    thread.start()
    return thread, stop_event


__all__ = [
    "AccountDirectory",
    "BatchSummary",
    "SchedulerWorker",
    "TaskResolutionError",
    "run_forever",
    "start_background_worker",
]
