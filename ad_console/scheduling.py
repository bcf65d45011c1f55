"""Vacation booking and the operator view over scheduled tasks."""
from __future__ import annotations

import logging
from typing import List, Optional

from .database import Database
from .models import (
    DateLike,
    NewTask,
    RelatedTable,
    ScheduledTask,
    TaskStatus,
    TaskType,
    Vacation,
    parse_datetime,
)
from .storage import TaskStore, VacationStore

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Raised when a scheduling request is missing or has malformed input."""


def _require_text(value: Optional[str], label: str) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required.")
    return cleaned


def _date_text(value: Optional[DateLike], label: str) -> str:
    if isinstance(value, str):
        return _require_text(value, label)
    if value is None:
        raise ValidationError(f"{label} is required.")
    return value.isoformat()


def _require_id(value: object, label: str) -> int:
    try:
        numeric = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {label}: {value!r}.") from exc
    if numeric <= 0:
        raise ValidationError(f"Invalid {label}: {value!r}.")
    return numeric


class VacationScheduler:
    """Keeps a vacation and its two tasks consistent as one unit.

    Date ordering (``end_date > start_date``) is the caller's responsibility.
    """

    def __init__(self, db: Database, vacations: VacationStore, tasks: TaskStore) -> None:
        self.db = db
        self.vacations = vacations
        self.tasks = tasks

    def schedule(
        self,
        user_id: str,
        start_date: DateLike,
        end_date: DateLike,
        description: Optional[str] = None,
    ) -> int:
        user_id = _require_text(user_id, "userId")
        start_text = _date_text(start_date, "startDate")
        end_text = _date_text(end_date, "endDate")
        start_at = parse_datetime(start_date)
        end_at = parse_datetime(end_date)
        if start_at is None:
            raise ValidationError(f"Invalid startDate: {start_text!r}.")
        if end_at is None:
            raise ValidationError(f"Invalid endDate: {end_text!r}.")

        with self.db.transaction():
            vacation_id = self.vacations.add(
                user_id=user_id,
                start_date=start_text,
                end_date=end_text,
                description=description or f"Vacation {user_id}",
            )
            self.tasks.add(
                NewTask(
                    type=TaskType.VACATION_START.value,
                    run_at=start_at,
                    related_id=vacation_id,
                    related_table=RelatedTable.VACATIONS.value,
                    status=TaskStatus.PENDING,
                )
            )
            self.tasks.add(
                NewTask(
                    type=TaskType.VACATION_END.value,
                    run_at=end_at,
                    related_id=vacation_id,
                    related_table=RelatedTable.VACATIONS.value,
                    status=TaskStatus.PENDING,
                )
            )

        logger.info(
            "Scheduled vacation %s for %s (%s -> %s)", vacation_id, user_id, start_text, end_text
        )
        return vacation_id

    def cancel(self, vacation_id: int) -> int:
        """Delete the vacation and every task that points at it.

        Already executed tasks are removed from the schedule as well; the
        directory changes they applied are left as they are.
        """

        vacation_id = _require_id(vacation_id, "vacation id")
        with self.db.transaction():
            removed = self.tasks.remove_by_related_id(vacation_id, RelatedTable.VACATIONS.value)
            self.vacations.remove(vacation_id)

        logger.info("Cancelled vacation %s (%s tasks removed)", vacation_id, removed)
        return removed

    def get(self, vacation_id: int) -> Optional[Vacation]:
        return self.vacations.get(vacation_id)

    def list(self) -> List[Vacation]:
        return self.vacations.list()

    def tasks_for(self, vacation_id: int) -> List[ScheduledTask]:
        return self.tasks.list_by_related(vacation_id, RelatedTable.VACATIONS.value)


class ScheduleService:
    """Read/delete access to the task list for operator surfaces."""

    def __init__(self, tasks: TaskStore) -> None:
        self.tasks = tasks

    def list(self) -> List[ScheduledTask]:
        return self.tasks.list_all()

    def remove(self, task_id: int) -> bool:
        # False means "no such task"; store faults still raise.
        return self.tasks.remove(task_id)


__all__ = ["ScheduleService", "ValidationError", "VacationScheduler"]
