"""Persistence helpers for scheduled tasks and vacations."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import delete, insert, select, update

from .database import Database, scheduled_tasks, vacations
from .models import (
    NewTask,
    ScheduledTask,
    TaskStatus,
    Vacation,
    from_storage,
    to_storage,
    utc_now,
)


def _row_to_task(row: Any) -> ScheduledTask:
    return ScheduledTask(
        id=row.id,
        type=row.type,
        status=TaskStatus(row.status),
        run_at=from_storage(row.run_at),
        related_id=row.related_id,
        related_table=row.related_table,
        created_at=from_storage(row.created_at),
        executed_at=from_storage(row.executed_at),
        error=row.error or None,
    )


def _row_to_vacation(row: Any) -> Vacation:
    return Vacation(
        id=row.id,
        user_id=row.user_id,
        start_date=row.start_date,
        end_date=row.end_date,
        description=row.description or None,
        created_at=from_storage(row.created_at),
    )


class TaskStore:
    """Durable CRUD over ``scheduled_tasks`` rows."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add(self, task: NewTask) -> int:
        statement = insert(scheduled_tasks).values(
            type=task.type,
            status=TaskStatus(task.status).value,
            run_at=to_storage(task.run_at),
            related_id=task.related_id,
            related_table=task.related_table,
            created_at=to_storage(utc_now()),
        )
        with self.db.transaction() as conn:
            result = conn.execute(statement)
        return int(result.inserted_primary_key[0])

    def get(self, task_id: int) -> Optional[ScheduledTask]:
        statement = select(scheduled_tasks).where(scheduled_tasks.c.id == task_id)
        with self.db.transaction() as conn:
            row = conn.execute(statement).first()
        return _row_to_task(row) if row else None

    def list_pending(self, as_of: Optional[datetime] = None) -> List[ScheduledTask]:
        """Pending tasks with ``run_at <= as_of``, oldest-due first."""

        cutoff = to_storage(as_of or utc_now())
        statement = (
            select(scheduled_tasks)
            .where(
                scheduled_tasks.c.status == TaskStatus.PENDING.value,
                scheduled_tasks.c.run_at <= cutoff,
            )
            .order_by(scheduled_tasks.c.run_at.asc(), scheduled_tasks.c.id.asc())
        )
        with self.db.transaction() as conn:
            rows = conn.execute(statement).all()
        return [_row_to_task(row) for row in rows]

    def list_all(self) -> List[ScheduledTask]:
        statement = select(scheduled_tasks).order_by(
            scheduled_tasks.c.run_at.asc(), scheduled_tasks.c.id.asc()
        )
        with self.db.transaction() as conn:
            rows = conn.execute(statement).all()
        return [_row_to_task(row) for row in rows]

    def list_by_related(self, related_id: int, related_table: str) -> List[ScheduledTask]:
        statement = (
            select(scheduled_tasks)
            .where(
                scheduled_tasks.c.related_id == related_id,
                scheduled_tasks.c.related_table == related_table,
            )
            .order_by(scheduled_tasks.c.run_at.asc(), scheduled_tasks.c.id.asc())
        )
        with self.db.transaction() as conn:
            rows = conn.execute(statement).all()
        return [_row_to_task(row) for row in rows]

    def update_status(
        self,
        task_id: int,
        status: TaskStatus,
        error: Optional[str] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        # No prior-state check: a single worker owns each task while running.
        statement = (
            update(scheduled_tasks)
            .where(scheduled_tasks.c.id == task_id)
            .values(
                status=TaskStatus(status).value,
                error=error or None,
                executed_at=to_storage(executed_at) if executed_at else None,
            )
        )
        with self.db.transaction() as conn:
            conn.execute(statement)

    def claim(self, task_id: int) -> bool:
        """Atomically move a task from PENDING to RUNNING.

        Returns ``False`` when another worker got there first or the task is
        no longer pending.
        """

        statement = (
            update(scheduled_tasks)
            .where(
                scheduled_tasks.c.id == task_id,
                scheduled_tasks.c.status == TaskStatus.PENDING.value,
            )
            .values(status=TaskStatus.RUNNING.value)
        )
        with self.db.transaction() as conn:
            result = conn.execute(statement)
        return result.rowcount == 1

    def remove(self, task_id: int) -> bool:
        statement = delete(scheduled_tasks).where(scheduled_tasks.c.id == task_id)
        with self.db.transaction() as conn:
            result = conn.execute(statement)
        return result.rowcount > 0

    def remove_by_related_id(self, related_id: int, related_table: str) -> int:
        statement = delete(scheduled_tasks).where(
            scheduled_tasks.c.related_id == related_id,
            scheduled_tasks.c.related_table == related_table,
        )
        with self.db.transaction() as conn:
            result = conn.execute(statement)
        return int(result.rowcount or 0)


class VacationStore:
    """Durable CRUD over ``vacations`` rows. Removal never touches tasks."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add(
        self,
        user_id: str,
        start_date: str,
        end_date: str,
        description: Optional[str] = None,
    ) -> int:
        statement = insert(vacations).values(
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
            description=description or None,
            created_at=to_storage(utc_now()),
        )
        with self.db.transaction() as conn:
            result = conn.execute(statement)
        return int(result.inserted_primary_key[0])

    def get(self, vacation_id: int) -> Optional[Vacation]:
        statement = select(vacations).where(vacations.c.id == vacation_id)
        with self.db.transaction() as conn:
            row = conn.execute(statement).first()
        return _row_to_vacation(row) if row else None

    def list(self) -> List[Vacation]:
        statement = select(vacations).order_by(vacations.c.start_date.asc(), vacations.c.id.asc())
        with self.db.transaction() as conn:
            rows = conn.execute(statement).all()
        return [_row_to_vacation(row) for row in rows]

    def remove(self, vacation_id: int) -> None:
        statement = delete(vacations).where(vacations.c.id == vacation_id)
        with self.db.transaction() as conn:
            conn.execute(statement)


__all__ = ["TaskStore", "VacationStore"]
