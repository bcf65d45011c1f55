"""Data models for vacations, scheduled tasks and audit entries."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


DateLike = Union[str, datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[DateLike]) -> Optional[datetime]:
    """Parse an ISO-8601 value into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing ``Z`` is accepted. Returns
    ``None`` for empty or unparseable input.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_storage(value: datetime) -> datetime:
    """Normalise to a naive UTC datetime for the ``DateTime`` columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    # Reserved for the optional claim step; see TaskStore.claim.
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskType(str, Enum):
    """Task kinds this version of the worker knows how to execute."""

    VACATION_START = "VACATION_START"
    VACATION_END = "VACATION_END"

    @classmethod
    def lookup(cls, raw: str) -> Optional["TaskType"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class RelatedTable(str, Enum):
    """Entity kinds a task may point at through ``related_id``."""

    VACATIONS = "vacations"

    @classmethod
    def lookup(cls, raw: str) -> Optional["RelatedTable"]:
        try:
            return cls(raw)
        except ValueError:
            return None


class AuditAction(str, Enum):
    USER_CREATE = "user.create"
    USER_DELETE = "user.delete"
    USER_DISABLE = "user.disable"
    USER_ENABLE = "user.enable"
    USER_UNLOCK = "user.unlock"
    USER_UPDATE = "user.update"
    USER_RESET_PASSWORD = "user.reset_password"
    USER_MOVE = "user.move"
    VACATION_SCHEDULE = "vacation.schedule"
    VACATION_CANCEL = "vacation.cancel"
    VACATION_EXECUTE_DISABLE = "vacation.execute_disable"
    VACATION_EXECUTE_ENABLE = "vacation.execute_enable"
    GROUP_MEMBER_ADD = "group.member_add"
    GROUP_MEMBER_REMOVE = "group.member_remove"
    GROUP_UPDATE = "group.update"


@dataclass
class Vacation:
    """A booked absence for one directory account."""

    id: int
    user_id: str
    start_date: str
    end_date: str
    created_at: datetime
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "description": self.description,
            "createdAt": _isoformat(self.created_at),
        }


@dataclass
class ScheduledTask:
    """A persisted intent to perform ``type`` once ``run_at`` has passed.

    ``type`` and ``related_table`` keep the raw stored strings so that rows
    written by a newer worker survive a round trip; use :attr:`task_type` and
    :attr:`related_kind` for the recognised variants.
    """

    id: int
    type: str
    status: TaskStatus
    run_at: datetime
    related_id: int
    related_table: str
    created_at: datetime
    executed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def task_type(self) -> Optional[TaskType]:
        return TaskType.lookup(self.type)

    @property
    def related_kind(self) -> Optional[RelatedTable]:
        return RelatedTable.lookup(self.related_table)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "runAt": _isoformat(self.run_at),
            "relatedId": self.related_id,
            "relatedTable": self.related_table,
            "createdAt": _isoformat(self.created_at),
            "executedAt": _isoformat(self.executed_at),
            "error": self.error,
        }


@dataclass
class NewTask:
    """Fields supplied by callers of ``TaskStore.add``."""

    type: str
    run_at: datetime
    related_id: int
    related_table: str
    status: TaskStatus = TaskStatus.PENDING


@dataclass
class AuditEntry:
    id: int
    at: datetime
    action: str
    actor: str
    success: bool
    target: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "at": _isoformat(self.at),
            "action": self.action,
            "actor": self.actor,
            "target": self.target,
            "details": dict(self.details),
            "success": self.success,
            "error": self.error,
        }


__all__ = [
    "AuditAction",
    "AuditEntry",
    "DateLike",
    "NewTask",
    "RelatedTable",
    "ScheduledTask",
    "TaskStatus",
    "TaskType",
    "Vacation",
    "from_storage",
    "parse_datetime",
    "to_storage",
    "utc_now",
]
