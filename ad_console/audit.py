"""Append-only audit trail of directory mutations and scheduled executions."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import insert, select

from .database import Database, audit_logs
from .models import AuditAction, AuditEntry, from_storage, to_storage, utc_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
DEFAULT_LIST_LIMIT = 500


def _action_value(action: Union[AuditAction, str]) -> str:
    return action.value if isinstance(action, AuditAction) else str(action)


def _json_safe(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for key, value in (details or {}).items():
        if isinstance(value, datetime):
            payload[key] = value.isoformat()
        elif value is None or isinstance(value, (str, int, float, bool, list, dict)):
            payload[key] = value
        else:
            payload[key] = str(value)
    return payload


class AuditLog:
    """Writes and queries ``audit_logs`` rows.

    ``log`` runs in its own transaction and never raises: a failing audit
    write is logged and dropped so the caller's own work is unaffected.
    Call it after the audited unit of work has committed.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def log(
        self,
        action: Union[AuditAction, str],
        actor: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        statement = insert(audit_logs).values(
            at=to_storage(utc_now()),
            action=_action_value(action),
            actor=actor,
            target=target or None,
            details=_json_safe(details),
            success=bool(success),
            error=error or None,
        )
        try:
            with self.db.engine.begin() as conn:
                conn.execute(statement)
        except Exception:  # pragma: no cover - audit must not break callers
            logger.exception(
                "Unable to write audit entry action=%s actor=%s target=%s",
                _action_value(action),
                actor,
                target,
            )

    def list(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        action: Optional[Union[AuditAction, str]] = None,
        actor: Optional[str] = None,
        target: Optional[str] = None,
        limit: Optional[int] = DEFAULT_LIST_LIMIT,
    ) -> List[AuditEntry]:
        statement = select(audit_logs)
        if since:
            statement = statement.where(audit_logs.c.at >= to_storage(since))
        if until:
            statement = statement.where(audit_logs.c.at <= to_storage(until))
        if action:
            statement = statement.where(audit_logs.c.action == _action_value(action))
        if actor:
            statement = statement.where(audit_logs.c.actor == actor)
        if target:
            statement = statement.where(audit_logs.c.target.ilike(f"%{target}%"))
        statement = statement.order_by(audit_logs.c.at.desc(), audit_logs.c.id.desc())
        if limit:
            statement = statement.limit(limit)

        with self.db.transaction() as conn:
            rows = conn.execute(statement).all()
        return [
            AuditEntry(
                id=row.id,
                at=from_storage(row.at),
                action=row.action,
                actor=row.actor,
                target=row.target,
                details=dict(row.details or {}),
                success=bool(row.success),
                error=row.error,
            )
            for row in rows
        ]


__all__ = ["AuditLog", "DEFAULT_LIST_LIMIT", "SYSTEM_ACTOR"]
