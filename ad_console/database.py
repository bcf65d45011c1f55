"""SQLAlchemy engine, schema and transaction helper."""
from __future__ import annotations

import contextlib
import threading
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)
from sqlalchemy.engine import Connection, Engine, make_url


metadata = MetaData()

vacations = Table(
    "vacations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(256), nullable=False),
    Column("start_date", String(64), nullable=False),
    Column("end_date", String(64), nullable=False),
    Column("description", Text),
    Column("created_at", DateTime, nullable=False),
)

scheduled_tasks = Table(
    "scheduled_tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(50), nullable=False),
    Column("status", String(20), nullable=False, default="PENDING"),
    Column("run_at", DateTime, nullable=False, index=True),
    Column("related_id", Integer, nullable=False),
    Column("related_table", String(50), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("executed_at", DateTime),
    Column("error", Text),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("at", DateTime, nullable=False, index=True),
    Column("action", String(64), nullable=False),
    Column("actor", String(256), nullable=False),
    Column("target", String(512)),
    Column("details", JSON),
    Column("success", Boolean, nullable=False),
    Column("error", Text),
)


class Database:
    """Owns the engine and hands out transactional connections.

    ``transaction()`` commits when the block exits normally and rolls back
    when it raises. A nested ``transaction()`` on the same thread joins the
    outer one, so several stores can take part in a single unit of work.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine = create_engine(url, echo=echo)
        self._local = threading.local()

    def init(self) -> None:
        """Create the schema if it does not exist yet."""

        _ensure_sqlite_directory(self.url)
        metadata.create_all(self.engine)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Connection]:
        current: Optional[Connection] = getattr(self._local, "connection", None)
        if current is not None:
            yield current
            return

        with self.engine.begin() as connection:
            self._local.connection = connection
            try:
                yield connection
            finally:
                self._local.connection = None

    def dispose(self) -> None:
        self.engine.dispose()


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite"):
        return
    database = parsed.database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


__all__ = ["Database", "audit_logs", "metadata", "scheduled_tasks", "vacations"]
