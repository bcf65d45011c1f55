"""Composition root: builds every store and service from an :class:`AppConfig`."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .ad_client import LdapAccountDirectory
from .audit import AuditLog
from .config import AppConfig
from .database import Database
from .directory import DirectoryAdmin
from .scheduling import ScheduleService, VacationScheduler
from .storage import TaskStore, VacationStore
from .worker import AccountDirectory, SchedulerWorker


@dataclass
class Services:
    config: AppConfig
    db: Database
    tasks: TaskStore
    vacations: VacationStore
    audit: AuditLog
    scheduler: VacationScheduler
    schedule: ScheduleService
    directory: DirectoryAdmin
    worker: SchedulerWorker

    def close(self) -> None:
        self.db.dispose()


def build_services(
    config: AppConfig,
    account_directory: Optional[AccountDirectory] = None,
    db: Optional[Database] = None,
) -> Services:
    """Wire the application together.

    ``account_directory`` and ``db`` may be supplied to substitute the
    collaborators the worker and stores talk to.
    """

    db = db or Database(config.database.url, echo=config.database.echo)
    db.init()

    tasks = TaskStore(db)
    vacations = VacationStore(db)
    audit = AuditLog(db)
    worker = SchedulerWorker(
        tasks=tasks,
        vacations=vacations,
        directory=account_directory or LdapAccountDirectory(config.ldap),
        audit=audit,
        claim_tasks=config.scheduler.claim_tasks,
    )
    return Services(
        config=config,
        db=db,
        tasks=tasks,
        vacations=vacations,
        audit=audit,
        scheduler=VacationScheduler(db, vacations, tasks),
        schedule=ScheduleService(tasks),
        directory=DirectoryAdmin(config.ldap, audit),
        worker=worker,
    )


__all__ = ["Services", "build_services"]
