"""Pytest configuration and fixtures."""

import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ad_console.audit import AuditLog
from ad_console.config import AppConfig, DatabaseConfig, LDAPConfig, SchedulerConfig
from ad_console.container import build_services
from ad_console.database import Database
from ad_console.scheduling import ScheduleService, VacationScheduler
from ad_console.storage import TaskStore, VacationStore
from ad_console.worker import SchedulerWorker

MOCK_DIRECTORY_SOURCE = Path(__file__).resolve().parent.parent / "config" / "mock_directory.yaml"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class FakeDirectory:
    """Records account-state calls; raises for accounts listed in ``failing``."""

    def __init__(self):
        self.calls = []
        self.failing = {}

    def fail_for(self, user_id, message="directory unavailable"):
        self.failing[user_id] = message

    def _call(self, operation, user_id):
        self.calls.append((operation, user_id))
        if user_id in self.failing:
            raise RuntimeError(self.failing[user_id])

    def disable_account(self, user_id):
        self._call("disable", user_id)

    def enable_account(self, user_id):
        self._call("enable", user_id)


@pytest.fixture
def db(tmp_path):
    """Fresh SQLite database with the schema created."""
    database = Database(f"sqlite:///{tmp_path / 'console.sqlite'}")
    database.init()
    yield database
    database.dispose()


@pytest.fixture
def tasks(db):
    return TaskStore(db)


@pytest.fixture
def vacations(db):
    return VacationStore(db)


@pytest.fixture
def audit(db):
    return AuditLog(db)


@pytest.fixture
def scheduler(db, vacations, tasks):
    return VacationScheduler(db, vacations, tasks)


@pytest.fixture
def schedule(tasks):
    return ScheduleService(tasks)


@pytest.fixture
def fake_directory():
    return FakeDirectory()


@pytest.fixture
def worker(tasks, vacations, fake_directory, audit):
    return SchedulerWorker(tasks, vacations, fake_directory, audit)


@pytest.fixture
def mock_directory_file(tmp_path):
    """Writable copy of the sample directory used by ``mock://`` URIs."""
    target = tmp_path / "mock_directory.yaml"
    shutil.copy(MOCK_DIRECTORY_SOURCE, target)
    return target


@pytest.fixture
def ldap_config(mock_directory_file):
    return LDAPConfig(
        server_uri="mock://directory",
        user_dn="CN=svc-console,OU=Service Accounts,DC=example,DC=com",
        password="secret",
        base_dn="DC=example,DC=com",
        user_ou="OU=Users,DC=example,DC=com",
        mock_data_file=mock_directory_file,
        group_search_base="OU=Groups,DC=example,DC=com",
        disabled_ou="OU=Disabled,DC=example,DC=com",
    )


@pytest.fixture
def app_config(tmp_path, ldap_config):
    return AppConfig(
        ldap=ldap_config,
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'app.sqlite'}"),
        scheduler=SchedulerConfig(interval_seconds=60),
    )


@pytest.fixture
def services(app_config):
    """Fully wired services backed by the mock directory."""
    built = build_services(app_config)
    yield built
    built.close()
