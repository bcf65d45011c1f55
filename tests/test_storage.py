"""Tests for the task and vacation stores."""

from datetime import datetime, timedelta, timezone

from ad_console.models import NewTask, TaskStatus
from tests.conftest import utc


def _task(run_at, related_id=1, type_="VACATION_START", related_table="vacations"):
    return NewTask(type=type_, run_at=run_at, related_id=related_id, related_table=related_table)


class TestTaskStore:
    """Tests for TaskStore."""

    def test_add_assigns_increasing_ids(self, tasks):
        first = tasks.add(_task(utc(2025, 1, 1)))
        second = tasks.add(_task(utc(2025, 1, 2)))

        assert first > 0
        assert second > first

    def test_added_task_is_pending_with_no_execution(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1, 9)))

        task = tasks.get(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.run_at == utc(2025, 1, 1, 9)
        assert task.executed_at is None
        assert task.error is None
        assert task.created_at is not None

    def test_get_missing_returns_none(self, tasks):
        assert tasks.get(404) is None

    def test_list_pending_filters_by_due_time(self, tasks):
        due = tasks.add(_task(utc(2025, 1, 1)))
        tasks.add(_task(utc(2025, 6, 1)))

        pending = tasks.list_pending(utc(2025, 2, 1))

        assert [task.id for task in pending] == [due]

    def test_list_pending_includes_exact_boundary(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1, 12)))

        assert [t.id for t in tasks.list_pending(utc(2025, 1, 1, 12))] == [task_id]

    def test_list_pending_orders_by_run_at(self, tasks):
        late = tasks.add(_task(utc(2025, 1, 3)))
        early = tasks.add(_task(utc(2025, 1, 1)))
        middle = tasks.add(_task(utc(2025, 1, 2)))

        pending = tasks.list_pending(utc(2025, 2, 1))

        assert [task.id for task in pending] == [early, middle, late]

    def test_list_pending_excludes_non_pending(self, tasks):
        done = tasks.add(_task(utc(2025, 1, 1)))
        failed = tasks.add(_task(utc(2025, 1, 1)))
        tasks.update_status(done, TaskStatus.COMPLETED, executed_at=utc(2025, 1, 1))
        tasks.update_status(failed, TaskStatus.FAILED, error="boom")

        assert tasks.list_pending(utc(2025, 2, 1)) == []

    def test_list_pending_normalises_offsets(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1, 10)))
        # 11:30 at +02:00 is 09:30 UTC, before the task is due.
        plus_two = timezone(timedelta(hours=2))

        assert tasks.list_pending(datetime(2025, 1, 1, 11, 30, tzinfo=plus_two)) == []
        assert [t.id for t in tasks.list_pending(utc(2025, 1, 1, 10, 1))] == [task_id]

    def test_update_status_records_error_and_execution(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1)))

        tasks.update_status(task_id, TaskStatus.FAILED, error="ldap down", executed_at=utc(2025, 1, 2))

        task = tasks.get(task_id)
        assert task.status is TaskStatus.FAILED
        assert task.error == "ldap down"
        assert task.executed_at == utc(2025, 1, 2)

    def test_update_status_unknown_id_is_noop(self, tasks):
        tasks.update_status(999, TaskStatus.COMPLETED)

        assert tasks.list_all() == []

    def test_claim_only_succeeds_once(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1)))

        assert tasks.claim(task_id) is True
        assert tasks.claim(task_id) is False
        assert tasks.get(task_id).status is TaskStatus.RUNNING

    def test_remove(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1)))

        assert tasks.remove(task_id) is True
        assert tasks.remove(task_id) is False
        assert tasks.get(task_id) is None

    def test_remove_by_related_id_scopes_to_table(self, tasks):
        tasks.add(_task(utc(2025, 1, 1), related_id=7))
        tasks.add(_task(utc(2025, 1, 2), related_id=7, type_="VACATION_END"))
        other = tasks.add(_task(utc(2025, 1, 1), related_id=8))
        foreign = tasks.add(_task(utc(2025, 1, 1), related_id=7, related_table="trainings"))

        removed = tasks.remove_by_related_id(7, "vacations")

        assert removed == 2
        assert {task.id for task in tasks.list_all()} == {other, foreign}

    def test_remove_by_related_id_without_matches(self, tasks):
        assert tasks.remove_by_related_id(42, "vacations") == 0

    def test_unknown_type_round_trips(self, tasks):
        task_id = tasks.add(_task(utc(2025, 1, 1), type_="TRAINING_START"))

        task = tasks.get(task_id)
        assert task.type == "TRAINING_START"
        assert task.task_type is None


class TestVacationStore:
    """Tests for VacationStore."""

    def test_add_and_get(self, vacations):
        vacation_id = vacations.add("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")

        vacation = vacations.get(vacation_id)
        assert vacation.user_id == "jdoe"
        assert vacation.start_date == "2025-07-01T00:00:00Z"
        assert vacation.end_date == "2025-07-15T00:00:00Z"
        assert vacation.description is None

    def test_get_missing_returns_none(self, vacations):
        assert vacations.get(1) is None

    def test_remove_is_idempotent(self, vacations):
        vacation_id = vacations.add("jdoe", "2025-07-01", "2025-07-15", "Summer")

        vacations.remove(vacation_id)
        vacations.remove(vacation_id)

        assert vacations.get(vacation_id) is None

    def test_remove_leaves_tasks(self, vacations, tasks):
        vacation_id = vacations.add("jdoe", "2025-07-01", "2025-07-15")
        task_id = tasks.add(_task(utc(2025, 7, 1), related_id=vacation_id))

        vacations.remove(vacation_id)

        assert tasks.get(task_id) is not None

    def test_list_orders_by_start(self, vacations):
        later = vacations.add("asmith", "2025-08-01", "2025-08-10")
        earlier = vacations.add("jdoe", "2025-07-01", "2025-07-15")

        assert [v.id for v in vacations.list()] == [earlier, later]
