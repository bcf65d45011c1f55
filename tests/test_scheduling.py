"""Tests for vacation scheduling and the schedule service."""

import pytest

from ad_console.models import TaskStatus, TaskType
from ad_console.scheduling import ValidationError
from tests.conftest import utc


class TestVacationScheduler:
    """Tests for VacationScheduler.schedule / cancel."""

    def test_schedule_creates_vacation_and_two_tasks(self, scheduler, tasks, vacations):
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")

        vacation = vacations.get(vacation_id)
        assert vacation.user_id == "jdoe"
        assert vacation.description == "Vacation jdoe"

        related = tasks.list_by_related(vacation_id, "vacations")
        assert [(t.type, t.run_at) for t in related] == [
            (TaskType.VACATION_START.value, utc(2025, 7, 1)),
            (TaskType.VACATION_END.value, utc(2025, 7, 15)),
        ]
        assert all(t.status is TaskStatus.PENDING for t in related)

    def test_first_vacation_gets_id_one(self, scheduler):
        assert scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z") == 1

    def test_schedule_keeps_custom_description(self, scheduler):
        vacation_id = scheduler.schedule(
            "jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z", description="Summer break"
        )

        assert scheduler.get(vacation_id).description == "Summer break"

    def test_schedule_accepts_datetimes(self, scheduler, tasks):
        vacation_id = scheduler.schedule("jdoe", utc(2025, 7, 1, 8), utc(2025, 7, 2, 8))

        assert [t.run_at for t in scheduler.tasks_for(vacation_id)] == [
            utc(2025, 7, 1, 8),
            utc(2025, 7, 2, 8),
        ]

    @pytest.mark.parametrize(
        "user_id, start, end",
        [
            ("", "2025-07-01", "2025-07-15"),
            ("   ", "2025-07-01", "2025-07-15"),
            ("jdoe", "", "2025-07-15"),
            ("jdoe", "2025-07-01", None),
            ("jdoe", "not-a-date", "2025-07-15"),
            ("jdoe", "2025-07-01", "15/07/2025"),
        ],
    )
    def test_schedule_rejects_invalid_input(self, scheduler, tasks, vacations, user_id, start, end):
        with pytest.raises(ValidationError):
            scheduler.schedule(user_id, start, end)

        assert tasks.list_all() == []
        assert vacations.list() == []

    @pytest.mark.parametrize("failing_insert", [1, 2], ids=["start-task", "end-task"])
    def test_schedule_is_atomic_when_task_insert_fails(
        self, scheduler, tasks, vacations, monkeypatch, failing_insert
    ):
        original_add = tasks.add
        calls = []

        def flaky_add(task):
            calls.append(task)
            if len(calls) == failing_insert:
                raise RuntimeError("disk full")
            return original_add(task)

        monkeypatch.setattr(tasks, "add", flaky_add)

        with pytest.raises(RuntimeError, match="disk full"):
            scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")

        monkeypatch.undo()
        assert len(calls) == failing_insert
        assert tasks.list_all() == []
        assert vacations.list() == []

    def test_cancel_removes_vacation_and_tasks(self, scheduler, tasks, vacations):
        keep = scheduler.schedule("asmith", "2025-08-01T00:00:00Z", "2025-08-05T00:00:00Z")
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")

        removed = scheduler.cancel(vacation_id)

        assert removed == 2
        assert vacations.get(vacation_id) is None
        assert scheduler.tasks_for(vacation_id) == []
        assert len(scheduler.tasks_for(keep)) == 2

    def test_cancel_removes_executed_tasks_too(self, scheduler, tasks):
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")
        start_task = scheduler.tasks_for(vacation_id)[0]
        tasks.update_status(start_task.id, TaskStatus.COMPLETED, executed_at=utc(2025, 7, 1))

        assert scheduler.cancel(vacation_id) == 2
        assert tasks.list_all() == []

    def test_cancel_is_atomic_when_vacation_delete_fails(self, scheduler, tasks, vacations, monkeypatch):
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")

        def broken_remove(vacation_id):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(vacations, "remove", broken_remove)

        with pytest.raises(RuntimeError, match="database is locked"):
            scheduler.cancel(vacation_id)

        monkeypatch.undo()
        assert vacations.get(vacation_id) is not None
        assert len(scheduler.tasks_for(vacation_id)) == 2

    def test_cancel_unknown_vacation_returns_zero(self, scheduler):
        assert scheduler.cancel(999) == 0

    def test_cancel_rejects_bad_id(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.cancel(0)


class TestScheduleService:
    """Tests for ScheduleService."""

    def test_list_returns_all_statuses(self, scheduler, schedule, tasks):
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")
        first = scheduler.tasks_for(vacation_id)[0]
        tasks.update_status(first.id, TaskStatus.FAILED, error="boom")

        listed = schedule.list()

        assert [t.status for t in listed] == [TaskStatus.FAILED, TaskStatus.PENDING]

    def test_remove_single_task(self, scheduler, schedule, vacations):
        vacation_id = scheduler.schedule("jdoe", "2025-07-01T00:00:00Z", "2025-07-15T00:00:00Z")
        start_task, end_task = scheduler.tasks_for(vacation_id)

        assert schedule.remove(start_task.id) is True
        assert schedule.remove(start_task.id) is False
        assert [t.id for t in schedule.list()] == [end_task.id]
        assert vacations.get(vacation_id) is not None
