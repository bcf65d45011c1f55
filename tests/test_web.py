"""Tests for the Flask JSON API."""

import pytest

from ad_console.ad_client import DirectoryError
from ad_console.container import build_services
from ad_console.models import TaskStatus
from ad_console.web import create_app
from tests.conftest import FakeDirectory, utc


@pytest.fixture
def fake_account_directory():
    return FakeDirectory()


@pytest.fixture
def services(app_config, fake_account_directory):
    built = build_services(app_config, account_directory=fake_account_directory)
    yield built
    built.close()


@pytest.fixture
def client(services):
    app = create_app(services=services)
    app.config["TESTING"] = True
    return app.test_client()


def _schedule(client, **overrides):
    payload = {
        "userId": "jdoe",
        "startDate": "2025-07-01T00:00:00Z",
        "endDate": "2025-07-15T00:00:00Z",
        **overrides,
    }
    return client.post("/api/schedule/vacation", json=payload, headers={"X-Remote-User": "alice"})


class TestScheduleApi:
    """Tests for /api/schedule and /api/vacations."""

    def test_schedule_vacation(self, client, services):
        response = _schedule(client)

        assert response.status_code == 201
        assert response.get_json() == {"vacationId": 1}
        assert len(services.scheduler.tasks_for(1)) == 2

        entry = services.audit.list(action="vacation.schedule")[0]
        assert entry.actor == "alice"
        assert entry.target == "jdoe"
        assert entry.details["vacationId"] == 1

    def test_missing_fields(self, client, services):
        response = _schedule(client, userId="")

        assert response.status_code == 400
        assert response.get_json() == {"error": "Missing required fields"}
        assert services.schedule.list() == []

    @pytest.mark.parametrize(
        "start, end",
        [
            ("2025-07-15T00:00:00Z", "2025-07-01T00:00:00Z"),
            ("2025-07-01T00:00:00Z", "2025-07-01T00:00:00Z"),
            ("yesterday", "2025-07-01T00:00:00Z"),
        ],
    )
    def test_invalid_dates(self, client, services, start, end):
        response = _schedule(client, startDate=start, endDate=end)

        assert response.status_code == 400
        assert response.get_json() == {"error": "Invalid dates"}
        assert services.schedule.list() == []

    def test_list_schedule(self, client):
        _schedule(client)

        items = client.get("/api/schedule").get_json()["items"]

        assert [item["type"] for item in items] == ["VACATION_START", "VACATION_END"]
        assert items[0]["status"] == "PENDING"
        assert items[0]["relatedTable"] == "vacations"
        assert items[0]["runAt"] == "2025-07-01T00:00:00+00:00"

    def test_remove_task(self, client, services):
        _schedule(client)
        task_id = services.schedule.list()[0].id

        assert client.delete(f"/api/schedule/{task_id}").get_json() == {"removed": True}
        missing = client.delete(f"/api/schedule/{task_id}")
        assert missing.status_code == 404
        assert missing.get_json()["removed"] is False

    def test_cancel_vacation(self, client, services):
        _schedule(client)

        response = client.delete("/api/vacations/1")

        assert response.get_json() == {"tasksRemoved": 2}
        assert services.scheduler.get(1) is None
        entry = services.audit.list(action="vacation.cancel")[0]
        assert entry.actor == "server-action"
        assert entry.target == "jdoe"

    def test_list_vacations(self, client):
        _schedule(client)

        items = client.get("/api/vacations").get_json()["items"]

        assert items[0]["userId"] == "jdoe"
        assert items[0]["description"] == "Vacation jdoe"

    def test_worker_outcome_visible_in_schedule(self, client, services, fake_account_directory):
        _schedule(client)
        fake_account_directory.fail_for("jdoe", "LDAP server down")

        services.worker.run_once(utc(2025, 7, 2))

        items = client.get("/api/schedule").get_json()["items"]
        assert items[0]["status"] == TaskStatus.FAILED.value
        assert items[0]["error"] == "LDAP server down"


class TestAuditApi:
    """Tests for /api/audit."""

    def test_filters(self, client):
        _schedule(client)
        client.post("/api/users/jdoe/unlock", headers={"X-Remote-User": "bob"})

        everything = client.get("/api/audit").get_json()["items"]
        by_actor = client.get("/api/audit?actor=bob").get_json()["items"]

        assert len(everything) == 2
        assert [item["action"] for item in by_actor] == ["user.unlock"]

    def test_bad_since(self, client):
        response = client.get("/api/audit?since=whenever")

        assert response.status_code == 400


class TestUsersApi:
    """Tests for the user and group routes."""

    def test_search(self, client):
        items = client.get("/api/users?q=doe").get_json()["items"]

        assert [item["sAMAccountName"] for item in items] == ["jdoe"]

    def test_get_missing_user(self, client):
        response = client.get("/api/users/ghost")

        assert response.status_code == 404

    def test_disable_uses_configured_ou(self, client):
        response = client.post("/api/users/jdoe/disable")

        assert response.status_code == 200
        user = client.get("/api/users/jdoe").get_json()["user"]
        assert user["distinguishedName"] == "CN=John Doe,OU=Disabled,DC=example,DC=com"
        assert user["userAccountControl"] == 514

    def test_enable_unknown_user_is_404(self, client, services):
        response = client.post("/api/users/ghost/enable")

        assert response.status_code == 404
        assert "ghost" in response.get_json()["error"]
        assert services.audit.list()[0].success is False

    def test_create_update_delete(self, client):
        created = client.post(
            "/api/users",
            json={"sAMAccountName": "bwayne", "displayName": "Bruce Wayne", "password": "x"},
        )
        assert created.status_code == 201

        updated = client.patch("/api/users/bwayne", json={"title": "CEO"})
        assert updated.get_json()["user"]["title"] == "CEO"

        assert client.delete("/api/users/bwayne").status_code == 204
        assert client.delete("/api/users/bwayne").status_code == 404

    def test_create_requires_account(self, client):
        assert client.post("/api/users", json={}).status_code == 400

    def test_move_requires_target(self, client):
        assert client.post("/api/users/jdoe/move", json={}).status_code == 400

    def test_group_members(self, client):
        body = {
            "groupDn": "CN=IT Staff,OU=Groups,DC=example,DC=com",
            "memberDn": "CN=Ann Smith,OU=Users,DC=example,DC=com",
        }

        assert client.post("/api/groups/members", json=body).status_code == 200
        groups = client.get("/api/groups?q=IT").get_json()["items"]
        assert groups[0]["members"] == [body["memberDn"]]
        assert client.delete("/api/groups/members", json=body).status_code == 200

    def test_ous_and_stats(self, client):
        assert "OU=Users,DC=example,DC=com" in client.get("/api/ous").get_json()["items"]
        assert client.get("/api/stats").get_json()["usersCount"] == 2

    def test_unknown_route_is_json(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert "error" in response.get_json()


class TestErrorHandling:
    """Tests for the JSON error mapping."""

    def test_stray_lookup_error_is_500(self, client, services, monkeypatch):
        def broken_list():
            raise KeyError("userId")

        monkeypatch.setattr(services.scheduler, "list", broken_list)

        response = client.get("/api/vacations")

        assert response.status_code == 500
        assert "userId" in response.get_json()["error"]

    def test_rejected_directory_write_is_502(self, client, services, monkeypatch):
        def rejected(actor, account):
            raise DirectoryError(
                "Active Directory rejected the request to delete jdoe (insufficientAccessRights)."
            )

        monkeypatch.setattr(services.directory, "delete_user", rejected)

        response = client.delete("/api/users/jdoe")

        assert response.status_code == 502
        assert "insufficientAccessRights" in response.get_json()["error"]
