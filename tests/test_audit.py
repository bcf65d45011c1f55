"""Tests for the audit trail."""

from datetime import timedelta

from ad_console.models import AuditAction, utc_now


class TestAuditLog:
    """Tests for AuditLog.log / list."""

    def test_log_and_list(self, audit):
        audit.log(AuditAction.USER_DISABLE, "alice", "jdoe", {"targetOu": "OU=Disabled"})

        entries = audit.list()

        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "user.disable"
        assert entry.actor == "alice"
        assert entry.target == "jdoe"
        assert entry.details == {"targetOu": "OU=Disabled"}
        assert entry.success is True
        assert entry.error is None
        assert entry.at.tzinfo is not None

    def test_failure_entry_keeps_error(self, audit):
        audit.log(AuditAction.USER_ENABLE, "alice", "jdoe", success=False, error="denied")

        entry = audit.list()[0]
        assert entry.success is False
        assert entry.error == "denied"
        assert entry.details == {}

    def test_details_are_made_json_safe(self, audit):
        moment = utc_now()
        audit.log("vacation.schedule", "alice", "jdoe", {"when": moment, "other": object()})

        details = audit.list()[0].details
        assert details["when"] == moment.isoformat()
        assert isinstance(details["other"], str)

    def test_newest_first(self, audit):
        audit.log(AuditAction.USER_CREATE, "alice", "first")
        audit.log(AuditAction.USER_CREATE, "alice", "second")

        assert [e.target for e in audit.list()] == ["second", "first"]

    def test_filters(self, audit):
        audit.log(AuditAction.USER_CREATE, "alice", "jdoe")
        audit.log(AuditAction.USER_DELETE, "bob", "jdoe")
        audit.log(AuditAction.USER_DELETE, "alice", "asmith")

        assert {e.target for e in audit.list(action=AuditAction.USER_DELETE)} == {"jdoe", "asmith"}
        assert {e.action for e in audit.list(actor="bob")} == {"user.delete"}
        assert len(audit.list(target="JDO")) == 2
        assert len(audit.list(limit=1)) == 1

    def test_time_window(self, audit):
        audit.log(AuditAction.USER_CREATE, "alice", "jdoe")
        now = utc_now()

        assert len(audit.list(since=now - timedelta(minutes=5))) == 1
        assert audit.list(since=now + timedelta(minutes=5)) == []
        assert audit.list(until=now - timedelta(minutes=5)) == []

    def test_log_never_raises(self, audit, db):
        with db.engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE audit_logs")

        audit.log(AuditAction.USER_CREATE, "alice", "jdoe")
