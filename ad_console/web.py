"""Flask-powered JSON API for the directory administration console."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from .ad_client import DirectoryError, EntryNotFoundError
from .config import ensure_default_config, load_config
from .container import Services, build_services
from .models import AuditAction, parse_datetime
from .scheduling import ValidationError
from .worker import start_background_worker

_DEFAULT_ACTOR = "server-action"
_ACTOR_HEADER = "X-Remote-User"


def create_app(
    config_path: Optional[Path | str] = None,
    services: Optional[Services] = None,
) -> Flask:
    """Create and configure the Flask application."""

    if services is None:
        resolved_config_path = Path(config_path) if config_path else None
        ensure_default_config(resolved_config_path)
        services = build_services(load_config(resolved_config_path))

    app = Flask(__name__)
    app.config["SERVICES"] = services

    register_error_handlers(app)
    register_routes(app)
    if services.config.scheduler.run_in_web:
        _ensure_scheduler_worker(app)
    return app


def _services() -> Services:
    return current_app.config["SERVICES"]


def _actor() -> str:
    return (request.headers.get(_ACTOR_HEADER) or "").strip() or _DEFAULT_ACTOR


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_api_limit(raw: Optional[str], default: int = 200, maximum: int = 500) -> int:
    try:
        value = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, maximum))


def _optional_query_datetime(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise ValidationError(f"Invalid '{name}' timestamp: {raw!r}.")
    return parsed


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValidationError)
    def _validation_error(exc: ValidationError) -> Any:
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(EntryNotFoundError)
    def _not_found(exc: EntryNotFoundError) -> Any:
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(DirectoryError)
    def _directory_error(exc: DirectoryError) -> Any:
        return jsonify({"error": str(exc)}), 502

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        app.logger.exception("Unhandled error serving %s: %s", request.path, exc)
        return jsonify({"error": str(exc) or exc.__class__.__name__}), 500


def register_routes(app: Flask) -> None:
    """Attach all API routes to the provided Flask app."""

    # Schedule ------------------------------------------------------------
    @app.get("/api/schedule")
    def api_schedule() -> Any:
        tasks = _services().schedule.list()
        return jsonify({"items": [task.to_dict() for task in tasks]})

    @app.post("/api/schedule/vacation")
    def api_schedule_vacation() -> Any:
        data = _json_body()
        user_id = str(data.get("userId") or "").strip()
        start_raw = str(data.get("startDate") or "").strip()
        end_raw = str(data.get("endDate") or "").strip()
        if not user_id or not start_raw or not end_raw:
            raise ValidationError("Missing required fields")

        start = parse_datetime(start_raw)
        end = parse_datetime(end_raw)
        if start is None or end is None or end <= start:
            raise ValidationError("Invalid dates")

        services = _services()
        actor = _actor()
        details = {"startDate": start_raw, "endDate": end_raw}
        try:
            vacation_id = services.scheduler.schedule(user_id, start_raw, end_raw)
        except Exception as exc:
            services.audit.log(
                action=AuditAction.VACATION_SCHEDULE,
                actor=actor,
                target=user_id,
                details=details,
                success=False,
                error=str(exc),
            )
            raise

        services.audit.log(
            action=AuditAction.VACATION_SCHEDULE,
            actor=actor,
            target=user_id,
            details={**details, "vacationId": vacation_id},
            success=True,
        )
        app.logger.info("Vacation %s scheduled for %s by %s", vacation_id, user_id, actor)
        return jsonify({"vacationId": vacation_id}), 201

    @app.delete("/api/schedule/<int:task_id>")
    def api_remove_task(task_id: int) -> Any:
        removed = _services().schedule.remove(task_id)
        if not removed:
            return jsonify({"removed": False, "error": "Scheduled action not found"}), 404
        return jsonify({"removed": True})

    @app.get("/api/vacations")
    def api_vacations() -> Any:
        vacations = _services().scheduler.list()
        return jsonify({"items": [vacation.to_dict() for vacation in vacations]})

    @app.delete("/api/vacations/<int:vacation_id>")
    def api_cancel_vacation(vacation_id: int) -> Any:
        services = _services()
        vacation = services.scheduler.get(vacation_id)
        target = vacation.user_id if vacation else None
        try:
            removed = services.scheduler.cancel(vacation_id)
        except Exception as exc:
            services.audit.log(
                action=AuditAction.VACATION_CANCEL,
                actor=_actor(),
                target=target,
                details={"vacationId": vacation_id},
                success=False,
                error=str(exc),
            )
            raise
        services.audit.log(
            action=AuditAction.VACATION_CANCEL,
            actor=_actor(),
            target=target,
            details={"vacationId": vacation_id, "tasksRemoved": removed},
            success=True,
        )
        return jsonify({"tasksRemoved": removed})

    # Audit ---------------------------------------------------------------
    @app.get("/api/audit")
    def api_audit() -> Any:
        services = _services()
        limit = _parse_api_limit(
            request.args.get("limit"),
            default=services.config.audit.list_limit,
            maximum=max(services.config.audit.list_limit, 5000),
        )
        entries = services.audit.list(
            since=_optional_query_datetime("since"),
            until=_optional_query_datetime("until"),
            action=request.args.get("action") or None,
            actor=request.args.get("actor") or None,
            target=request.args.get("target") or None,
            limit=limit,
        )
        return jsonify({"items": [entry.to_dict() for entry in entries]})

    # Users ---------------------------------------------------------------
    @app.get("/api/users")
    def api_users() -> Any:
        query = request.args.get("q", "").strip()
        disabled_only = request.args.get("disabled") in {"1", "true", "yes"}
        users = _services().directory.search_users(query, disabled_only=disabled_only)
        return jsonify({"items": users})

    @app.get("/api/users/<account>")
    def api_user(account: str) -> Any:
        user = _services().directory.get_user(account)
        if not user:
            return jsonify({"error": "User not found"}), 404
        return jsonify({"user": user})

    @app.post("/api/users")
    def api_create_user() -> Any:
        data = _json_body()
        account = str(data.get("sAMAccountName") or "").strip()
        if not account:
            raise ValidationError("sAMAccountName is required.")
        attributes = {
            key: value
            for key, value in data.items()
            if key not in {"sAMAccountName", "password", "parentOuDn"}
        }
        created = _services().directory.create_user(
            _actor(),
            account,
            password=data.get("password") or None,
            parent_ou=str(data.get("parentOuDn") or "").strip() or None,
            attributes=attributes,
        )
        return jsonify({"user": created}), 201

    @app.patch("/api/users/<account>")
    def api_update_user(account: str) -> Any:
        changes = _json_body()
        if not changes:
            raise ValidationError("No changes supplied.")
        updated = _services().directory.update_user(_actor(), account, changes)
        return jsonify({"user": updated})

    @app.delete("/api/users/<account>")
    def api_delete_user(account: str) -> Any:
        _services().directory.delete_user(_actor(), account)
        return ("", 204)

    @app.post("/api/users/<account>/disable")
    def api_disable_user(account: str) -> Any:
        services = _services()
        target_ou = str(_json_body().get("targetOu") or "").strip() or services.config.ldap.disabled_ou
        services.directory.disable_user(_actor(), account, target_ou)
        return jsonify({"ok": True})

    @app.post("/api/users/<account>/enable")
    def api_enable_user(account: str) -> Any:
        _services().directory.enable_user(_actor(), account)
        return jsonify({"ok": True})

    @app.post("/api/users/<account>/unlock")
    def api_unlock_user(account: str) -> Any:
        _services().directory.unlock_user(_actor(), account)
        return jsonify({"ok": True})

    @app.post("/api/users/<account>/move")
    def api_move_user(account: str) -> Any:
        target_ou = str(_json_body().get("targetOuDn") or "").strip()
        if not target_ou:
            raise ValidationError("targetOuDn is required.")
        new_dn = _services().directory.move_user(_actor(), account, target_ou)
        return jsonify({"ok": True, "distinguishedName": new_dn})

    @app.post("/api/users/<account>/password")
    def api_reset_password(account: str) -> Any:
        password = str(_json_body().get("password") or "")
        if not password:
            raise ValidationError("password is required.")
        _services().directory.reset_password(_actor(), account, password)
        return jsonify({"ok": True})

    # Groups and OUs ------------------------------------------------------
    @app.get("/api/groups")
    def api_groups() -> Any:
        query = request.args.get("q", "").strip() or None
        limit = _parse_api_limit(request.args.get("limit"), default=25, maximum=100)
        return jsonify({"items": _services().directory.list_groups(query, limit)})

    @app.route("/api/groups/members", methods=["POST", "DELETE"])
    def api_group_members() -> Any:
        data = _json_body()
        group_dn = str(data.get("groupDn") or "").strip()
        member_dn = str(data.get("memberDn") or "").strip()
        if not group_dn or not member_dn:
            raise ValidationError("groupDn and memberDn are required.")
        directory = _services().directory
        if request.method == "POST":
            directory.add_group_member(_actor(), group_dn, member_dn)
        else:
            directory.remove_group_member(_actor(), group_dn, member_dn)
        return jsonify({"ok": True})

    @app.get("/api/ous")
    def api_ous() -> Any:
        return jsonify({"items": _services().directory.list_organizational_units()})

    @app.get("/api/tree")
    def api_tree() -> Any:
        depth = _parse_api_limit(request.args.get("depth"), default=2, maximum=6)
        base_dn = request.args.get("base") or None
        return jsonify(_services().directory.directory_tree(base_dn, depth))

    @app.get("/api/stats")
    def api_stats() -> Any:
        return jsonify(_services().directory.stats())


def _ensure_scheduler_worker(app: Flask) -> None:
    if app.config.get("_SCHEDULER_WORKER_THREAD"):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return
    services: Services = app.config["SERVICES"]
    thread, stop_event = start_background_worker(
        services.worker,
        services.config.scheduler.interval_seconds,
        run_on_start=services.config.scheduler.run_on_start,
    )
    app.config["_SCHEDULER_WORKER_THREAD"] = thread
    app.config["_SCHEDULER_WORKER_STOP"] = stop_event


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("AD_CONSOLE_WEB_HOST", "0.0.0.0"),
        port=int(os.environ.get("AD_CONSOLE_WEB_PORT", "5000")),
        debug=os.environ.get("AD_CONSOLE_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
