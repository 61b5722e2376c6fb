"""
Great Loom
Loom Blueprint — live instances, window config, history ribbon and jobs.

Endpoints:
    Passes:
        POST   /api/v1/loom/roll-window                   — project (+ archive + spot audit)
        POST   /api/v1/loom/archive                       — archive only

    Instances:
        GET    /api/v1/loom/instances?range=A..B           — list with derived counts
        GET    /api/v1/loom/instances/<id>                 — detail (+ attachments, slots, cards)
        PATCH  /api/v1/loom/instances/<id>                 — operator override
        DELETE /api/v1/loom/instances/<id>                 — cancel a live instance

    Window:
        GET    /api/v1/loom/window-config
        PATCH  /api/v1/loom/window-config                  — {"weeks": 1..16}

    History Ribbon:
        GET    /api/v1/loom/history?range=A..B
        GET    /api/v1/loom/history/<id>
        POST   /api/v1/loom/history/<id>/artifacts         — pin note / incident / …

    Jobs:
        GET    /api/v1/loom/jobs
        GET    /api/v1/loom/jobs/<name>
        PATCH  /api/v1/loom/jobs/<name>                    — {"is_enabled": bool}
        POST   /api/v1/loom/jobs/<name>/run

    Notifications:
        GET    /api/v1/loom/notifications

The operator identity for audit rows is taken from the X-Actor header.
Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from greatloom.blueprints import paginate_query
from greatloom.core.exceptions import (
    ConflictError,
    HistoryImmutableError,
    LoomLockBusyError,
    NotFoundError,
    ValidationError,
)
from greatloom.models.loom import INSTANCE_STATUSES, LoomInstance
from greatloom.services import history_service, loom_roller, override_service
from greatloom.services.notification import NotificationService
from greatloom.services.scheduler_service import SchedulerService, get_registered_jobs
from greatloom.services.window_config import get_window_config, set_window_weeks
from greatloom.utils.errors import E, api_error
from greatloom.utils.helpers import current_actor, parse_date, parse_datetime, parse_range

logger = logging.getLogger(__name__)

loom_bp = Blueprint("loom", __name__, url_prefix="/api/v1/loom")


# ── Error handlers ────────────────────────────────────────────────────────────


@loom_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@loom_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@loom_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    code = E.CONFLICT_VERSION if error.field == "version" else E.CONFLICT_STATE
    return api_error(code, str(error), details={"field": error.field, "value": error.value})


@loom_bp.errorhandler(LoomLockBusyError)
def _handle_lock_busy(error: LoomLockBusyError):
    return api_error(E.LOCK_BUSY, str(error), details={"lock": error.name, "holder": error.holder})


@loom_bp.errorhandler(HistoryImmutableError)
def _handle_immutable(error: HistoryImmutableError):
    return api_error(E.HISTORY_IMMUTABLE, str(error))


@loom_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    return jsonify({"error": error.description}), error.code


@loom_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in loom_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═════════════════════════════════════════════════════════════════════════
# Passes
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/roll-window", methods=["POST"])
def roll_window():
    """Run one roll: project the window, then archive and spot-audit.

    Body: {today?: YYYY-MM-DD, archive?: bool (default true), as_of?: ISO-8601}
    Returns: projection counts + warnings, archive and audit summaries.
    """
    data = _json_body()
    archive = data.get("archive", True)
    if not isinstance(archive, bool):
        raise ValidationError("archive must be a boolean", details={"archive": archive})

    summary = loom_roller.roll_window(
        today=parse_date(data.get("today"), "today"),
        archive=archive,
        as_of=parse_datetime(data.get("as_of")),
        actor=current_actor(),
    )
    return jsonify(summary), 200


@loom_bp.route("/archive", methods=["POST"])
def archive():
    """Archive finished instances without projecting.

    Body: {as_of?: ISO-8601}
    """
    data = _json_body()
    summary = loom_roller.archive_now(as_of=parse_datetime(data.get("as_of")), actor=current_actor())
    return jsonify(summary), 200


# ═════════════════════════════════════════════════════════════════════════
# Instances
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/instances", methods=["GET"])
def list_instances():
    """List live instances in a date range.

    Query params: range=YYYY-MM-DD..YYYY-MM-DD (or start, end), rule_id, status
    """
    start, end = parse_range(request.args)
    q = LoomInstance.query.filter(
        LoomInstance.instance_date >= start,
        LoomInstance.instance_date < end,
    )
    rule_id = request.args.get("rule_id", type=int)
    if rule_id is not None:
        q = q.filter(LoomInstance.source_rule_id == rule_id)
    status = request.args.get("status")
    if status:
        if status not in INSTANCE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(sorted(INSTANCE_STATUSES))}",
                                  details={"status": status})
        q = q.filter(LoomInstance.status == status)

    q = q.order_by(LoomInstance.instance_date, LoomInstance.start_time)
    items, total = paginate_query(q)
    return jsonify({
        "items": [i.to_dict() for i in items],
        "total": total,
        "range": {"start": start.isoformat(), "end": end.isoformat()},
    }), 200


@loom_bp.route("/instances/<instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = override_service.get_live_instance(instance_id)
    return jsonify(instance.to_dict(include_children=True)), 200


@loom_bp.route("/instances/<instance_id>", methods=["PATCH"])
def patch_instance(instance_id):
    """Operator override. See ``override_service`` for the payload shape."""
    instance = override_service.apply_instance_patch(instance_id, _json_body(), actor=current_actor())
    return jsonify(instance.to_dict(include_children=True)), 200


@loom_bp.route("/instances/<instance_id>", methods=["DELETE"])
def delete_instance(instance_id):
    """Cancel a live instance. Archived ids answer 409."""
    data = _json_body()
    reason = data.get("reason") or request.args.get("reason") or ""
    result = override_service.cancel_instance(instance_id, actor=current_actor(), reason=reason)
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Window configuration
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/window-config", methods=["GET"])
def get_window():
    return jsonify(get_window_config().to_dict()), 200


@loom_bp.route("/window-config", methods=["PATCH"])
def patch_window():
    data = _json_body()
    if "weeks" not in data:
        raise ValidationError("weeks is required", details={"weeks": "required"})
    config = set_window_weeks(data["weeks"], actor=current_actor())
    return jsonify(config.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# History Ribbon
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/history", methods=["GET"])
def list_history():
    """List archived shifts.

    Query params: range (or start, end) — optional; rule_id; completion_status
    """
    start, end = parse_range(request.args, required=False)
    q = history_service.history_query(
        start, end,
        rule_id=request.args.get("rule_id", type=int),
        completion_status=request.args.get("completion_status"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [s.to_dict() for s in items], "total": total}), 200


@loom_bp.route("/history/<shift_id>", methods=["GET"])
def get_history_shift(shift_id):
    shift = history_service.get_shift(shift_id)
    return jsonify(shift.to_dict(include_children=True)), 200


@loom_bp.route("/history/<shift_id>/artifacts", methods=["POST"])
def pin_artifact(shift_id):
    """Body: {artifact_type, title, content?, severity?}"""
    artifact = history_service.pin_artifact(shift_id, _json_body(), actor=current_actor())
    return jsonify(artifact.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"jobs": SchedulerService.list_jobs()}), 200


@loom_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    result = SchedulerService.run_job(job_name)
    status = 200 if result["status"] in ("success", "skipped") else 500
    return jsonify(result), status


@loom_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job(job_name):
    record = SchedulerService.get_job_status(job_name)
    if record is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(record), 200


@loom_bp.route("/jobs/<job_name>", methods=["PATCH"])
def toggle_job(job_name):
    """Body: {is_enabled: bool}"""
    data = _json_body()
    enabled = data.get("is_enabled")
    if not isinstance(enabled, bool):
        raise ValidationError("is_enabled must be a boolean", details={"is_enabled": enabled})
    record = SchedulerService.toggle_job(job_name, enabled)
    if record is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(record), 200


# ═════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════


@loom_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Query params: recipient (default all), category, unread_only, limit, offset"""
    items, total = NotificationService.list_for_recipient(
        recipient=request.args.get("recipient", "all"),
        category=request.args.get("category"),
        unread_only=request.args.get("unread_only", "").lower() in ("1", "true", "yes"),
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total}), 200
