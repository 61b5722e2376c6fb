"""
Great Loom
Audit blueprint.

Endpoints:
    GET  /api/v1/audit               — list / filter audit logs
    GET  /api/v1/audit/<int:log_id>  — single audit entry
"""

from flask import Blueprint, jsonify, request

from greatloom.models import db
from greatloom.models.audit import AuditLog
from greatloom.utils.errors import E, api_error

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


# ── List / filter ────────────────────────────────────────────────────────────

@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Return paginated audit logs with optional filters.

    Query params:
        entity_type  — filter by entity type
        entity_id    — filter by entity PK
        action_type  — filter by action string (prefix match, e.g. "loom.")
        actor        — filter by actor
        severity     — info | warning | critical
        page         — page number (default 1)
        per_page     — items per page (default 50, max 200)
    """
    q = AuditLog.query

    # ── Filters ──────────────────────────────────────────────────────────
    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action_type = request.args.get("action_type")
    if action_type:
        q = q.filter(AuditLog.action_type.startswith(action_type))

    actor = request.args.get("actor")
    if actor:
        q = q.filter(AuditLog.actor == actor)

    severity = request.args.get("severity")
    if severity:
        q = q.filter(AuditLog.severity == severity)

    # ── Ordering ─────────────────────────────────────────────────────────
    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())

    # ── Pagination ───────────────────────────────────────────────────────
    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(200, max(1, request.args.get("per_page", 50, type=int)))

    paginated = q.paginate(page=page, per_page=per_page, error_out=False)

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
        "pages": paginated.pages,
    })


# ── Single entry ─────────────────────────────────────────────────────────────

@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log = db.session.get(AuditLog, log_id)
    if not log:
        return api_error(E.NOT_FOUND, "Audit log not found")
    return jsonify(log.to_dict())
