"""
Great Loom
Rules Blueprint — the Rule Store API.

Endpoints:
    GET    /api/v1/rules                          — list (?active=true|false, ?venue_id=)
    POST   /api/v1/rules                          — create
    GET    /api/v1/rules/<id>                     — detail (+ slots, enrolments, roster, exceptions)
    PUT    /api/v1/rules/<id>                     — update
    POST   /api/v1/rules/check-conflict           — dry-run a proposed change
    POST   /api/v1/rules/<id>/exceptions          — add a date-scoped exception
    POST   /api/v1/rules/<id>/enrolments          — enrol a participant
    POST   /api/v1/rules/<id>/roster              — roster a staff member

Every mutation is checked by the conflict resolver first; a blocking
report answers 409 with the conflict list and nothing is written.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from greatloom.core.exceptions import ConflictError, ConflictResolverBlock, NotFoundError, ValidationError
from greatloom.services import rule_service
from greatloom.services.conflict_resolver import ProposedRuleChange, check_conflict
from greatloom.utils.errors import E, api_error
from greatloom.utils.helpers import current_actor

logger = logging.getLogger(__name__)

rules_bp = Blueprint("rules", __name__, url_prefix="/api/v1/rules")


# ── Error handlers ────────────────────────────────────────────────────────────


@rules_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@rules_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)


@rules_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    code = E.CONFLICT_VERSION if error.field == "version" else E.CONFLICT_DUPLICATE
    return api_error(code, str(error), details={"field": error.field, "value": error.value})


@rules_bp.errorhandler(ConflictResolverBlock)
def _handle_block(error: ConflictResolverBlock):
    return api_error(E.CONFLICT_BLOCK, str(error), details={"conflicts": error.conflicts})


@rules_bp.errorhandler(HTTPException)
def _handle_http(error: HTTPException):
    return jsonify({"error": error.description}), error.code


@rules_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    logger.exception("Unexpected error in rules_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _with_report(payload: dict, report) -> dict:
    payload["conflict_warnings"] = report.warnings
    return payload


# ═════════════════════════════════════════════════════════════════════════
# Program rules
# ═════════════════════════════════════════════════════════════════════════


@rules_bp.route("", methods=["GET"])
def list_rules():
    active = request.args.get("active")
    rules = rule_service.list_rules(
        active=None if active is None else active.lower() in ("1", "true", "yes"),
        venue_id=request.args.get("venue_id", type=int),
    )
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)}), 200


@rules_bp.route("", methods=["POST"])
def create_rule():
    """Body: {name, pattern?, days_of_week, week_in_cycle?, start_time, end_time,
    start_date, end_date?, venue_id?, default_vehicle_id?, slots?: [...]}"""
    rule, report = rule_service.create_rule(_json_body(), actor=current_actor())
    return jsonify(_with_report(rule.to_dict(include_children=True), report)), 201


@rules_bp.route("/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    return jsonify(rule_service.get_rule(rule_id).to_dict(include_children=True)), 200


@rules_bp.route("/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    rule, report = rule_service.update_rule(rule_id, _json_body(), actor=current_actor())
    return jsonify(_with_report(rule.to_dict(include_children=True), report)), 200


@rules_bp.route("/check-conflict", methods=["POST"])
def check_rule_conflict():
    """Dry run. Body: {kind: program_rule|enrolment|roster|exception, rule_id?, payload: {...}}"""
    data = _json_body()
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object", details={"payload": payload})
    change = ProposedRuleChange(kind=data.get("kind") or "", rule_id=data.get("rule_id"),
                                payload=payload)
    return jsonify(check_conflict(change).to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Exceptions, enrolments, roster
# ═════════════════════════════════════════════════════════════════════════


@rules_bp.route("/<int:rule_id>/exceptions", methods=["POST"])
def add_exception(rule_id):
    """Body: {exception_type, exception_date, reason?, …variant fields}"""
    row = rule_service.add_exception(rule_id, _json_body(), actor=current_actor())
    return jsonify(row.to_dict()), 201


@rules_bp.route("/<int:rule_id>/enrolments", methods=["POST"])
def add_enrolment(rule_id):
    """Body: {participant_id, start_date?, end_date?, pickup_required?, dropoff_required?}"""
    enrolment, report = rule_service.add_enrolment(rule_id, _json_body(), actor=current_actor())
    return jsonify(_with_report(enrolment.to_dict(), report)), 201


@rules_bp.route("/<int:rule_id>/roster", methods=["POST"])
def add_roster(rule_id):
    """Body: {staff_id, role?, start_date?, end_date?}"""
    roster, report = rule_service.add_roster(rule_id, _json_body(), actor=current_actor())
    return jsonify(_with_report(roster.to_dict(), report)), 201
