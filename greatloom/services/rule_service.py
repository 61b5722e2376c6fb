"""Rule service layer — business logic for the Rule Store.

Transaction policy: public functions call db.session.commit() on success.
Internal helpers use flush() for ID generation within a transaction.

Every mutation is checked first by the conflict resolver. A blocking
report is audited (``rule.change_blocked``), committed on its own and
raised as ``ConflictResolverBlock``; the Rule Store itself is untouched.

Provides:
- ProgramRule list/get/create/update (slots replaced wholesale)
- RuleException, enrolment and roster additions
- Audit trail for all write operations
"""
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from greatloom.core.exceptions import ConflictError, ConflictResolverBlock, NotFoundError, ValidationError
from greatloom.core.loom_types import SLOT_TYPES, STAFF_ROLES
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.reference import Participant, Staff, Vehicle, Venue
from greatloom.models.rules import (
    ParticipantScheduleRule,
    ProgramRule,
    RuleException,
    RuleSlot,
    StaffRosterRule,
    _as_date,
    _as_time,
)
from greatloom.services.conflict_resolver import ConflictReport, ProposedRuleChange, check_conflict

logger = logging.getLogger(__name__)

_RULE_FIELDS = (
    "name", "description", "pattern", "days_of_week", "week_in_cycle", "cycle_anchor",
    "start_time", "end_time", "venue_id", "default_vehicle_id", "start_date", "end_date",
    "active",
)
_REQUIRED_ON_CREATE = ("name", "days_of_week", "start_time", "end_time", "start_date")


def _validate_enum(value: str, allowed: set[str], field_name: str) -> str | None:
    """Return error message if value not in allowed set, else None."""
    if value and value not in allowed:
        return f"Invalid {field_name}: '{value}'. Allowed: {sorted(allowed)}"
    return None


def _require_reference(model, ref_id, field_name: str) -> None:
    if ref_id is None:
        return
    if db.session.get(model, ref_id) is None:
        raise ValidationError(f"{field_name} {ref_id} does not exist", details={field_name: ref_id})


def _guard(change: ProposedRuleChange, actor: str) -> ConflictReport:
    report = check_conflict(change)
    if report.blocking:
        write_audit(
            entity_type="program_rule",
            entity_id=str(change.rule_id) if change.rule_id is not None else "new",
            action_type="rule.change_blocked",
            actor=actor,
            severity="warning",
            new_state={"kind": change.kind, "payload": change.payload,
                       "conflicts": report.conflicts},
        )
        db.session.commit()
        logger.warning("Rule change blocked: kind=%s rule_id=%s conflicts=%d",
                       change.kind, change.rule_id, len(report.conflicts),
                       extra={"rule_id": change.rule_id})
        raise ConflictResolverBlock(report.conflicts)
    return report


# ═════════════════════════════════════════════════════════════════════════════
# Program rules
# ═════════════════════════════════════════════════════════════════════════════


def list_rules(*, active=None, venue_id=None) -> list[ProgramRule]:
    stmt = select(ProgramRule).order_by(ProgramRule.name, ProgramRule.id)
    if active is not None:
        stmt = stmt.where(ProgramRule.active.is_(bool(active)))
    if venue_id is not None:
        stmt = stmt.where(ProgramRule.venue_id == venue_id)
    return db.session.execute(stmt).scalars().all()


def get_rule(rule_id: int) -> ProgramRule:
    rule = db.session.get(ProgramRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="ProgramRule", resource_id=rule_id)
    return rule


def _validate_rule_payload(data: dict, *, creating: bool) -> None:
    if creating:
        missing = [k for k in _REQUIRED_ON_CREATE if data.get(k) in (None, "", [])]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={k: "required" for k in missing},
            )
    if "name" in data and not str(data.get("name") or "").strip():
        raise ValidationError("name must not be blank", details={"name": data.get("name")})
    if "days_of_week" in data and not isinstance(data["days_of_week"], list):
        raise ValidationError("days_of_week must be a list of weekday numbers (0=Monday)")
    for slot in data.get("slots") or []:
        err = _validate_enum(slot.get("slot_type"), SLOT_TYPES, "slot_type")
        if err:
            raise ValidationError(err, details={"slot_type": slot.get("slot_type")})
    _require_reference(Venue, data.get("venue_id"), "venue_id")
    _require_reference(Vehicle, data.get("default_vehicle_id"), "default_vehicle_id")


def _apply_rule_fields(rule: ProgramRule, data: dict) -> dict:
    changed = {}
    for key in _RULE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key in ("cycle_anchor", "start_date", "end_date"):
            value = _as_date(value, key)
        elif key in ("start_time", "end_time"):
            value = _as_time(value, key)
        elif key == "days_of_week":
            value = sorted({int(d) for d in value})
        elif key == "name":
            value = value.strip()
        if getattr(rule, key) != value:
            changed[key] = value
            setattr(rule, key, value)
    if "slots" in data:
        rule.slots = [
            RuleSlot(
                seq=s.get("seq", i),
                slot_type=s.get("slot_type", "activity"),
                start_time=_as_time(s.get("start_time"), "slots.start_time"),
                end_time=_as_time(s.get("end_time"), "slots.end_time"),
                route_run_number=s.get("route_run_number"),
                label=s.get("label"),
            )
            for i, s in enumerate(data["slots"] or [], start=1)
        ]
        changed["slots"] = len(rule.slots)
    return changed


def create_rule(data: dict, *, actor: str = "system") -> tuple[ProgramRule, ConflictReport]:
    """Create a program rule. Returns the rule and the (non-blocking) conflict report."""
    _validate_rule_payload(data, creating=True)
    report = _guard(ProposedRuleChange("program_rule", None, data), actor)

    rule = ProgramRule(pattern="weekly", week_in_cycle=1, active=True)
    _apply_rule_fields(rule, data)
    db.session.add(rule)
    db.session.flush()

    write_audit(
        entity_type="program_rule",
        entity_id=rule.id,
        action_type="rule.create",
        actor=actor,
        new_state=rule.to_dict(),
    )
    db.session.commit()
    logger.info("Rule created: id=%s name=%s", rule.id, rule.name, extra={"rule_id": rule.id})
    return rule, report


def update_rule(rule_id: int, data: dict, *, actor: str = "system") -> tuple[ProgramRule, ConflictReport]:
    """Update a program rule. Optional ``version`` in the payload is checked."""
    rule = get_rule(rule_id)
    expected = data.get("version")
    if expected is not None and int(expected) != rule.version:
        raise ConflictError("ProgramRule", "version", str(expected))

    _validate_rule_payload(data, creating=False)
    report = _guard(ProposedRuleChange("program_rule", rule_id, data), actor)

    before = rule.to_dict()
    changed = _apply_rule_fields(rule, data)
    if changed:
        rule.version = (rule.version or 1) + 1
        write_audit(
            entity_type="program_rule",
            entity_id=rule.id,
            action_type="rule.update",
            actor=actor,
            previous_state=before,
            new_state=rule.to_dict(),
        )
    db.session.commit()
    logger.info("Rule updated: id=%s fields=%s", rule.id, sorted(changed), extra={"rule_id": rule.id})
    return rule, report


# ═════════════════════════════════════════════════════════════════════════════
# Exceptions, enrolments, roster
# ═════════════════════════════════════════════════════════════════════════════


def add_exception(rule_id: int, data: dict, *, actor: str = "system") -> RuleException:
    """Record a date-scoped exception. Duplicates on the same scope → ConflictError."""
    rule = get_rule(rule_id)
    row = RuleException.from_payload(rule.id, data, created_by=actor)
    _require_reference(Venue, row.venue_id, "venue_id")
    _require_reference(Vehicle, row.vehicle_id, "vehicle_id")
    _require_reference(Staff, row.staff_id, "staff_id")
    _require_reference(Participant, row.participant_id, "participant_id")

    duplicate = db.session.execute(
        select(RuleException.id).where(
            RuleException.rule_id == rule.id,
            RuleException.exception_date == row.exception_date,
            RuleException.exception_type == row.exception_type,
            (RuleException.participant_id == row.participant_id) if row.participant_id
            else RuleException.participant_id.is_(None),
        )
    ).scalar_one_or_none()
    if duplicate is not None:
        raise ConflictError("RuleException", "exception_date", row.exception_date.isoformat())

    _guard(ProposedRuleChange("exception", rule.id, data), actor)

    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("RuleException", "exception_date", row.exception_date.isoformat())

    write_audit(
        entity_type="rule_exception",
        entity_id=row.id,
        action_type="rule.exception_add",
        actor=actor,
        new_state=row.to_dict(),
    )
    db.session.commit()
    logger.info("Exception %s added to rule %s for %s", row.exception_type, rule.id,
                row.exception_date, extra={"rule_id": rule.id})
    return row


def add_enrolment(rule_id: int, data: dict, *, actor: str = "system") -> tuple[ParticipantScheduleRule, ConflictReport]:
    rule = get_rule(rule_id)
    participant_id = data.get("participant_id")
    if not participant_id:
        raise ValidationError("participant_id is required")
    _require_reference(Participant, participant_id, "participant_id")
    start = _as_date(data.get("start_date"), "start_date") or rule.start_date
    end = _as_date(data.get("end_date"), "end_date")
    if end is not None and end < start:
        raise ValidationError("end_date is before start_date")

    report = _guard(ProposedRuleChange("enrolment", rule.id, data), actor)

    enrolment = ParticipantScheduleRule(
        program_rule_id=rule.id,
        participant_id=participant_id,
        start_date=start,
        end_date=end,
        pickup_required=bool(data.get("pickup_required", True)),
        dropoff_required=bool(data.get("dropoff_required", True)),
        notes=data.get("notes") or "",
    )
    db.session.add(enrolment)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("ParticipantScheduleRule", "start_date", start.isoformat())

    write_audit(
        entity_type="enrolment",
        entity_id=enrolment.id,
        action_type="rule.enrolment_add",
        actor=actor,
        new_state=enrolment.to_dict(),
    )
    db.session.commit()
    return enrolment, report


def add_roster(rule_id: int, data: dict, *, actor: str = "system") -> tuple[StaffRosterRule, ConflictReport]:
    rule = get_rule(rule_id)
    staff_id = data.get("staff_id")
    if not staff_id:
        raise ValidationError("staff_id is required")
    _require_reference(Staff, staff_id, "staff_id")
    role = data.get("role") or "support"
    err = _validate_enum(role, STAFF_ROLES, "role")
    if err:
        raise ValidationError(err, details={"role": role})
    start = _as_date(data.get("start_date"), "start_date") or rule.start_date
    end = _as_date(data.get("end_date"), "end_date")
    if end is not None and end < start:
        raise ValidationError("end_date is before start_date")

    report = _guard(ProposedRuleChange("roster", rule.id, data), actor)

    roster = StaffRosterRule(
        program_rule_id=rule.id,
        staff_id=staff_id,
        role=role,
        start_date=start,
        end_date=end,
        notes=data.get("notes") or "",
    )
    db.session.add(roster)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("StaffRosterRule", "start_date", start.isoformat())

    write_audit(
        entity_type="roster",
        entity_id=roster.id,
        action_type="rule.roster_add",
        actor=actor,
        new_state=roster.to_dict(),
    )
    db.session.commit()
    return roster, report
