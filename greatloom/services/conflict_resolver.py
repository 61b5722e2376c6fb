"""
Great Loom
Conflict Resolver — checks a proposed rule change against overridden rows.

A proposal is expanded over the affected range the same way the projector
would expand it, then compared with what operators have pinned in the live
store:

    blocking  an overridden staff or vehicle assignment on another
              instance overlapping in date and time with a staff member or
              vehicle the change would require
    warning   overridden attendance of an enrolled participant on an
              overlapping instance; manually modified instances of the
              rule that will not follow the change; overridden rows of the
              rule that the change would otherwise alter

Nothing here writes. ``rule_service`` calls ``check_conflict`` before every
rule-store mutation and refuses blocking reports.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import date, time, timedelta

from sqlalchemy import func, select

from greatloom.core.exceptions import NotFoundError, RuleExpansionError, ValidationError
from greatloom.core.loom_types import (
    EXCEPTION_SHIFT,
    EXCEPTION_SUBSTITUTE,
    EnrolmentSpec,
    Occurrence,
    RosterSpec,
    RuleSpec,
    SlotSpec,
)
from greatloom.models import db
from greatloom.models.loom import LoomInstance
from greatloom.models.rules import ProgramRule, RuleException
from greatloom.services.recurrence import expand_rule, validate_spec
from greatloom.services.window_config import get_window_config, loom_today

CHANGE_KINDS = {"program_rule", "enrolment", "roster", "exception"}


@dataclass(frozen=True)
class ProposedRuleChange:
    """A rule-store mutation that has not been applied yet.

    ``rule_id`` is None only for a brand new program rule. ``payload``
    carries the request body of the mutation.
    """

    kind: str
    rule_id: int | None = None
    payload: dict = field(default_factory=dict)


@dataclass
class ConflictReport:
    conflicts: list[dict] = field(default_factory=list)
    range_start: date | None = None
    range_end: date | None = None

    @property
    def blocking(self) -> bool:
        return any(c["blocking"] for c in self.conflicts)

    @property
    def warnings(self) -> list[dict]:
        return [c for c in self.conflicts if not c["blocking"]]

    def add(self, conflict_type: str, message: str, *, blocking: bool, **context) -> None:
        self.conflicts.append({"type": conflict_type, "blocking": blocking,
                               "message": message, **context})

    def to_dict(self) -> dict:
        return {
            "blocking": self.blocking,
            "conflicts": self.conflicts,
            "range_start": self.range_start.isoformat() if self.range_start else None,
            "range_end": self.range_end.isoformat() if self.range_end else None,
        }


# ── Payload parsing ──────────────────────────────────────────────────────────

def _date(value, label):
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{label} must be YYYY-MM-DD", details={label: value})


def _time(value, label):
    if value is None or isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{label} must be HH:MM", details={label: value})


_RULE_DATE_FIELDS = ("start_date", "end_date", "cycle_anchor")
_RULE_TIME_FIELDS = ("start_time", "end_time")
_RULE_PLAIN_FIELDS = ("name", "pattern", "week_in_cycle", "venue_id", "default_vehicle_id")


def _overlay_rule(base: RuleSpec, payload: dict) -> RuleSpec:
    changes = {}
    for key in _RULE_PLAIN_FIELDS:
        if key in payload:
            changes[key] = payload[key]
    for key in _RULE_DATE_FIELDS:
        if key in payload:
            changes[key] = _date(payload[key], key)
    for key in _RULE_TIME_FIELDS:
        if key in payload:
            changes[key] = _time(payload[key], key)
    if "days_of_week" in payload:
        try:
            changes["days_of_week"] = tuple(sorted(int(d) for d in payload["days_of_week"] or []))
        except (TypeError, ValueError):
            raise ValidationError("days_of_week must be a list of weekday numbers (0=Monday)",
                                  details={"days_of_week": payload["days_of_week"]})
    if "slots" in payload:
        changes["slots"] = tuple(
            SlotSpec(
                seq=s.get("seq", i),
                slot_type=s.get("slot_type", "activity"),
                start_time=_time(s.get("start_time"), "slots.start_time"),
                end_time=_time(s.get("end_time"), "slots.end_time"),
                route_run_number=s.get("route_run_number"),
                label=s.get("label"),
            )
            for i, s in enumerate(payload["slots"] or [], start=1)
        )
    return dataclasses.replace(base, **changes)


def _blank_spec() -> RuleSpec:
    return RuleSpec(
        rule_id=0, name="", pattern="weekly", days_of_week=(),
        start_time=time(9, 0), end_time=time(15, 0), start_date=date.today(),
    )


def prospective_spec(change: ProposedRuleChange) -> RuleSpec:
    """The rule snapshot as it would look once the change is applied."""
    if change.kind not in CHANGE_KINDS:
        raise ValidationError(f"kind must be one of: {', '.join(sorted(CHANGE_KINDS))}",
                              details={"kind": change.kind})
    payload = change.payload or {}

    if change.rule_id is None:
        if change.kind != "program_rule":
            raise ValidationError("rule_id is required for enrolment, roster and exception changes")
        for key in ("start_date", "start_time", "end_time"):
            if payload.get(key) in (None, ""):
                raise ValidationError(f"{key} is required", details={key: None})
        return _overlay_rule(_blank_spec(), payload)

    rule = db.session.get(ProgramRule, change.rule_id)
    if rule is None:
        raise NotFoundError(resource="ProgramRule", resource_id=change.rule_id)
    base = rule.to_spec()

    if change.kind == "program_rule":
        return _overlay_rule(base, payload)

    if change.kind == "exception":
        variant = RuleException.from_payload(change.rule_id, payload).to_variant()
        return dataclasses.replace(base, exceptions=(*base.exceptions, variant))

    start = _date(payload.get("start_date"), "start_date") or base.start_date
    end = _date(payload.get("end_date"), "end_date")
    if change.kind == "enrolment":
        if not payload.get("participant_id"):
            raise ValidationError("participant_id is required")
        extra = EnrolmentSpec(
            schedule_rule_id=0,
            participant_id=int(payload["participant_id"]),
            start_date=start,
            end_date=end,
            pickup_required=bool(payload.get("pickup_required", True)),
            dropoff_required=bool(payload.get("dropoff_required", True)),
        )
        return dataclasses.replace(base, enrolments=(*base.enrolments, extra))

    if not payload.get("staff_id"):
        raise ValidationError("staff_id is required")
    extra = RosterSpec(
        roster_rule_id=0,
        staff_id=int(payload["staff_id"]),
        role=payload.get("role") or "support",
        start_date=start,
        end_date=end,
    )
    return dataclasses.replace(base, roster=(*base.roster, extra))


# ── Comparison ───────────────────────────────────────────────────────────────

def _overlaps(instance: LoomInstance, occ: Occurrence) -> bool:
    return instance.start_time < occ.end_time and occ.start_time < instance.end_time


def _affected_range(spec: RuleSpec, rule_id: int | None, today: date) -> tuple[date, date]:
    start = max(today, spec.start_date)
    end = get_window_config().window_for(today)[1]
    if rule_id is not None:
        latest = db.session.execute(
            select(func.max(LoomInstance.instance_date)).where(LoomInstance.source_rule_id == rule_id)
        ).scalar()
        if latest is not None and latest >= end:
            end = latest + timedelta(days=1)
    return start, end


def _required_subjects(change: ProposedRuleChange, occ: Occurrence):
    """Staff, vehicles and participants this change is responsible for on ``occ``."""
    payload = change.payload or {}
    if change.kind == "exception":
        return _exception_subjects(payload, occ)
    if change.kind == "roster":
        return {int(payload["staff_id"])} & {s.staff_id for s in occ.staff}, set(), set()
    if change.kind == "enrolment":
        return set(), set(), {int(payload["participant_id"])} & {a.participant_id for a in occ.attendance}
    return ({s.staff_id for s in occ.staff},
            {v.vehicle_id for v in occ.vehicles},
            {a.participant_id for a in occ.attendance})


def _exception_subjects(payload: dict, occ: Occurrence):
    """A substitute requires the resources it brings in; a shift requires the whole occurrence."""
    if occ.nominal_date != _date(payload.get("exception_date"), "exception_date"):
        return set(), set(), set()
    exception_type = (payload.get("exception_type") or "").strip()
    if exception_type == EXCEPTION_SUBSTITUTE:
        staff_ids = {int(payload["staff_id"])} if payload.get("staff_id") else set()
        vehicle_ids = {int(payload["vehicle_id"])} if payload.get("vehicle_id") else set()
        return (staff_ids & {s.staff_id for s in occ.staff},
                vehicle_ids & {v.vehicle_id for v in occ.vehicles}, set())
    if exception_type == EXCEPTION_SHIFT:
        return ({s.staff_id for s in occ.staff},
                {v.vehicle_id for v in occ.vehicles},
                {a.participant_id for a in occ.attendance})
    return set(), set(), set()


def _other_instances(rule_id, day: date) -> list[LoomInstance]:
    stmt = select(LoomInstance).where(LoomInstance.instance_date == day)
    if rule_id is not None:
        stmt = stmt.where(
            (LoomInstance.source_rule_id != rule_id) | LoomInstance.source_rule_id.is_(None)
        )
    return db.session.execute(stmt).scalars().all()


def check_conflict(change: ProposedRuleChange, *, today: date | None = None) -> ConflictReport:
    """Validate ``change`` against overridden rows. Read-only."""
    today = today or loom_today()
    report = ConflictReport()

    try:
        spec = prospective_spec(change)
        report.range_start, report.range_end = _affected_range(spec, change.rule_id, today)
        validate_spec(spec)
        if report.range_start >= report.range_end:
            return report
        occurrences = expand_rule(spec, report.range_start, report.range_end)
    except RuleExpansionError as exc:
        raise ValidationError(str(exc), details={"rule_id": change.rule_id})

    planned_dates = {occ.instance_date: occ for occ in occurrences}

    for occ in occurrences:
        staff_ids, vehicle_ids, participant_ids = _required_subjects(change, occ)
        if not (staff_ids or vehicle_ids or participant_ids):
            continue
        for other in _other_instances(change.rule_id, occ.instance_date):
            if not _overlaps(other, occ):
                continue
            where = {"instance_id": other.id, "instance_date": occ.instance_date.isoformat(),
                     "other_rule_id": other.source_rule_id}
            for sa in other.staff_assignments:
                if sa.is_overridden and sa.status != "removed" and sa.staff_id in staff_ids:
                    report.add("staff_double_booked",
                               f"Staff {sa.staff_id} is pinned by an operator to another "
                               f"instance on {occ.instance_date} at an overlapping time",
                               blocking=True, staff_id=sa.staff_id, **where)
            for va in other.vehicle_assignments:
                if va.is_overridden and va.status != "removed" and va.vehicle_id in vehicle_ids:
                    report.add("vehicle_double_booked",
                               f"Vehicle {va.vehicle_id} is pinned by an operator to another "
                               f"instance on {occ.instance_date} at an overlapping time",
                               blocking=True, vehicle_id=va.vehicle_id, **where)
            for pa in other.attendance:
                if pa.is_overridden and pa.status != "removed" and pa.participant_id in participant_ids:
                    report.add("participant_overlap",
                               f"Participant {pa.participant_id} has an operator-set attendance "
                               f"on another instance on {occ.instance_date} at an overlapping time",
                               blocking=False, participant_id=pa.participant_id, **where)

    if change.rule_id is not None:
        _check_own_instances(change.rule_id, planned_dates, report)
    return report


def _check_own_instances(rule_id: int, planned: dict, report: ConflictReport) -> None:
    own = db.session.execute(
        select(LoomInstance).where(
            LoomInstance.source_rule_id == rule_id,
            LoomInstance.instance_date >= report.range_start,
            LoomInstance.instance_date < report.range_end,
        ).order_by(LoomInstance.instance_date)
    ).scalars().all()

    for instance in own:
        where = {"instance_id": instance.id, "instance_date": instance.instance_date.isoformat()}
        occ = planned.get(instance.instance_date)
        if instance.manually_modified:
            report.add("manually_modified",
                       f"Instance on {instance.instance_date} was edited by an operator and "
                       f"will not follow this change",
                       blocking=False, **where)
        elif occ is not None and instance.projection_hash == occ.projection_hash():
            continue
        overridden = [
            row for row in (*instance.attendance, *instance.staff_assignments,
                            *instance.vehicle_assignments)
            if row.is_overridden
        ]
        if overridden:
            report.add("overridden_rows",
                       f"{len(overridden)} operator-set row(s) on {instance.instance_date} "
                       f"will be kept as they are",
                       blocking=False, **where,
                       rows=[{"type": type(r).__name__, "id": r.id} for r in overridden])
