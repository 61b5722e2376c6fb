"""
Great Loom
Rule Store models — "the unwoven future".

Models:
    - ProgramRule:             recurring program (days, times, venue, validity)
    - RuleSlot:                ordered time slots of a program day (pickup/activity/…)
    - ParticipantScheduleRule: recurring participant enrolment in a program
    - StaffRosterRule:         recurring staff assignment to a program
    - RuleException:           date-scoped override of one occurrence (tagged union)

Architecture:
    ProgramRule ──1:N──▶ RuleSlot
    ProgramRule ──1:N──▶ ParticipantScheduleRule
    ProgramRule ──1:N──▶ StaffRosterRule
    ProgramRule ──1:N──▶ RuleException

Rules are durable intent. The projector snapshots them with
``ProgramRule.to_spec()`` and never writes back.
"""

from datetime import date, datetime, time, timezone

from greatloom.core.exceptions import RuleExpansionError, ValidationError
from greatloom.core.loom_types import (
    EXCEPTION_CANCEL,
    EXCEPTION_PARTICIPANT_CANCEL,
    EXCEPTION_SHIFT,
    EXCEPTION_SUBSTITUTE,
    EXCEPTION_TYPES,
    CancelOccurrence,
    EnrolmentSpec,
    ParticipantCancel,
    RosterSpec,
    RuleSpec,
    ShiftOccurrence,
    SlotSpec,
    SubstituteResources,
)
from greatloom.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class ProgramRule(db.Model):
    """
    A recurring program.

    ``days_of_week`` uses 0=Monday … 6=Sunday (``date.weekday()``).
    ``week_in_cycle`` means "week 1 or 2 of the fortnight" for
    fortnightly rules and "n-th such weekday of the month" for monthly ones.
    """

    __tablename__ = "rules_programs"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")

    pattern = db.Column(db.String(20), nullable=False, default="weekly",
                        comment="weekly | fortnightly | monthly")
    days_of_week = db.Column(db.JSON, nullable=False, default=list)
    week_in_cycle = db.Column(db.SmallInteger, nullable=False, default=1)
    cycle_anchor = db.Column(db.Date, nullable=True,
                             comment="Fortnight anchor; defaults to start_date")

    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    venue_id = db.Column(db.Integer, db.ForeignKey("venues.id", ondelete="SET NULL"), nullable=True)
    default_vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id", ondelete="SET NULL"),
                                   nullable=True)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True, comment="NULL = open-ended")
    active = db.Column(db.Boolean, nullable=False, default=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    slots = db.relationship("RuleSlot", backref="rule", lazy="select",
                            cascade="all, delete-orphan", order_by="RuleSlot.seq")
    enrolments = db.relationship("ParticipantScheduleRule", backref="rule", lazy="select",
                                 cascade="all, delete-orphan")
    roster = db.relationship("StaffRosterRule", backref="rule", lazy="select",
                             cascade="all, delete-orphan")
    exceptions = db.relationship("RuleException", backref="rule", lazy="select",
                                 cascade="all, delete-orphan")

    def to_spec(self, *, participant_ok=None, staff_ok=None) -> RuleSpec:
        """Snapshot this rule into an immutable ``RuleSpec``.

        ``participant_ok`` / ``staff_ok`` are optional predicates on the
        subject id; subjects failing them are left out of the snapshot.
        """
        enrolments = tuple(
            sorted(
                (e.to_spec() for e in self.enrolments
                 if participant_ok is None or participant_ok(e.participant_id)),
                key=lambda e: (e.participant_id, e.start_date),
            )
        )
        roster = tuple(
            sorted(
                (r.to_spec() for r in self.roster
                 if staff_ok is None or staff_ok(r.staff_id)),
                key=lambda r: (r.staff_id, r.start_date),
            )
        )
        return RuleSpec(
            rule_id=self.id,
            name=self.name,
            pattern=self.pattern,
            days_of_week=self._stored_days(),
            start_time=self.start_time,
            end_time=self.end_time,
            start_date=self.start_date,
            end_date=self.end_date,
            week_in_cycle=self.week_in_cycle or 1,
            cycle_anchor=self.cycle_anchor,
            venue_id=self.venue_id,
            default_vehicle_id=self.default_vehicle_id,
            slots=tuple(s.to_spec() for s in self.slots),
            enrolments=enrolments,
            roster=roster,
            exceptions=tuple(x.to_variant() for x in self.exceptions),
        )

    def _stored_days(self) -> tuple[int, ...]:
        try:
            return tuple(sorted(int(d) for d in (self.days_of_week or [])))
        except (TypeError, ValueError):
            raise RuleExpansionError(self.id, f"days_of_week is malformed: {self.days_of_week!r}")

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "pattern": self.pattern,
            "days_of_week": list(self.days_of_week or []),
            "week_in_cycle": self.week_in_cycle,
            "cycle_anchor": self.cycle_anchor.isoformat() if self.cycle_anchor else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "venue_id": self.venue_id,
            "default_vehicle_id": self.default_vehicle_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "active": self.active,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_children:
            result["slots"] = [s.to_dict() for s in self.slots]
            result["enrolments"] = [e.to_dict() for e in self.enrolments]
            result["roster"] = [r.to_dict() for r in self.roster]
            result["exceptions"] = [x.to_dict() for x in self.exceptions]
        return result

    def __repr__(self):
        return f"<ProgramRule {self.id}: {self.name} [{self.pattern}]>"


class RuleSlot(db.Model):
    __tablename__ = "rules_program_slots"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False)
    slot_type = db.Column(db.String(20), nullable=False,
                          comment="pickup | activity | meal | dropoff | other")
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    route_run_number = db.Column(db.Integer, nullable=True)
    label = db.Column(db.String(200), nullable=True)

    def to_spec(self) -> SlotSpec:
        return SlotSpec(
            seq=self.seq,
            slot_type=self.slot_type,
            start_time=self.start_time,
            end_time=self.end_time,
            route_run_number=self.route_run_number,
            label=self.label,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "seq": self.seq,
            "slot_type": self.slot_type,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "route_run_number": self.route_run_number,
            "label": self.label,
        }


class ParticipantScheduleRule(db.Model):
    __tablename__ = "rules_participant_schedule"
    __table_args__ = (
        db.UniqueConstraint("participant_id", "program_rule_id", "start_date",
                            name="uq_rps_participant_rule_start"),
    )

    id = db.Column(db.Integer, primary_key=True)
    program_rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    participant_id = db.Column(db.Integer, db.ForeignKey("participants.id"), nullable=False,
                               index=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    pickup_required = db.Column(db.Boolean, nullable=False, default=True)
    dropoff_required = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_spec(self) -> EnrolmentSpec:
        return EnrolmentSpec(
            schedule_rule_id=self.id,
            participant_id=self.participant_id,
            start_date=self.start_date,
            end_date=self.end_date,
            pickup_required=bool(self.pickup_required),
            dropoff_required=bool(self.dropoff_required),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "program_rule_id": self.program_rule_id,
            "participant_id": self.participant_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "pickup_required": self.pickup_required,
            "dropoff_required": self.dropoff_required,
            "notes": self.notes,
        }


class StaffRosterRule(db.Model):
    __tablename__ = "rules_staff_roster"
    __table_args__ = (
        db.UniqueConstraint("staff_id", "program_rule_id", "start_date",
                            name="uq_rsr_staff_rule_start"),
    )

    id = db.Column(db.Integer, primary_key=True)
    program_rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="CASCADE"),
                                nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default="support",
                     comment="lead | support | driver")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_spec(self) -> RosterSpec:
        return RosterSpec(
            roster_rule_id=self.id,
            staff_id=self.staff_id,
            role=self.role,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "program_rule_id": self.program_rule_id,
            "staff_id": self.staff_id,
            "role": self.role,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "notes": self.notes,
        }


# Columns each exception variant is allowed to carry.
_VARIANT_FIELDS = {
    EXCEPTION_CANCEL: set(),
    EXCEPTION_SHIFT: {"new_date", "start_time", "end_time"},
    EXCEPTION_SUBSTITUTE: {"venue_id", "vehicle_id", "staff_id", "replaced_staff_id"},
    EXCEPTION_PARTICIPANT_CANCEL: {"participant_id"},
}
_ALL_VARIANT_FIELDS = set().union(*_VARIANT_FIELDS.values())


class RuleException(db.Model):
    """
    Date-scoped override of one occurrence of a program rule.

    Stored flat, read as a tagged union: ``exception_type`` selects which
    of the typed columns are meaningful, and ``to_variant()`` returns the
    matching dataclass. ``exception_date`` is always the *nominal*
    occurrence date the exception applies to.
    """

    __tablename__ = "rules_program_exceptions"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "exception_date", "exception_type", "participant_id",
                            name="uq_rule_exception_scope"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    exception_date = db.Column(db.Date, nullable=False, index=True)
    exception_type = db.Column(db.String(30), nullable=False,
                               comment="cancel | shift | substitute | participant_cancel")

    new_date = db.Column(db.Date, nullable=True)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    venue_id = db.Column(db.Integer, db.ForeignKey("venues.id", ondelete="SET NULL"), nullable=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id", ondelete="SET NULL"),
                           nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    replaced_staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    participant_id = db.Column(db.Integer, db.ForeignKey("participants.id"), nullable=True)

    reason = db.Column(db.Text, default="")
    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @classmethod
    def from_payload(cls, rule_id: int, data: dict, *, created_by: str = "system"):
        """Validate a request payload against its variant schema and build a row."""
        exception_type = (data.get("exception_type") or "").strip()
        if exception_type not in EXCEPTION_TYPES:
            raise ValidationError(
                f"exception_type must be one of: {', '.join(sorted(EXCEPTION_TYPES))}",
                details={"exception_type": exception_type},
            )
        exception_date = _as_date(data.get("exception_date"), "exception_date")
        if exception_date is None:
            raise ValidationError("exception_date is required")

        allowed = _VARIANT_FIELDS[exception_type]
        stray = sorted(k for k in _ALL_VARIANT_FIELDS - allowed if data.get(k) is not None)
        if stray:
            raise ValidationError(
                f"Fields not valid for a {exception_type} exception: {', '.join(stray)}",
                details={k: "not allowed" for k in stray},
            )

        row = cls(
            rule_id=rule_id,
            exception_date=exception_date,
            exception_type=exception_type,
            reason=data.get("reason") or "",
            created_by=created_by,
        )
        if exception_type == EXCEPTION_SHIFT:
            row.new_date = _as_date(data.get("new_date"), "new_date")
            row.start_time = _as_time(data.get("start_time"), "start_time")
            row.end_time = _as_time(data.get("end_time"), "end_time")
            if row.new_date is None and row.start_time is None and row.end_time is None:
                raise ValidationError("A shift needs new_date, start_time or end_time")
        elif exception_type == EXCEPTION_SUBSTITUTE:
            for key in ("venue_id", "vehicle_id", "staff_id", "replaced_staff_id"):
                setattr(row, key, data.get(key))
            if not any(getattr(row, k) for k in ("venue_id", "vehicle_id", "staff_id")):
                raise ValidationError("A substitute needs venue_id, vehicle_id or staff_id")
            if row.replaced_staff_id and not row.staff_id:
                raise ValidationError("replaced_staff_id requires staff_id")
        elif exception_type == EXCEPTION_PARTICIPANT_CANCEL:
            row.participant_id = data.get("participant_id")
            if not row.participant_id:
                raise ValidationError("participant_id is required")
        return row

    def to_variant(self):
        if self.exception_type == EXCEPTION_CANCEL:
            return CancelOccurrence(exception_date=self.exception_date, reason=self.reason or "")
        if self.exception_type == EXCEPTION_SHIFT:
            return ShiftOccurrence(
                exception_date=self.exception_date,
                new_date=self.new_date,
                start_time=self.start_time,
                end_time=self.end_time,
                reason=self.reason or "",
            )
        if self.exception_type == EXCEPTION_SUBSTITUTE:
            return SubstituteResources(
                exception_date=self.exception_date,
                venue_id=self.venue_id,
                vehicle_id=self.vehicle_id,
                staff_id=self.staff_id,
                replaced_staff_id=self.replaced_staff_id,
                reason=self.reason or "",
            )
        if self.exception_type == EXCEPTION_PARTICIPANT_CANCEL:
            return ParticipantCancel(
                exception_date=self.exception_date,
                participant_id=self.participant_id,
                reason=self.reason or "",
            )
        raise RuleExpansionError(
            self.rule_id, f"unknown exception_type {self.exception_type!r} on exception {self.id}")

    def to_dict(self):
        result = {
            "id": self.id,
            "rule_id": self.rule_id,
            "exception_type": self.exception_type,
            "exception_date": self.exception_date.isoformat(),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        for key in sorted(_VARIANT_FIELDS.get(self.exception_type, ())):
            value = getattr(self, key)
            if isinstance(value, (date, time)):
                value = value.isoformat()
            result[key] = value
        return result

    def __repr__(self):
        return f"<RuleException {self.id}: {self.exception_type} rule={self.rule_id} {self.exception_date}>"


def _as_date(value, label):
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{label} must be YYYY-MM-DD", details={label: value})


def _as_time(value, label):
    if value is None or isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{label} must be HH:MM", details={label: value})
