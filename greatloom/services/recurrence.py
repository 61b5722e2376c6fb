"""
Great Loom
Recurrence expansion.

Pure functions over ``RuleSpec`` snapshots: no database, no Flask, no
clock. Safe to run on worker threads.

    iter_recurrence_dates(spec, start, end)  lazy nominal dates in [start, end)
    occurs_on(spec, day)                     single-date membership test
    expand_rule(spec, start, end)            resolved Occurrences with
                                             exceptions applied

Pattern semantics:
    weekly       every listed weekday
    fortnightly  listed weekdays in week ``week_in_cycle`` (1 or 2) of a
                 fortnight counted from the Monday of ``cycle_anchor``
                 (``start_date`` when no anchor is set)
    monthly      the ``week_in_cycle``-th listed weekday of each month (1..5)
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, time, timedelta

from greatloom.core.exceptions import RuleExpansionError
from greatloom.core.loom_types import (
    CancelOccurrence,
    Occurrence,
    ParticipantCancel,
    PlannedAttendance,
    PlannedStaff,
    PlannedVehicle,
    RECURRENCE_PATTERNS,
    RuleSpec,
    ShiftOccurrence,
    SlotSpec,
    SubstituteResources,
)

_ONE_DAY = timedelta(days=1)


def validate_spec(spec: RuleSpec) -> None:
    """Raise ``RuleExpansionError`` when the rule cannot be expanded at all."""
    if spec.pattern not in RECURRENCE_PATTERNS:
        raise RuleExpansionError(spec.rule_id, f"unknown recurrence pattern {spec.pattern!r}")
    if not spec.days_of_week:
        raise RuleExpansionError(spec.rule_id, "days_of_week is empty")
    if any(d < 0 or d > 6 for d in spec.days_of_week):
        raise RuleExpansionError(spec.rule_id, f"days_of_week out of range: {list(spec.days_of_week)}")
    if spec.end_time <= spec.start_time:
        raise RuleExpansionError(spec.rule_id, "end_time must be after start_time")
    if spec.end_date is not None and spec.end_date < spec.start_date:
        raise RuleExpansionError(spec.rule_id, "end_date is before start_date")
    if spec.pattern == "fortnightly" and spec.week_in_cycle not in (1, 2):
        raise RuleExpansionError(spec.rule_id, "fortnightly week_in_cycle must be 1 or 2")
    if spec.pattern == "monthly" and not 1 <= spec.week_in_cycle <= 5:
        raise RuleExpansionError(spec.rule_id, "monthly week_in_cycle must be between 1 and 5")


def occurs_on(spec: RuleSpec, day: date) -> bool:
    """True when ``day`` is a nominal occurrence of the rule."""
    if day < spec.start_date or (spec.end_date is not None and day > spec.end_date):
        return False
    if day.weekday() not in spec.days_of_week:
        return False
    if spec.pattern == "weekly":
        return True
    if spec.pattern == "fortnightly":
        anchor = spec.cycle_anchor or spec.start_date
        anchor_monday = anchor - timedelta(days=anchor.weekday())
        day_monday = day - timedelta(days=day.weekday())
        week_index = ((day_monday - anchor_monday).days // 7) % 2
        return week_index + 1 == spec.week_in_cycle
    if spec.pattern == "monthly":
        return (day.day - 1) // 7 + 1 == spec.week_in_cycle
    return False


def iter_recurrence_dates(spec: RuleSpec, window_start: date, window_end: date) -> Iterator[date]:
    """Yield nominal occurrence dates in ``[window_start, window_end)``, ascending."""
    day = max(window_start, spec.start_date)
    last = window_end - _ONE_DAY
    if spec.end_date is not None:
        last = min(last, spec.end_date)
    while day <= last:
        if occurs_on(spec, day):
            yield day
        day += _ONE_DAY


# ── Expansion ────────────────────────────────────────────────────────────────

class _DayExceptions:
    """Exceptions that apply to one nominal date."""

    __slots__ = ("cancel", "shift", "substitutes", "cancelled_participants")

    def __init__(self):
        self.cancel = None
        self.shift = None
        self.substitutes = []
        self.cancelled_participants = set()


def _index_exceptions(spec: RuleSpec) -> dict[date, _DayExceptions]:
    index: dict[date, _DayExceptions] = {}
    for exc in spec.exceptions:
        bucket = index.setdefault(exc.exception_date, _DayExceptions())
        if isinstance(exc, CancelOccurrence):
            bucket.cancel = exc
        elif isinstance(exc, ShiftOccurrence):
            if bucket.shift is not None:
                raise RuleExpansionError(
                    spec.rule_id, f"more than one shift exception on {exc.exception_date}"
                )
            bucket.shift = exc
        elif isinstance(exc, SubstituteResources):
            bucket.substitutes.append(exc)
        elif isinstance(exc, ParticipantCancel):
            bucket.cancelled_participants.add(exc.participant_id)
    return index


def _offset_time(value: time, delta: timedelta, rule_id: int) -> time:
    moved = datetime.combine(date.min, value) + delta
    if moved.date() != date.min:
        raise RuleExpansionError(rule_id, f"shifted slot at {value} leaves the day")
    return moved.time()


def _resolve_slots(spec: RuleSpec, start: time, end: time) -> tuple[SlotSpec, ...]:
    if not spec.slots:
        return (SlotSpec(seq=1, slot_type="activity", start_time=start, end_time=end),)
    delta = datetime.combine(date.min, start) - datetime.combine(date.min, spec.start_time)
    if not delta:
        return spec.slots
    return tuple(
        SlotSpec(
            seq=slot.seq,
            slot_type=slot.slot_type,
            start_time=_offset_time(slot.start_time, delta, spec.rule_id),
            end_time=_offset_time(slot.end_time, delta, spec.rule_id),
            route_run_number=slot.route_run_number,
            label=slot.label,
        )
        for slot in spec.slots
    )


def _resolve(spec: RuleSpec, nominal: date, day_exc: _DayExceptions | None) -> Occurrence:
    shift = day_exc.shift if day_exc else None
    substitutes = day_exc.substitutes if day_exc else []
    withdrawn = day_exc.cancelled_participants if day_exc else set()

    instance_date = shift.new_date if shift and shift.new_date else nominal
    start = shift.start_time if shift and shift.start_time else spec.start_time
    end = shift.end_time if shift and shift.end_time else spec.end_time
    if end <= start:
        raise RuleExpansionError(spec.rule_id, f"shifted occurrence on {nominal} ends before it starts")

    venue_id = spec.venue_id
    vehicle_id = spec.default_vehicle_id
    replaced: dict[int, int | None] = {}
    for sub in substitutes:
        if sub.venue_id:
            venue_id = sub.venue_id
        if sub.vehicle_id:
            vehicle_id = sub.vehicle_id
        if sub.staff_id:
            replaced[sub.staff_id] = sub.replaced_staff_id

    attendance: dict[int, PlannedAttendance] = {}
    for enrolment in spec.enrolments:
        pid = enrolment.participant_id
        if pid in withdrawn or pid in attendance or not enrolment.covers(instance_date):
            continue
        attendance[pid] = PlannedAttendance(
            participant_id=pid,
            source_rule_id=enrolment.schedule_rule_id,
            pickup_required=enrolment.pickup_required,
            dropoff_required=enrolment.dropoff_required,
        )

    staff: dict[int, PlannedStaff] = {}
    for roster in spec.roster:
        if roster.staff_id in staff or not roster.covers(instance_date):
            continue
        staff[roster.staff_id] = PlannedStaff(
            staff_id=roster.staff_id, source_rule_id=roster.roster_rule_id, role=roster.role,
        )
    for new_staff_id, old_staff_id in replaced.items():
        role = "support"
        if old_staff_id is not None and old_staff_id in staff:
            role = staff.pop(old_staff_id).role
        staff.setdefault(new_staff_id, PlannedStaff(staff_id=new_staff_id, source_rule_id=None, role=role))

    return Occurrence(
        rule_id=spec.rule_id,
        instance_date=instance_date,
        nominal_date=nominal,
        start_time=start,
        end_time=end,
        venue_id=venue_id,
        slots=_resolve_slots(spec, start, end),
        attendance=tuple(attendance[k] for k in sorted(attendance)),
        staff=tuple(staff[k] for k in sorted(staff)),
        vehicles=(PlannedVehicle(vehicle_id=vehicle_id),) if vehicle_id else (),
    )


def expand_rule(spec: RuleSpec, window_start: date, window_end: date) -> list[Occurrence]:
    """
    Expand one rule into resolved occurrences whose *instance* date lies in
    ``[window_start, window_end)``.

    Exceptions are keyed on the nominal date. A shift may move an
    occurrence into the window from outside it, or out of the window.
    Exceptions on dates that are not nominal occurrences are ignored.
    """
    validate_spec(spec)
    index = _index_exceptions(spec)

    nominal_dates = set(iter_recurrence_dates(spec, window_start, window_end))
    for nominal, day_exc in index.items():
        shift = day_exc.shift
        if (shift and shift.new_date and window_start <= shift.new_date < window_end
                and nominal not in nominal_dates and occurs_on(spec, nominal)):
            nominal_dates.add(nominal)

    occurrences: dict[date, Occurrence] = {}
    for nominal in sorted(nominal_dates):
        day_exc = index.get(nominal)
        if day_exc and day_exc.cancel:
            continue
        occ = _resolve(spec, nominal, day_exc)
        if not window_start <= occ.instance_date < window_end:
            continue
        if occ.instance_date in occurrences:
            raise RuleExpansionError(
                spec.rule_id,
                f"occurrences on {occurrences[occ.instance_date].nominal_date} and {nominal} "
                f"both land on {occ.instance_date}",
            )
        occurrences[occ.instance_date] = occ
    return [occurrences[d] for d in sorted(occurrences)]
