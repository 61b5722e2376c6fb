"""
Plain value types shared by the rule store, the recurrence expander, the
projector and the conflict resolver.

Everything here is a frozen dataclass: rule snapshots cross thread
boundaries during parallel expansion, so no ORM object may leak into them.

Rule exceptions are a tagged union. Each variant has exactly the fields
its ``exception_type`` needs; ``RuleException.to_variant()`` builds them.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import date, time
from typing import Union

# ── Vocabulary ───────────────────────────────────────────────────────────────

RECURRENCE_PATTERNS = {"weekly", "fortnightly", "monthly"}
SLOT_TYPES = {"pickup", "activity", "meal", "dropoff", "other"}
STAFF_ROLES = {"lead", "support", "driver"}

EXCEPTION_CANCEL = "cancel"
EXCEPTION_SHIFT = "shift"
EXCEPTION_SUBSTITUTE = "substitute"
EXCEPTION_PARTICIPANT_CANCEL = "participant_cancel"
EXCEPTION_TYPES = {
    EXCEPTION_CANCEL,
    EXCEPTION_SHIFT,
    EXCEPTION_SUBSTITUTE,
    EXCEPTION_PARTICIPANT_CANCEL,
}


# ── Exception variants ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class CancelOccurrence:
    exception_date: date
    reason: str = ""
    exception_type: str = field(default=EXCEPTION_CANCEL, init=False)


@dataclass(frozen=True)
class ShiftOccurrence:
    """Move one occurrence to another date and/or time."""

    exception_date: date
    new_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    reason: str = ""
    exception_type: str = field(default=EXCEPTION_SHIFT, init=False)


@dataclass(frozen=True)
class SubstituteResources:
    """Swap the venue, vehicle and/or one staff member for one occurrence.

    ``staff_id`` without ``replaced_staff_id`` adds an extra support worker.
    """

    exception_date: date
    venue_id: int | None = None
    vehicle_id: int | None = None
    staff_id: int | None = None
    replaced_staff_id: int | None = None
    reason: str = ""
    exception_type: str = field(default=EXCEPTION_SUBSTITUTE, init=False)


@dataclass(frozen=True)
class ParticipantCancel:
    exception_date: date
    participant_id: int
    reason: str = ""
    exception_type: str = field(default=EXCEPTION_PARTICIPANT_CANCEL, init=False)


RuleExceptionVariant = Union[
    CancelOccurrence, ShiftOccurrence, SubstituteResources, ParticipantCancel,
]


# ── Rule snapshot ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SlotSpec:
    seq: int
    slot_type: str
    start_time: time
    end_time: time
    route_run_number: int | None = None
    label: str | None = None


@dataclass(frozen=True)
class EnrolmentSpec:
    schedule_rule_id: int
    participant_id: int
    start_date: date
    end_date: date | None = None
    pickup_required: bool = True
    dropoff_required: bool = True

    def covers(self, day: date) -> bool:
        return self.start_date <= day and (self.end_date is None or day <= self.end_date)


@dataclass(frozen=True)
class RosterSpec:
    roster_rule_id: int
    staff_id: int
    role: str
    start_date: date
    end_date: date | None = None

    def covers(self, day: date) -> bool:
        return self.start_date <= day and (self.end_date is None or day <= self.end_date)


@dataclass(frozen=True)
class RuleSpec:
    """Immutable snapshot of a program rule and everything hanging off it."""

    rule_id: int
    name: str
    pattern: str
    days_of_week: tuple[int, ...]
    start_time: time
    end_time: time
    start_date: date
    end_date: date | None = None
    week_in_cycle: int = 1
    cycle_anchor: date | None = None
    venue_id: int | None = None
    default_vehicle_id: int | None = None
    slots: tuple[SlotSpec, ...] = ()
    enrolments: tuple[EnrolmentSpec, ...] = ()
    roster: tuple[RosterSpec, ...] = ()
    exceptions: tuple[RuleExceptionVariant, ...] = ()


# ── Expansion output ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PlannedAttendance:
    participant_id: int
    source_rule_id: int
    pickup_required: bool = True
    dropoff_required: bool = True


@dataclass(frozen=True)
class PlannedStaff:
    staff_id: int
    source_rule_id: int | None
    role: str = "support"


@dataclass(frozen=True)
class PlannedVehicle:
    vehicle_id: int


@dataclass(frozen=True)
class Occurrence:
    """One concrete ``(rule, date)`` the projector must materialise."""

    rule_id: int
    instance_date: date
    nominal_date: date
    start_time: time
    end_time: time
    venue_id: int | None
    slots: tuple[SlotSpec, ...] = ()
    attendance: tuple[PlannedAttendance, ...] = ()
    staff: tuple[PlannedStaff, ...] = ()
    vehicles: tuple[PlannedVehicle, ...] = ()

    def projection_hash(self) -> str:
        """Fingerprint of every generation-relevant field for this date."""
        payload = asdict(self)
        encoded = json.dumps(payload, sort_keys=True, default=_json_default)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _json_default(value):
    if isinstance(value, (date, time)):
        return value.isoformat()
    raise TypeError(f"Unserialisable value in projection payload: {value!r}")
