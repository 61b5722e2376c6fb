"""
Derived instance figures shared by the projector and operator edits.

    recompute_counts(instance)          participant / staff / vehicle counts,
                                        WPU total and staffing requirements
    store_integrity_warnings(instance)  references that are missing or retired

References are resolved by id through the session identity map rather
than through relationships, so the figures are right for pending rows and
for rows whose foreign keys were just reassigned.
"""

from __future__ import annotations

import math

from flask import current_app

from greatloom.core.exceptions import ReferentialIntegrityError
from greatloom.models import db
from greatloom.models.reference import Participant, Staff, Vehicle, Venue

# Attachment statuses that do not count towards the day's headcount.
ABSENT_ATTENDANCE = {"cancelled", "no_show", "removed"}
INACTIVE_ASSIGNMENT = {"sick", "removed"}


def _assign_if_changed(obj, field, value):
    if getattr(obj, field) != value:
        setattr(obj, field, value)


def _multiplier(participant_id) -> float:
    participant = db.session.get(Participant, participant_id)
    if participant is None or participant.supervision_multiplier is None:
        return 1.0
    return float(participant.supervision_multiplier)


def recompute_counts(instance) -> None:
    """Refresh derived counts from the instance's attachments."""
    threshold = float(current_app.config.get("LOOM_STAFF_WPU_THRESHOLD", 5.0))
    capacity = int(current_app.config.get("LOOM_VEHICLE_CAPACITY", 10))

    present = [a for a in instance.attendance if a.status not in ABSENT_ATTENDANCE]
    wpu = round(sum(_multiplier(a.participant_id) for a in present), 2)
    staff = [s for s in instance.staff_assignments if s.status not in INACTIVE_ASSIGNMENT]
    vehicles = [v for v in instance.vehicle_assignments if v.status != "removed"]

    _assign_if_changed(instance, "participant_count", len(present))
    _assign_if_changed(instance, "wpu_total", wpu)
    _assign_if_changed(instance, "staff_count", len(staff))
    _assign_if_changed(instance, "vehicle_count", len(vehicles))
    _assign_if_changed(instance, "staff_required", math.ceil(wpu / threshold) if wpu else 0)
    _assign_if_changed(instance, "vehicles_required",
                       math.ceil(len(present) / capacity) if present else 0)


def _check(kind, model, ref_id) -> ReferentialIntegrityError | None:
    ref = db.session.get(model, ref_id)
    if ref is None:
        return ReferentialIntegrityError(kind, ref_id, "missing")
    if ref.is_deleted:
        return ReferentialIntegrityError(kind, ref_id, "deleted")
    if not ref.is_active:
        return ReferentialIntegrityError(kind, ref_id, "inactive")
    return None


def integrity_warnings(instance) -> list[dict]:
    """Warnings for every referenced venue/vehicle/staff/participant that is unusable.

    The references themselves are never modified.
    """
    problems = []
    if instance.venue_id is not None:
        problems.append(_check("venue", Venue, instance.venue_id))
    for va in instance.vehicle_assignments:
        if va.status != "removed":
            problems.append(_check("vehicle", Vehicle, va.vehicle_id))
    for sa in instance.staff_assignments:
        if sa.status != "removed":
            problems.append(_check("staff", Staff, sa.staff_id))
    for pa in instance.attendance:
        if pa.status != "removed":
            problems.append(_check("participant", Participant, pa.participant_id))
    return [p.to_warning() for p in problems if p is not None]


def store_integrity_warnings(instance) -> list[dict]:
    """Recompute warnings and store them on the instance when they changed."""
    warnings = integrity_warnings(instance)
    if list(instance.integrity_warnings or []) != warnings:
        instance.integrity_warnings = warnings
    return warnings
