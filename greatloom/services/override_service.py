"""
Great Loom
Override Tracker — operator edits on live instances.

    apply_instance_patch(instance_id, payload, *, actor)
    cancel_instance(instance_id, *, actor, reason="")

Instance-level fields flip ``manually_modified``; every touched attachment
flips ``is_overridden``. Either flag makes the projector leave the row
alone on every later pass.

Payload shape for ``apply_instance_patch``::

    {
      "version": 3,                       # optional optimistic check
      "override_reason": "Hall A flooded",
      "venue_id": 7, "start_time": "10:00", "end_time": "14:00",
      "status": "on_hold", "notes": "...",
      "attendance": [{"participant_id": 4, "status": "cancelled"},
                     {"participant_id": 9, "action": "add"}],
      "staff":      [{"staff_id": 2, "action": "remove", "reason": "sick"}],
      "vehicles":   [{"vehicle_id": 3, "driver_staff_id": 5}]
    }
"""

from __future__ import annotations

import logging
from datetime import time

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from greatloom.core.exceptions import ConflictError, NotFoundError, ValidationError
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.history import HistoryShift
from greatloom.models.loom import (
    ASSIGNMENT_STATUSES,
    ATTENDANCE_STATUSES,
    INSTANCE_STATUSES,
    LoomInstance,
    ParticipantAttendance,
    StaffAssignment,
    VehicleAssignment,
)
from greatloom.models.reference import Participant, Staff, Vehicle, Venue
from greatloom.models.rules import RuleException
from greatloom.services.instance_metrics import recompute_counts, store_integrity_warnings

logger = logging.getLogger(__name__)

INSTANCE_FIELDS = ("venue_id", "start_time", "end_time", "status", "notes")
ATTACHMENT_ACTIONS = {"update", "add", "remove"}

# payload key → (collection, model, subject column, reference model, statuses, editable fields)
_ATTACHMENT_KINDS = {
    "attendance": ("attendance", ParticipantAttendance, "participant_id", Participant,
                   ATTENDANCE_STATUSES, ("status", "notes", "pickup_required", "dropoff_required")),
    "staff": ("staff_assignments", StaffAssignment, "staff_id", Staff,
              ASSIGNMENT_STATUSES, ("status", "notes", "role")),
    "vehicles": ("vehicle_assignments", VehicleAssignment, "vehicle_id", Vehicle,
                 ASSIGNMENT_STATUSES, ("status", "notes", "driver_staff_id")),
}


def _parse_time(value, label) -> time:
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{label} must be HH:MM", details={label: value})


def _archived_or_missing(instance_id: str):
    """Raise the right error for an id that is not in the live store."""
    archived = db.session.execute(
        select(HistoryShift.id).where(HistoryShift.original_instance_id == instance_id)
    ).scalar_one_or_none()
    if archived:
        raise ConflictError("LoomInstance", "archived", instance_id)
    raise NotFoundError(resource="LoomInstance", resource_id=instance_id)


def get_live_instance(instance_id: str) -> LoomInstance:
    instance = db.session.get(LoomInstance, instance_id)
    if instance is None:
        _archived_or_missing(instance_id)
    return instance


def _apply_instance_fields(instance: LoomInstance, payload: dict, reason) -> bool:
    touched = [k for k in INSTANCE_FIELDS if k in payload]
    if not touched:
        return False

    if "status" in payload and payload["status"] not in INSTANCE_STATUSES:
        raise ValidationError(
            f"status must be one of: {', '.join(sorted(INSTANCE_STATUSES))}",
            details={"status": payload["status"]},
        )
    if "venue_id" in payload and payload["venue_id"] is not None:
        if db.session.get(Venue, payload["venue_id"]) is None:
            raise NotFoundError(resource="Venue", resource_id=payload["venue_id"])

    start = _parse_time(payload["start_time"], "start_time") if "start_time" in payload else instance.start_time
    end = _parse_time(payload["end_time"], "end_time") if "end_time" in payload else instance.end_time
    if end <= start:
        raise ValidationError("end_time must be after start_time",
                              details={"start_time": str(start), "end_time": str(end)})

    instance.start_time = start
    instance.end_time = end
    for key in ("venue_id", "status", "notes"):
        if key in payload:
            setattr(instance, key, payload[key])
    instance.manually_modified = True
    instance.override_source = "human"
    instance.override_reason = reason
    return True


def _apply_attachment(instance: LoomInstance, kind: str, entry: dict, default_reason) -> dict:
    collection_name, model, subject_field, ref_model, statuses, editable = _ATTACHMENT_KINDS[kind]
    subject_id = entry.get(subject_field)
    if not subject_id:
        raise ValidationError(f"{subject_field} is required for each {kind} entry",
                              details={kind: entry})
    action = entry.get("action", "update")
    if action not in ATTACHMENT_ACTIONS:
        raise ValidationError(f"action must be one of: {', '.join(sorted(ATTACHMENT_ACTIONS))}",
                              details={"action": action})
    if "status" in entry and entry["status"] not in statuses:
        raise ValidationError(f"status must be one of: {', '.join(sorted(statuses))}",
                              details={"status": entry["status"]})

    collection = getattr(instance, collection_name)
    row = next((r for r in collection if getattr(r, subject_field) == subject_id), None)
    reason = entry.get("reason") or default_reason

    if action == "remove":
        if row is None:
            raise NotFoundError(resource=model.__name__, resource_id=subject_id)
        row.status = "removed"
    else:
        if row is None:
            if db.session.get(ref_model, subject_id) is None:
                raise NotFoundError(resource=ref_model.__name__, resource_id=subject_id)
            row = model(**{subject_field: subject_id}, source_rule_id=None,
                        status="confirmed" if kind == "attendance" else "assigned")
            collection.append(row)
        elif action == "add" and row.status == "removed":
            row.status = "confirmed" if kind == "attendance" else "assigned"
        for key in editable:
            if key in entry:
                setattr(row, key, entry[key])

    row.mark_human_override(reason)
    return {"kind": kind, subject_field: subject_id, "action": action}


def apply_instance_patch(instance_id: str, payload: dict, *, actor: str = "system") -> LoomInstance:
    """Apply an operator's partial edit and mark everything it touched as overridden."""
    instance = get_live_instance(instance_id)

    expected = payload.get("version")
    if expected is not None and int(expected) != instance.version:
        raise ConflictError("LoomInstance", "version", str(expected))

    previous = instance.to_dict(include_children=True)
    reason = payload.get("override_reason") or payload.get("reason")

    instance_touched = _apply_instance_fields(instance, payload, reason)
    touched = []
    for kind in _ATTACHMENT_KINDS:
        entries = payload.get(kind) or []
        if not isinstance(entries, list):
            raise ValidationError(f"{kind} must be a list", details={kind: entries})
        for entry in entries:
            touched.append(_apply_attachment(instance, kind, entry, reason))

    if not instance_touched and not touched:
        raise ValidationError("Nothing to change", details={"allowed": [*INSTANCE_FIELDS, *_ATTACHMENT_KINDS]})

    recompute_counts(instance)
    store_integrity_warnings(instance)

    write_audit(
        entity_type="loom_instance",
        entity_id=instance.id,
        action_type="loom.instance_override",
        actor=actor,
        previous_state=previous,
        new_state={
            "instance_fields": [k for k in INSTANCE_FIELDS if k in payload],
            "attachments": touched,
            "override_reason": reason,
        },
    )
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("LoomInstance", "version", instance_id)

    logger.info("Operator override applied", extra={"instance_id": instance_id})
    return instance


def cancel_instance(instance_id: str, *, actor: str = "system", reason: str = "") -> dict:
    """
    Delete a live instance and record a ``cancel`` exception on its rule so
    the projector stops materialising that date.
    """
    instance = get_live_instance(instance_id)
    previous = instance.to_dict(include_children=True)

    exception_id = None
    nominal = instance.nominal_date or instance.instance_date
    if instance.source_rule_id is not None:
        existing = db.session.execute(
            select(RuleException).where(
                RuleException.rule_id == instance.source_rule_id,
                RuleException.exception_date == nominal,
                RuleException.exception_type == "cancel",
            )
        ).scalar_one_or_none()
        if existing is None:
            existing = RuleException.from_payload(
                instance.source_rule_id,
                {"exception_type": "cancel", "exception_date": nominal,
                 "reason": reason or "Cancelled from the loom"},
                created_by=actor,
            )
            db.session.add(existing)
            db.session.flush()
        exception_id = existing.id

    db.session.delete(instance)
    write_audit(
        entity_type="loom_instance",
        entity_id=instance_id,
        action_type="loom.instance_cancel",
        actor=actor,
        severity="warning",
        previous_state=previous,
        new_state={"rule_exception_id": exception_id, "reason": reason},
    )
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConflictError("LoomInstance", "version", instance_id)

    logger.info("Instance cancelled by operator", extra={"instance_id": instance_id})
    return {"deleted": instance_id, "rule_exception_id": exception_id}
