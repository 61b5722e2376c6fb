"""
Great Loom
Archiver — weaves finished instances into the History Ribbon.

For every live instance whose end (wall clock in LOOM_TIMEZONE) is before
``as_of`` and whose status is archive-eligible, one transaction:

    snapshot instance + attachments → HistoryShift + ribbon rows
    audit
    delete the live rows

``history_ribbon_shifts.original_instance_id`` is unique, so re-running
over the same instant weaves nothing twice. A failure on one instance is
rolled back, reported and retried on the next run; siblings carry on.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import select

from greatloom.core.exceptions import ArchivalTransactionError
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.history import (
    HistoryParticipant,
    HistoryShift,
    HistoryStaff,
    HistoryVehicle,
)
from greatloom.models.loom import ARCHIVE_ELIGIBLE_STATUSES, LoomInstance
from greatloom.models.reference import Participant, Staff, Vehicle, Venue
from greatloom.services.instance_metrics import ABSENT_ATTENDANCE, INACTIVE_ASSIGNMENT
from greatloom.services.window_config import loom_now, loom_timezone

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    archived_count: int = 0
    errors: list[dict] = field(default_factory=list)
    shift_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _fallback(kind: str, ref_id) -> str:
    return f"{kind} #{ref_id}"


def completion_status(instance: LoomInstance) -> str:
    if instance.status == "cancelled":
        return "cancelled"
    attendance = [a for a in instance.attendance if a.status != "removed"]
    absent = [a for a in attendance if a.status in ABSENT_ATTENDANCE]
    if absent and len(absent) < len(attendance):
        return "partial"
    return "completed"


def _hours_between(start, end) -> float:
    delta = datetime.combine(date.min, end) - datetime.combine(date.min, start)
    return round(delta / timedelta(hours=1), 2)


class Archiver:
    """Moves completed instances from the live store into the ribbon."""

    def __init__(self, *, actor: str = "system", pass_id: str | None = None):
        self.actor = actor
        self.pass_id = pass_id
        self.tz = loom_timezone()

    def _localise(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=self.tz)
        return value.astimezone(self.tz)

    def archive_completed(self, as_of: datetime | None = None) -> ArchiveResult:
        as_of = self._localise(as_of) if as_of is not None else loom_now()
        result = ArchiveResult()

        candidates = db.session.execute(
            select(LoomInstance.id, LoomInstance.instance_date, LoomInstance.end_time)
            .where(
                LoomInstance.status.in_(sorted(ARCHIVE_ELIGIBLE_STATUSES)),
                LoomInstance.instance_date <= as_of.date(),
            )
            .order_by(LoomInstance.instance_date, LoomInstance.start_time)
        ).all()

        for row in candidates:
            ends_at = datetime.combine(row.instance_date, row.end_time, tzinfo=self.tz)
            if ends_at >= as_of:
                continue
            try:
                shift_id = self._archive_one(row.id)
            except Exception as exc:
                db.session.rollback()
                error = ArchivalTransactionError(row.id, exc)
                logger.error("%s", error, exc_info=True,
                             extra={"instance_id": row.id, "pass_id": self.pass_id})
                result.errors.append({"instance_id": row.id, "error": str(error)})
                continue
            if shift_id is not None:
                result.archived_count += 1
                result.shift_ids.append(shift_id)

        logger.info("Archive pass as_of=%s: archived=%d errors=%d",
                    as_of.isoformat(), result.archived_count, len(result.errors),
                    extra={"pass_id": self.pass_id})
        return result

    def _archive_one(self, instance_id: str) -> str | None:
        instance = db.session.get(LoomInstance, instance_id)
        if instance is None:
            return None

        already = db.session.execute(
            select(HistoryShift.id).where(HistoryShift.original_instance_id == instance_id)
        ).scalar_one_or_none()
        if already is not None:
            # Ribbon row exists; only the live leftovers need clearing.
            db.session.delete(instance)
            db.session.commit()
            return None

        shift = self._snapshot(instance)
        db.session.add(shift)
        db.session.flush()

        write_audit(
            entity_type="history_shift",
            entity_id=shift.id,
            action_type="history.archive",
            actor=self.actor,
            previous_state={"instance_id": instance.id, "status": instance.status,
                            "version": instance.version},
            new_state={"history_shift_id": shift.id,
                       "completion_status": shift.completion_status},
        )
        db.session.delete(instance)
        db.session.commit()
        logger.debug("Instance woven into history",
                     extra={"instance_id": instance_id, "history_shift_id": shift.id,
                            "pass_id": self.pass_id})
        return shift.id

    def _snapshot(self, instance: LoomInstance) -> HistoryShift:
        rule = instance.rule
        venue = db.session.get(Venue, instance.venue_id) if instance.venue_id else None
        hours = _hours_between(instance.start_time, instance.end_time)

        participants = []
        for a in instance.attendance:
            if a.status == "removed":
                continue
            person = db.session.get(Participant, a.participant_id)
            attended = a.status not in ABSENT_ATTENDANCE
            participants.append(HistoryParticipant(
                participant_id=a.participant_id,
                participant_name=person.display_name if person else _fallback("Participant", a.participant_id),
                attendance_status=a.status,
                pickup_provided=bool(a.pickup_required and attended),
                dropoff_provided=bool(a.dropoff_required and attended),
                was_overridden=bool(a.is_overridden),
                notes=a.notes or "",
            ))

        staff = []
        for s in instance.staff_assignments:
            if s.status == "removed":
                continue
            member = db.session.get(Staff, s.staff_id)
            staff.append(HistoryStaff(
                staff_id=s.staff_id,
                staff_name=member.display_name if member else _fallback("Staff", s.staff_id),
                role=s.role,
                hours_worked=0 if s.status in INACTIVE_ASSIGNMENT else hours,
                was_overridden=bool(s.is_overridden),
                notes=s.notes or "",
            ))

        vehicles = []
        for v in instance.vehicle_assignments:
            if v.status == "removed":
                continue
            vehicle = db.session.get(Vehicle, v.vehicle_id)
            driver = db.session.get(Staff, v.driver_staff_id) if v.driver_staff_id else None
            vehicles.append(HistoryVehicle(
                vehicle_id=v.vehicle_id,
                vehicle_label=vehicle.label if vehicle else _fallback("Vehicle", v.vehicle_id),
                driver_name=driver.display_name if driver else None,
                was_overridden=bool(v.is_overridden),
            ))

        if venue is not None:
            venue_name, venue_address = venue.name, venue.address or ""
        elif instance.venue_id is not None:
            venue_name, venue_address = _fallback("Venue", instance.venue_id), ""
        else:
            venue_name, venue_address = "No venue", ""

        return HistoryShift(
            original_instance_id=instance.id,
            source_rule_id=instance.source_rule_id,
            program_name=rule.name if rule else _fallback("Program", instance.source_rule_id),
            program_description=(rule.description or "") if rule else "",
            instance_date=instance.instance_date,
            start_time=instance.start_time,
            end_time=instance.end_time,
            venue_id=instance.venue_id,
            venue_name=venue_name,
            venue_address=venue_address,
            participant_count=sum(1 for p in participants if p.attendance_status not in ABSENT_ATTENDANCE),
            staff_count=sum(1 for s in instance.staff_assignments if s.status not in INACTIVE_ASSIGNMENT),
            vehicle_count=len(vehicles),
            was_manually_modified=bool(instance.manually_modified),
            projection_hash=instance.projection_hash,
            completion_status=completion_status(instance),
            archived=True,
            participants=participants,
            staff=staff,
            vehicles=vehicles,
        )
