"""
Great Loom
History Ribbon models — "the woven past".

Models:
    - HistoryShift:       immutable snapshot of one completed instance
    - HistoryParticipant: who attended (name denormalised at archival time)
    - HistoryStaff:       who worked
    - HistoryVehicle:     which vehicles ran
    - PinnedArtifact:     note / incident / spot-audit pinned after archival

Architecture:
    HistoryShift ──1:N──▶ HistoryParticipant | HistoryStaff | HistoryVehicle
    HistoryShift ──1:N──▶ PinnedArtifact     (append-only)

Ribbon rows are written once by the archiver and never change afterwards.
ORM listeners at the bottom of this module reject UPDATE and DELETE on
every ribbon table; the only thing that may still be added to an archived
shift is a PinnedArtifact.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event

from greatloom.core.exceptions import HistoryImmutableError
from greatloom.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


# ── Constants ────────────────────────────────────────────────────────────────

COMPLETION_STATUSES = {"completed", "partial", "cancelled"}
ARTIFACT_TYPES = {"note", "incident", "feedback", "photo", "spot_audit"}
ARTIFACT_SEVERITIES = {"info", "low", "medium", "high", "critical"}


class HistoryShift(db.Model):
    __tablename__ = "history_ribbon_shifts"
    __table_args__ = (
        db.Index("idx_history_ribbon_date", "instance_date"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    original_instance_id = db.Column(db.String(36), nullable=False, unique=True,
                                     comment="Id of the live LoomInstance this row replaced")
    source_rule_id = db.Column(db.Integer, nullable=True, index=True)

    program_name = db.Column(db.String(200), nullable=False)
    program_description = db.Column(db.Text, default="")
    instance_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    venue_id = db.Column(db.Integer, nullable=True)
    venue_name = db.Column(db.String(200), nullable=False)
    venue_address = db.Column(db.String(500), default="")

    participant_count = db.Column(db.Integer, nullable=False, default=0)
    staff_count = db.Column(db.Integer, nullable=False, default=0)
    vehicle_count = db.Column(db.Integer, nullable=False, default=0)
    was_manually_modified = db.Column(db.Boolean, nullable=False, default=False)
    projection_hash = db.Column(db.String(64), nullable=True)

    completion_status = db.Column(db.String(20), nullable=False,
                                  comment="completed | partial | cancelled")
    archived = db.Column(db.Boolean, nullable=False, default=True)
    woven_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    participants = db.relationship("HistoryParticipant", backref="shift", lazy="select",
                                   order_by="HistoryParticipant.participant_name")
    staff = db.relationship("HistoryStaff", backref="shift", lazy="select",
                            order_by="HistoryStaff.staff_name")
    vehicles = db.relationship("HistoryVehicle", backref="shift", lazy="select")
    artifacts = db.relationship("PinnedArtifact", backref="shift", lazy="select",
                                order_by="PinnedArtifact.created_at")

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "original_instance_id": self.original_instance_id,
            "source_rule_id": self.source_rule_id,
            "program_name": self.program_name,
            "program_description": self.program_description,
            "instance_date": self.instance_date.isoformat(),
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "venue_id": self.venue_id,
            "venue_name": self.venue_name,
            "venue_address": self.venue_address,
            "participant_count": self.participant_count,
            "staff_count": self.staff_count,
            "vehicle_count": self.vehicle_count,
            "was_manually_modified": self.was_manually_modified,
            "completion_status": self.completion_status,
            "archived": self.archived,
            "woven_at": self.woven_at.isoformat() if self.woven_at else None,
        }
        if include_children:
            result["participants"] = [p.to_dict() for p in self.participants]
            result["staff"] = [s.to_dict() for s in self.staff]
            result["vehicles"] = [v.to_dict() for v in self.vehicles]
            result["artifacts"] = [a.to_dict() for a in self.artifacts]
        return result

    def __repr__(self):
        return f"<HistoryShift {self.id[:8]} {self.program_name} {self.instance_date}>"


class HistoryParticipant(db.Model):
    __tablename__ = "history_ribbon_participants"

    id = db.Column(db.Integer, primary_key=True)
    history_shift_id = db.Column(db.String(36), db.ForeignKey("history_ribbon_shifts.id"),
                                 nullable=False, index=True)
    participant_id = db.Column(db.Integer, nullable=False)
    participant_name = db.Column(db.String(200), nullable=False)
    attendance_status = db.Column(db.String(20), nullable=False)
    pickup_provided = db.Column(db.Boolean, nullable=True)
    dropoff_provided = db.Column(db.Boolean, nullable=True)
    was_overridden = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, default="")

    def to_dict(self):
        return {
            "participant_id": self.participant_id,
            "participant_name": self.participant_name,
            "attendance_status": self.attendance_status,
            "pickup_provided": self.pickup_provided,
            "dropoff_provided": self.dropoff_provided,
            "was_overridden": self.was_overridden,
            "notes": self.notes,
        }


class HistoryStaff(db.Model):
    __tablename__ = "history_ribbon_staff"

    id = db.Column(db.Integer, primary_key=True)
    history_shift_id = db.Column(db.String(36), db.ForeignKey("history_ribbon_shifts.id"),
                                 nullable=False, index=True)
    staff_id = db.Column(db.Integer, nullable=False)
    staff_name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    hours_worked = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    was_overridden = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, default="")

    def to_dict(self):
        return {
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "role": self.role,
            "hours_worked": float(self.hours_worked) if self.hours_worked is not None else None,
            "was_overridden": self.was_overridden,
            "notes": self.notes,
        }


class HistoryVehicle(db.Model):
    __tablename__ = "history_ribbon_vehicles"

    id = db.Column(db.Integer, primary_key=True)
    history_shift_id = db.Column(db.String(36), db.ForeignKey("history_ribbon_shifts.id"),
                                 nullable=False, index=True)
    vehicle_id = db.Column(db.Integer, nullable=False)
    vehicle_label = db.Column(db.String(100), nullable=False)
    driver_name = db.Column(db.String(200), nullable=True)
    was_overridden = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "vehicle_id": self.vehicle_id,
            "vehicle_label": self.vehicle_label,
            "driver_name": self.driver_name,
            "was_overridden": self.was_overridden,
        }


class PinnedArtifact(db.Model):
    __tablename__ = "history_pinned_artifacts"
    __table_args__ = (
        db.Index("idx_history_pinned_artifacts_type", "artifact_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    history_shift_id = db.Column(db.String(36), db.ForeignKey("history_ribbon_shifts.id"),
                                 nullable=False, index=True)
    artifact_type = db.Column(db.String(20), nullable=False,
                              comment="note | incident | feedback | photo | spot_audit")
    title = db.Column(db.String(300), nullable=False)
    content = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), nullable=True)
    created_by = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "history_shift_id": self.history_shift_id,
            "artifact_type": self.artifact_type,
            "title": self.title,
            "content": self.content,
            "severity": self.severity,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PinnedArtifact {self.id}: {self.artifact_type} on {self.history_shift_id[:8]}>"


# ── Immutability guards ──────────────────────────────────────────────────────

_RIBBON_MODELS = (HistoryShift, HistoryParticipant, HistoryStaff, HistoryVehicle, PinnedArtifact)


def _reject_update(mapper, connection, target):
    raise HistoryImmutableError(
        f"{type(target).__name__} rows are append-only; update rejected"
    )


def _reject_delete(mapper, connection, target):
    raise HistoryImmutableError(
        f"{type(target).__name__} rows are append-only; delete rejected"
    )


def _require_archived_shift(mapper, connection, target):
    archived = connection.execute(
        db.select(HistoryShift.archived).where(HistoryShift.id == target.history_shift_id)
    ).scalar_one_or_none()
    if not archived:
        raise HistoryImmutableError(
            f"Artifacts may only be pinned to archived shifts (shift {target.history_shift_id})"
        )


for _model in _RIBBON_MODELS:
    event.listen(_model, "before_update", _reject_update)
    event.listen(_model, "before_delete", _reject_delete)

event.listen(PinnedArtifact, "before_insert", _require_archived_shift)
