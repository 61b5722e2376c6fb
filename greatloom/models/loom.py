"""
Great Loom
Instance Store models — "the loom of the present".

Models:
    - LoomInstance:          one concrete (rule, date) program day inside the window
    - InstanceSlot:          time slots of an instance (canonical sub-instance unit)
    - ParticipantAttendance: participant attached to an instance
    - StaffAssignment:       staff member attached to an instance
    - VehicleAssignment:     vehicle attached to an instance

Architecture:
    ProgramRule ──1:N──▶ LoomInstance ──1:N──▶ InstanceSlot
                                       ──1:N──▶ ParticipantAttendance
                                       ──1:N──▶ StaffAssignment
                                       ──1:N──▶ VehicleAssignment

Override semantics:
    LoomInstance.manually_modified   operator changed instance-level fields;
                                     projector skips derived updates entirely
    <attachment>.is_overridden       operator touched this row; projector
                                     must never write it

Every live row carries a ``version`` counter (SQLAlchemy ``version_id_col``)
so an operator edit and a projector write on the same row cannot both win.

Card views (pickup bus / activity / dropoff bus tiles) are derived from
``InstanceSlot`` rows on read; there is no separate card table.
"""

import uuid
from datetime import datetime, timezone

from greatloom.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


# ── Constants ────────────────────────────────────────────────────────────────

INSTANCE_STATUSES = {"scheduled", "in_progress", "completed", "cancelled", "on_hold"}

# Statuses the archiver may weave into history once the end time has passed.
ARCHIVE_ELIGIBLE_STATUSES = {"scheduled", "in_progress", "completed", "cancelled"}

ATTENDANCE_STATUSES = {"confirmed", "attended", "cancelled", "no_show", "removed"}
ASSIGNMENT_STATUSES = {"assigned", "confirmed", "sick", "removed"}

OVERRIDE_SOURCES = {"engine", "human"}

# Card colour per slot type for the derived card view.
_CARD_STYLES = {
    "pickup": ("#2563eb", "bus"),
    "dropoff": ("#7c3aed", "bus"),
    "activity": ("#16a34a", "activity"),
    "meal": ("#f59e0b", "meal"),
    "other": ("#64748b", "dot"),
}


class OverrideMixin:
    """Override flags shared by every attachment table."""

    is_overridden = db.Column(db.Boolean, nullable=False, default=False)
    override_source = db.Column(db.String(10), nullable=False, default="engine",
                                comment="engine | human")
    override_reason = db.Column(db.Text, nullable=True)

    def mark_human_override(self, reason=None):
        self.is_overridden = True
        self.override_source = "human"
        self.override_reason = reason

    def _override_dict(self):
        return {
            "is_overridden": self.is_overridden,
            "override_source": self.override_source,
            "override_reason": self.override_reason,
        }


class LoomInstance(db.Model):
    __tablename__ = "loom_instances"
    __table_args__ = (
        db.UniqueConstraint("source_rule_id", "instance_date", name="uq_loom_instance_rule_date"),
        db.Index("idx_loom_instances_date", "instance_date"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    source_rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="SET NULL"),
                               nullable=True, index=True)
    instance_date = db.Column(db.Date, nullable=False)
    nominal_date = db.Column(db.Date, nullable=True,
                             comment="Recurrence date before any shift exception")
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    venue_id = db.Column(db.Integer, db.ForeignKey("venues.id", ondelete="SET NULL"), nullable=True)

    # Derived counts (recomputed from attachments)
    participant_count = db.Column(db.Integer, nullable=False, default=0)
    wpu_total = db.Column(db.Float, nullable=False, default=0.0)
    staff_count = db.Column(db.Integer, nullable=False, default=0)
    vehicle_count = db.Column(db.Integer, nullable=False, default=0)
    staff_required = db.Column(db.Integer, nullable=False, default=0)
    vehicles_required = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default="scheduled")
    notes = db.Column(db.Text, default="")

    manually_modified = db.Column(db.Boolean, nullable=False, default=False)
    override_source = db.Column(db.String(10), nullable=False, default="engine")
    override_reason = db.Column(db.Text, nullable=True)

    projection_hash = db.Column(db.String(64), nullable=True,
                                comment="sha256 of the resolved rule state for this date")
    integrity_warnings = db.Column(db.JSON, nullable=False, default=list)

    version = db.Column(db.Integer, nullable=False, default=1)
    projected_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    rule = db.relationship("ProgramRule", lazy="joined")
    venue = db.relationship("Venue", lazy="joined")
    slots = db.relationship("InstanceSlot", backref="instance", lazy="select",
                            cascade="all, delete-orphan", order_by="InstanceSlot.seq")
    attendance = db.relationship("ParticipantAttendance", backref="instance", lazy="select",
                                 cascade="all, delete-orphan")
    staff_assignments = db.relationship("StaffAssignment", backref="instance", lazy="select",
                                        cascade="all, delete-orphan")
    vehicle_assignments = db.relationship("VehicleAssignment", backref="instance", lazy="select",
                                          cascade="all, delete-orphan")

    def attachments(self):
        """All attachment rows, regardless of kind."""
        return [*self.attendance, *self.staff_assignments, *self.vehicle_assignments]

    @property
    def override_count(self) -> int:
        return sum(1 for a in self.attachments() if a.is_overridden)

    @property
    def has_overrides(self) -> bool:
        return self.manually_modified or self.override_count > 0

    def cards(self) -> list[dict]:
        """Derived card view: one card per time slot."""
        cards = []
        for order, slot in enumerate(self.slots, start=1):
            color, icon = _CARD_STYLES.get(slot.slot_type, _CARD_STYLES["other"])
            title = slot.label or slot.slot_type.title()
            if slot.route_run_number:
                title = f"{title} (run {slot.route_run_number})"
            cards.append({
                "card_type": slot.slot_type,
                "card_order": order,
                "display_title": title,
                "display_subtitle": self.rule.name if self.rule else None,
                "display_time_start": datetime.combine(self.instance_date, slot.start_time).isoformat(),
                "display_time_end": datetime.combine(self.instance_date, slot.end_time).isoformat(),
                "card_color": color,
                "card_icon": icon,
            })
        return cards

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "source_rule_id": self.source_rule_id,
            "rule_name": self.rule.name if self.rule else None,
            "instance_date": self.instance_date.isoformat(),
            "nominal_date": self.nominal_date.isoformat() if self.nominal_date else None,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "venue_id": self.venue_id,
            "venue_name": self.venue.name if self.venue else None,
            "participant_count": self.participant_count,
            "wpu_total": self.wpu_total,
            "staff_count": self.staff_count,
            "vehicle_count": self.vehicle_count,
            "staff_required": self.staff_required,
            "vehicles_required": self.vehicles_required,
            "status": self.status,
            "notes": self.notes,
            "manually_modified": self.manually_modified,
            "override_source": self.override_source,
            "override_reason": self.override_reason,
            "projection_hash": self.projection_hash,
            "integrity_warnings": list(self.integrity_warnings or []),
            "version": self.version,
            "projected_at": self.projected_at.isoformat() if self.projected_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_children:
            result["slots"] = [s.to_dict() for s in self.slots]
            result["cards"] = self.cards()
            result["attendance"] = [a.to_dict() for a in self.attendance]
            result["staff"] = [s.to_dict() for s in self.staff_assignments]
            result["vehicles"] = [v.to_dict() for v in self.vehicle_assignments]
        return result

    def __repr__(self):
        return f"<LoomInstance {self.id[:8]} rule={self.source_rule_id} {self.instance_date}>"


class InstanceSlot(db.Model):
    __tablename__ = "loom_instance_slots"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.String(36), db.ForeignKey("loom_instances.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False)
    slot_type = db.Column(db.String(20), nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    route_run_number = db.Column(db.Integer, nullable=True)
    label = db.Column(db.String(200), nullable=True)

    def to_dict(self):
        return {
            "seq": self.seq,
            "slot_type": self.slot_type,
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "route_run_number": self.route_run_number,
            "label": self.label,
        }


class ParticipantAttendance(OverrideMixin, db.Model):
    __tablename__ = "loom_participant_attendance"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "participant_id", name="uq_attendance_instance_participant"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.String(36), db.ForeignKey("loom_instances.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    participant_id = db.Column(db.Integer, db.ForeignKey("participants.id"), nullable=False,
                               index=True)
    source_rule_id = db.Column(db.Integer, db.ForeignKey("rules_participant_schedule.id",
                                                         ondelete="SET NULL"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="confirmed")
    pickup_required = db.Column(db.Boolean, nullable=False, default=True)
    dropoff_required = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.Text, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    participant = db.relationship("Participant", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "participant_id": self.participant_id,
            "participant_name": self.participant.display_name if self.participant else None,
            "source_rule_id": self.source_rule_id,
            "status": self.status,
            "pickup_required": self.pickup_required,
            "dropoff_required": self.dropoff_required,
            "notes": self.notes,
            "version": self.version,
            **self._override_dict(),
        }


class StaffAssignment(OverrideMixin, db.Model):
    __tablename__ = "loom_staff_assignments"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "staff_id", name="uq_staff_assignment_instance_staff"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.String(36), db.ForeignKey("loom_instances.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=False, index=True)
    source_rule_id = db.Column(db.Integer, db.ForeignKey("rules_staff_roster.id", ondelete="SET NULL"),
                               nullable=True)
    role = db.Column(db.String(20), nullable=False, default="support")
    status = db.Column(db.String(20), nullable=False, default="assigned")
    notes = db.Column(db.Text, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    staff = db.relationship("Staff", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "staff_id": self.staff_id,
            "staff_name": self.staff.display_name if self.staff else None,
            "source_rule_id": self.source_rule_id,
            "role": self.role,
            "status": self.status,
            "notes": self.notes,
            "version": self.version,
            **self._override_dict(),
        }


class VehicleAssignment(OverrideMixin, db.Model):
    __tablename__ = "loom_vehicle_assignments"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "vehicle_id", name="uq_vehicle_assignment_instance_vehicle"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.String(36), db.ForeignKey("loom_instances.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    vehicle_id = db.Column(db.Integer, db.ForeignKey("vehicles.id"), nullable=False, index=True)
    source_rule_id = db.Column(db.Integer, db.ForeignKey("rules_programs.id", ondelete="SET NULL"),
                               nullable=True)
    driver_staff_id = db.Column(db.Integer, db.ForeignKey("staff.id"), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="assigned")
    notes = db.Column(db.Text, default="")
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    vehicle = db.relationship("Vehicle", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "vehicle_label": self.vehicle.label if self.vehicle else None,
            "source_rule_id": self.source_rule_id,
            "driver_staff_id": self.driver_staff_id,
            "status": self.status,
            "notes": self.notes,
            "version": self.version,
            **self._override_dict(),
        }
