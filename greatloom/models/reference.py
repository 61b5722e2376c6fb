"""
Great Loom
Reference data models.

Models:
    - Participant: person attending programs (carries a supervision weight)
    - Staff:       support worker who can be rostered onto programs
    - Venue:       physical location a program runs at
    - Vehicle:     transport resource for pickup / dropoff runs

These tables are owned by the surrounding admin system. The loom only
reads them: to resolve ids during projection, to flag stale references,
and to denormalise names into the history ribbon at archival time.
"""

from datetime import datetime, timezone

from greatloom.models import db
from greatloom.models.soft_delete import SoftDeleteMixin


class Participant(SoftDeleteMixin, db.Model):
    __tablename__ = "participants"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default="")
    supervision_multiplier = db.Column(
        db.Float, nullable=False, default=1.0,
        comment="Weighted participant units (WPU) contributed to staffing ratios",
    )
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.display_name,
            "supervision_multiplier": self.supervision_multiplier,
            "is_active": self.is_active,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Participant {self.id}: {self.display_name}>"


class Staff(SoftDeleteMixin, db.Model):
    __tablename__ = "staff"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default="")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.display_name,
            "is_active": self.is_active,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Staff {self.id}: {self.display_name}>"


class Venue(SoftDeleteMixin, db.Model):
    __tablename__ = "venues"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(500), default="")
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "is_active": self.is_active,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Venue {self.id}: {self.name}>"


class Vehicle(SoftDeleteMixin, db.Model):
    __tablename__ = "vehicles"

    id = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(100), nullable=False, comment="Fleet name or registration")
    seats = db.Column(db.Integer, nullable=False, default=10)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "label": self.label,
            "seats": self.seats,
            "is_active": self.is_active,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f"<Vehicle {self.id}: {self.label}>"


REFERENCE_MODELS = {
    "participant": Participant,
    "staff": Staff,
    "venue": Venue,
    "vehicle": Vehicle,
}
