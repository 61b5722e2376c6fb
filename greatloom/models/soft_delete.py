"""
Soft Delete Mixin for reference data.

Participants, staff, venues and vehicles are never physically removed:
history rows keep pointing at their ids, and the projector needs to tell
"retired" apart from "never existed" when it checks referential integrity.

Usage:
    class Venue(SoftDeleteMixin, db.Model):
        ...

    venue.soft_delete()
    db.session.commit()

    select(Venue.id).where(Venue.usable())   # live, non-retired rows only
"""

from datetime import datetime, timezone

from sqlalchemy import and_

from greatloom.models import db


class SoftDeleteMixin:
    """Adds ``deleted_at`` + ``is_active`` and availability helpers."""

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deleted_at = db.Column(db.DateTime, nullable=True, default=None, index=True)

    def soft_delete(self):
        """Retire this record. Existing history is unaffected."""
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def usable(cls):
        """SQL condition for records usable for new generation."""
        return and_(cls.is_active.is_(True), cls.deleted_at.is_(None))
