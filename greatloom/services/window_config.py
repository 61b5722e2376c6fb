"""
Great Loom
Window configuration service.

The rolling horizon is persisted in ``loom_settings`` under
``window_weeks``. Each pass reads it once through ``get_window_config()``
and hands the resulting value object to the projector; nothing caches it.

Shrinking the window never deletes instances beyond the new horizon:
the projector only ever touches ``[today, today + weeks)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from flask import current_app

from greatloom.core.exceptions import ValidationError
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.scheduling import LoomSetting

logger = logging.getLogger(__name__)

WINDOW_SETTING_KEY = "window_weeks"
MIN_WINDOW_WEEKS = 1
MAX_WINDOW_WEEKS = 16


@dataclass(frozen=True)
class WindowConfig:
    weeks: int
    updated_by: str | None = None
    updated_at: datetime | None = None

    def window_for(self, today: date) -> tuple[date, date]:
        """Half-open ``[today, today + weeks)`` date range."""
        return today, today + timedelta(weeks=self.weeks)

    def to_dict(self) -> dict:
        return {
            "weeks": self.weeks,
            "min_weeks": MIN_WINDOW_WEEKS,
            "max_weeks": MAX_WINDOW_WEEKS,
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def loom_timezone() -> ZoneInfo:
    return ZoneInfo(current_app.config.get("LOOM_TIMEZONE", "UTC"))


def loom_today() -> date:
    """Today's date in the configured loom timezone."""
    return datetime.now(loom_timezone()).date()


def loom_now() -> datetime:
    return datetime.now(timezone.utc).astimezone(loom_timezone())


def _validate_weeks(weeks) -> int:
    if isinstance(weeks, bool) or not isinstance(weeks, int):
        try:
            weeks = int(str(weeks).strip())
        except (TypeError, ValueError):
            raise ValidationError("weeks must be an integer", details={"weeks": weeks})
    if not MIN_WINDOW_WEEKS <= weeks <= MAX_WINDOW_WEEKS:
        raise ValidationError(
            f"weeks must be between {MIN_WINDOW_WEEKS} and {MAX_WINDOW_WEEKS}",
            details={"weeks": weeks},
        )
    return weeks


def get_window_config() -> WindowConfig:
    """Read the current window horizon, falling back to LOOM_DEFAULT_WINDOW_WEEKS."""
    setting = db.session.get(LoomSetting, WINDOW_SETTING_KEY)
    if setting is None or setting.value is None:
        return WindowConfig(weeks=int(current_app.config.get("LOOM_DEFAULT_WINDOW_WEEKS", 6)))
    return WindowConfig(
        weeks=int(setting.value),
        updated_by=setting.updated_by,
        updated_at=setting.updated_at,
    )


def set_window_weeks(weeks, actor: str = "system") -> WindowConfig:
    """Persist a new horizon. Takes effect on the next projector pass."""
    weeks = _validate_weeks(weeks)
    previous = get_window_config()

    setting = db.session.get(LoomSetting, WINDOW_SETTING_KEY)
    if setting is None:
        setting = LoomSetting(key=WINDOW_SETTING_KEY)
        db.session.add(setting)
    setting.value = weeks
    setting.updated_by = actor

    write_audit(
        entity_type="loom_settings",
        entity_id=WINDOW_SETTING_KEY,
        action_type="settings.window_update",
        actor=actor,
        previous_state={"weeks": previous.weeks},
        new_state={"weeks": weeks},
    )
    db.session.commit()
    logger.info("Window horizon changed %s -> %s weeks by %s", previous.weeks, weeks, actor)
    return get_window_config()
