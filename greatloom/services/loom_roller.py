"""
Great Loom
Loom Roller — one "roll window now" cycle.

    lock loom-writes → read window config → project → archive → spot-audit

The window config is read once and handed to the projector as a value,
so a concurrent PATCH /window-config only affects the next roll.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime

from greatloom.services.archiver import Archiver
from greatloom.services.loom_lock import loom_lock
from greatloom.services.projector import Projector
from greatloom.services.quality_agent import QualityAgent
from greatloom.services.window_config import get_window_config, loom_today

logger = logging.getLogger(__name__)


def _archive_and_audit(pass_id: str, actor: str, as_of: datetime | None) -> dict:
    archived = Archiver(actor=actor, pass_id=pass_id).archive_completed(as_of)
    audit = QualityAgent().run(archived.shift_ids)
    return {"archive": archived.to_dict(), "quality_audit": audit.to_dict()}


def roll_window(*, today: date | None = None, archive: bool = True,
                as_of: datetime | None = None, actor: str = "system",
                rule_ids=None, deadline: datetime | None = None,
                cancel_event=None) -> dict:
    """Run a full roll under the loom-writes lock.

    Raises ``LoomLockBusyError`` if another writer holds the lock.
    """
    pass_id = uuid.uuid4().hex[:12]
    today = today or loom_today()

    with loom_lock(holder=pass_id):
        window = get_window_config()
        window_start, window_end = window.window_for(today)
        logger.info("Roll started for %s..%s (%d weeks)", window_start, window_end,
                    window.weeks, extra={"pass_id": pass_id})

        projection = Projector(today=today, pass_id=pass_id, actor=actor).project(
            window_start, window_end, rule_ids=rule_ids,
            deadline=deadline, cancel_event=cancel_event,
        )
        summary = {
            "pass_id": pass_id,
            "window": {"start": window_start.isoformat(), "end": window_end.isoformat(),
                       "weeks": window.weeks},
            "projection": projection.to_dict(),
            "archive": None,
            "quality_audit": None,
        }
        if archive and not projection.cancelled:
            summary.update(_archive_and_audit(pass_id, actor, as_of))

    return summary


def archive_now(*, as_of: datetime | None = None, actor: str = "system") -> dict:
    """Archive (and spot-audit) without projecting."""
    pass_id = uuid.uuid4().hex[:12]
    with loom_lock(holder=pass_id):
        summary = {"pass_id": pass_id, **_archive_and_audit(pass_id, actor, as_of)}
    return summary
