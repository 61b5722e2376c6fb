"""
Great Loom
Scheduled Jobs.

Jobs:
    - loom_roll:    nightly projection + archive + spot audit
    - loom_archive: hourly archive of finished instances
"""

from __future__ import annotations

import logging
from typing import Any

from greatloom.services.loom_roller import archive_now, roll_window
from greatloom.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

JOB_ACTOR = "scheduler"


@register_job("loom_roll")
def roll_loom_window(app) -> dict[str, Any]:
    """Project the rolling window, then archive and spot-audit finished instances."""
    summary = roll_window(actor=JOB_ACTOR)
    projection = summary["projection"]
    logger.info("loom_roll: created=%d updated=%d deleted=%d",
                projection["created"], projection["updated"], projection["deleted"],
                extra={"job_name": "loom_roll", "pass_id": summary["pass_id"]})
    return summary


@register_job("loom_archive")
def archive_finished_instances(app) -> dict[str, Any]:
    """Weave instances that have ended into the History Ribbon."""
    summary = archive_now(actor=JOB_ACTOR)
    logger.info("loom_archive: archived=%d",
                summary["archive"]["archived_count"],
                extra={"job_name": "loom_archive", "pass_id": summary["pass_id"]})
    return summary
