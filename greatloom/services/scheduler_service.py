"""
Great Loom
Scheduler Service.

Registry and runner for the loom background jobs (nightly roll, hourly
archive). Jobs register themselves with ``@register_job`` and run inside a
Flask app context; every run is recorded on its ScheduledJob row.

An external cron (or the ``flask loom-roll`` CLI command) drives the
schedule; the stored schedule_config documents the expected cadence.

Architecture:
    - SchedulerService: Manages job registration and execution
    - Jobs are stored in ScheduledJob model for persistence
    - Manual trigger API: POST /api/v1/loom/jobs/<name>/run
    - Pluggable job functions registered via decorator
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, current_app, has_app_context

from greatloom.core.exceptions import LoomLockBusyError
from greatloom.models import db
from greatloom.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("loom_roll")
        def roll_loom_window(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def _context(cls):
        # Reuse the caller's context so the job shares its session.
        if has_app_context() and current_app._get_current_object() is cls._app:
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, _fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(_fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="cron",
                        schedule_config=_get_default_schedule(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        A job that finds the loom lock held is recorded as ``skipped``.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if record is not None and not record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": "Job is disabled"}

            try:
                result = fn(cls._app)
            except LoomLockBusyError as exc:
                db.session.rollback()
                status = "skipped"
                error = str(exc)
                logger.warning("Job %s skipped: %s", job_name, exc,
                               extra={"job_name": job_name})
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc,
                                 extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)

            # Update DB record
            try:
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "loom_roll": {"hour": "1", "minute": "0", "description": "Daily at 01:00"},
        "loom_archive": {"hour": "*", "minute": "5", "description": "Hourly at :05"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0",
                                   "description": "Daily at midnight"})
