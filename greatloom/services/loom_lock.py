"""
Great Loom
Named database lock for loom writers.

Projector and archiver passes hold ``loom-writes`` for their whole run so
two rolls can never interleave. The lock is a row in ``loom_locks``:
acquiring inserts it, releasing deletes it, and a row whose
``expires_at`` has passed may be taken over by the next caller.

Usage:
    with loom_lock(holder=pass_id):
        ...
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError

from greatloom.core.exceptions import LoomLockBusyError
from greatloom.models import db
from greatloom.models.scheduling import LoomLock

logger = logging.getLogger(__name__)

LOOM_WRITES = "loom-writes"


def _utcnow():
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) back without tzinfo.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def acquire_lock(name: str = LOOM_WRITES, *, holder: str | None = None,
                 ttl_seconds: int | None = None) -> str:
    """Take the named lock or raise ``LoomLockBusyError``. Returns the holder id."""
    holder = holder or uuid.uuid4().hex[:12]
    ttl = ttl_seconds or int(current_app.config.get("LOOM_LOCK_TTL_SECONDS", 900))
    now = _utcnow()
    expires_at = now + timedelta(seconds=ttl)

    try:
        db.session.execute(
            insert(LoomLock).values(name=name, holder=holder, acquired_at=now, expires_at=expires_at)
        )
        db.session.commit()
        logger.debug("Lock %s acquired by %s", name, holder)
        return holder
    except IntegrityError:
        db.session.rollback()

    current = db.session.get(LoomLock, name, populate_existing=True)
    if current is None:
        raise LoomLockBusyError(name)
    if _aware(current.expires_at) > now:
        raise LoomLockBusyError(name, current.holder)

    stale_holder = current.holder
    taken = db.session.execute(
        update(LoomLock)
        .where(LoomLock.name == name, LoomLock.holder == stale_holder)
        .values(holder=holder, acquired_at=now, expires_at=expires_at)
    ).rowcount
    if taken != 1:
        db.session.rollback()
        raise LoomLockBusyError(name)
    db.session.commit()
    logger.warning("Lock %s reclaimed from stale holder %s by %s", name, stale_holder, holder)
    return holder


def release_lock(name: str = LOOM_WRITES, *, holder: str) -> bool:
    released = db.session.execute(
        delete(LoomLock).where(LoomLock.name == name, LoomLock.holder == holder)
    ).rowcount
    db.session.commit()
    if not released:
        logger.warning("Lock %s was no longer held by %s at release", name, holder)
    return bool(released)


@contextmanager
def loom_lock(name: str = LOOM_WRITES, *, holder: str | None = None,
              ttl_seconds: int | None = None):
    holder = acquire_lock(name, holder=holder, ttl_seconds=ttl_seconds)
    try:
        yield holder
    finally:
        db.session.rollback()
        release_lock(name, holder=holder)
