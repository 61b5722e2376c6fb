"""Shared request-parsing helpers for the loom blueprints.

parse_date:      YYYY-MM-DD → date (returns None on empty input)
parse_datetime:  ISO-8601 → datetime (naive values are left naive)
parse_range:     ``range=YYYY-MM-DD..YYYY-MM-DD`` or ``start``/``end`` args
current_actor:   operator identity from the X-Actor header
"""
import logging
from datetime import date, datetime

from flask import request

from greatloom.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor"
DEFAULT_ACTOR = "operator"


def parse_date(value, field_name="date"):
    """Parse a YYYY-MM-DD string to a date object.

    Returns None for empty input; raises ValidationError for bad input.
    """
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (ValueError, TypeError):
        raise ValidationError(f"{field_name} must be YYYY-MM-DD", details={field_name: value})


def parse_datetime(value, field_name="as_of"):
    """Parse an ISO-8601 timestamp. Returns None for empty input."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).strip())
    except (ValueError, TypeError):
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp",
                              details={field_name: value})


def parse_range(args, *, required=True):
    """Return ``(start, end)`` from query args.

    Accepts ``range=2025-01-06..2025-02-17`` or ``start=…&end=…``. ``end``
    is exclusive.
    """
    raw = args.get("range")
    if raw:
        start_s, sep, end_s = raw.partition("..")
        if not sep:
            raise ValidationError("range must look like YYYY-MM-DD..YYYY-MM-DD",
                                  details={"range": raw})
        start, end = parse_date(start_s, "range"), parse_date(end_s, "range")
    else:
        start, end = parse_date(args.get("start"), "start"), parse_date(args.get("end"), "end")

    if start is None or end is None:
        if required:
            raise ValidationError("range (or start and end) is required")
        return start, end
    if end <= start:
        raise ValidationError("range end must be after range start",
                              details={"start": start.isoformat(), "end": end.isoformat()})
    return start, end


def current_actor():
    """Operator identity for audit rows; defaults to ``operator``."""
    actor = (request.headers.get(ACTOR_HEADER) or "").strip()
    return actor[:150] or DEFAULT_ACTOR
