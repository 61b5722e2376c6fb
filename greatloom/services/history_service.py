"""
Great Loom
History Ribbon reads and artifact pinning.

The ribbon is append-only: the only write offered here is pinning an
artifact to an archived shift.
"""

import logging

from sqlalchemy import select

from greatloom.core.exceptions import NotFoundError, ValidationError
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.history import ARTIFACT_SEVERITIES, ARTIFACT_TYPES, HistoryShift, PinnedArtifact

logger = logging.getLogger(__name__)

# spot_audit artifacts belong to the quality agent.
PINNABLE_ARTIFACT_TYPES = ARTIFACT_TYPES - {"spot_audit"}


def history_query(start=None, end=None, *, rule_id=None, completion_status=None):
    q = HistoryShift.query
    if start is not None:
        q = q.filter(HistoryShift.instance_date >= start)
    if end is not None:
        q = q.filter(HistoryShift.instance_date < end)
    if rule_id is not None:
        q = q.filter(HistoryShift.source_rule_id == rule_id)
    if completion_status:
        q = q.filter(HistoryShift.completion_status == completion_status)
    return q.order_by(HistoryShift.instance_date, HistoryShift.start_time)


def get_shift(shift_id: str) -> HistoryShift:
    shift = db.session.get(HistoryShift, shift_id)
    if shift is None:
        raise NotFoundError(resource="HistoryShift", resource_id=shift_id)
    return shift


def find_by_instance(instance_id: str) -> HistoryShift | None:
    return db.session.execute(
        select(HistoryShift).where(HistoryShift.original_instance_id == instance_id)
    ).scalar_one_or_none()


def pin_artifact(shift_id: str, data: dict, *, actor: str = "system") -> PinnedArtifact:
    """Pin a note / incident / feedback / photo to an archived shift."""
    shift = get_shift(shift_id)

    artifact_type = (data.get("artifact_type") or "note").strip()
    if artifact_type not in PINNABLE_ARTIFACT_TYPES:
        raise ValidationError(
            f"artifact_type must be one of: {', '.join(sorted(PINNABLE_ARTIFACT_TYPES))}",
            details={"artifact_type": artifact_type},
        )
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    if len(title) > 300:
        raise ValidationError("title must be 300 characters or fewer")
    severity = data.get("severity")
    if severity is not None and severity not in ARTIFACT_SEVERITIES:
        raise ValidationError(
            f"severity must be one of: {', '.join(sorted(ARTIFACT_SEVERITIES))}",
            details={"severity": severity},
        )

    artifact = PinnedArtifact(
        history_shift_id=shift.id,
        artifact_type=artifact_type,
        title=title,
        content=data.get("content") or "",
        severity=severity,
        created_by=actor,
    )
    db.session.add(artifact)
    db.session.flush()
    write_audit(
        entity_type="pinned_artifact",
        entity_id=artifact.id,
        action_type="history.artifact_pin",
        actor=actor,
        new_state=artifact.to_dict(),
    )
    db.session.commit()
    logger.info("Artifact %s pinned to shift %s", artifact.artifact_type, shift.id,
                extra={"history_shift_id": shift.id})
    return artifact
