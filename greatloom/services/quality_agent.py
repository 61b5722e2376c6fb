"""
Great Loom
Quality Agent — seeded spot audits over newly archived shifts.

Each candidate is independently selected with probability ``p``. With a
fixed seed the selection is fully reproducible: the same seed over the
same ordered candidates always picks the same shifts.

Strictly additive: the agent only pins ``spot_audit`` artifacts and sends
notifications, it never edits a ribbon row.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field

from flask import current_app
from sqlalchemy import select

from greatloom.core.exceptions import ValidationError
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.history import HistoryShift, PinnedArtifact
from greatloom.services.notification import NotificationService

logger = logging.getLogger(__name__)

AGENT_NAME = "quality-agent"


def select_for_audit(candidates: Sequence, probability: float, rng) -> list:
    """Keep each candidate iff ``rng.random() < probability``; order is preserved.

    ``rng.random()`` is called exactly once per candidate.
    """
    if not 0.0 <= probability <= 1.0:
        raise ValidationError("probability must be between 0 and 1",
                              details={"probability": probability})
    return [c for c in candidates if rng.random() < probability]


@dataclass
class AuditResult:
    examined: int = 0
    selected: list[str] = field(default_factory=list)
    artifact_ids: list[int] = field(default_factory=list)
    probability: float = 0.0
    seed: int | str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce_seed(seed):
    if seed is None or seed == "":
        return None
    if isinstance(seed, int):
        return seed
    text = str(seed).strip()
    return int(text) if text.lstrip("-").isdigit() else text


class QualityAgent:
    def __init__(self, probability: float | None = None, seed=None, *, notify: bool = True):
        if probability is None:
            probability = float(current_app.config.get("LOOM_QUALITY_AUDIT_PROBABILITY", 0.05))
        if seed is None:
            seed = current_app.config.get("LOOM_QUALITY_AUDIT_SEED")
        self.probability = float(probability)
        self.seed = _coerce_seed(seed)
        self.notify = notify
        self.rng = random.Random(self.seed)

    def run(self, shift_ids: Sequence[str]) -> AuditResult:
        result = AuditResult(examined=len(shift_ids), probability=self.probability, seed=self.seed)
        if not shift_ids:
            return result

        found = {
            s.id: s for s in db.session.execute(
                select(HistoryShift).where(HistoryShift.id.in_(list(shift_ids)))
            ).scalars()
        }
        missing = [sid for sid in shift_ids if sid not in found]
        if missing:
            logger.warning("Quality agent skipped %d unknown shifts", len(missing))
        candidates = [found[sid] for sid in shift_ids if sid in found]

        for shift in select_for_audit(candidates, self.probability, self.rng):
            artifact = PinnedArtifact(
                history_shift_id=shift.id,
                artifact_type="spot_audit",
                title=f"Spot audit: {shift.program_name} on {shift.instance_date.isoformat()}",
                content=(
                    f"Randomly selected for quality review "
                    f"(probability={self.probability}, seed={self.seed})."
                ),
                severity="info",
                created_by=AGENT_NAME,
            )
            db.session.add(artifact)
            db.session.flush()
            write_audit(
                entity_type="pinned_artifact",
                entity_id=artifact.id,
                action_type="history.spot_audit",
                actor=AGENT_NAME,
                new_state={"history_shift_id": shift.id, "probability": self.probability,
                           "seed": self.seed},
            )
            db.session.commit()
            result.selected.append(shift.id)
            result.artifact_ids.append(artifact.id)

            if self.notify:
                NotificationService.create(
                    title=artifact.title,
                    message=artifact.content,
                    category="quality",
                    severity="info",
                    entity_type="history_shift",
                    entity_id=shift.id,
                )

        logger.info("Quality agent examined %d shifts, selected %d",
                    result.examined, len(result.selected))
        return result
