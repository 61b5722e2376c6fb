"""
Great Loom
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for every state-mutating
      decision the engine or an operator makes.

The audit sink is independent of the History Ribbon: the ribbon records
what happened on a program day, the audit log records who changed what.
"""

import json
from datetime import UTC, datetime

from greatloom.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "program_rule", "rule_exception", "enrolment", "roster",
    "loom_instance", "history_shift", "pinned_artifact",
    "loom_settings", "scheduled_job",
}

AUDIT_ACTIONS = {
    # Rule store
    "rule.create",
    "rule.update",
    "rule.exception_add",
    "rule.enrolment_add",
    "rule.roster_add",
    "rule.change_blocked",
    # Projector
    "loom.instance_create",
    "loom.instance_update",
    "loom.instance_delete",
    # Operator
    "loom.instance_override",
    "loom.instance_cancel",
    # Archiver / quality agent
    "history.archive",
    "history.artifact_pin",
    "history.spot_audit",
    # Settings
    "settings.window_update",
}

AUDIT_SEVERITIES = {"info", "warning", "critical"}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per decision. ``previous_state`` / ``new_state`` carry JSON
    snapshots of whatever the action changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action_type"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="program_rule | loom_instance | history_shift | …",
    )
    entity_id = db.Column(
        db.String(36), nullable=False,
        comment="PK of the referenced entity (UUID or int-as-string)",
    )

    # What happened
    action_type = db.Column(
        db.String(60), nullable=False,
        comment="rule.update | loom.instance_override | history.archive | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="info")

    # Change payload
    previous_state_json = db.Column(db.Text, default="{}")
    new_state_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _load(raw) -> dict:
        try:
            return json.loads(raw or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def previous_state(self) -> dict:
        return self._load(self.previous_state_json)

    @property
    def new_state(self) -> dict:
        return self._load(self.new_state_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action_type": self.action_type,
            "actor": self.actor,
            "severity": self.severity,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action_type} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action_type: str,
    actor: str = "system",
    severity: str = "info",
    previous_state: dict | None = None,
    new_state: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action_type=action_type,
        actor=actor or "system",
        severity=severity if severity in AUDIT_SEVERITIES else "info",
        previous_state_json=json.dumps(previous_state or {}, default=str),
        new_state_json=json.dumps(new_state or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
