"""loom_core

Creates the Great Loom schema:
  - participants, staff, venues, vehicles     — reference data (read-only to the loom)
  - rules_programs (+ slots, participant schedule, staff roster, exceptions)
  - loom_instances (+ slots, attendance, staff / vehicle assignments)
  - history_ribbon_shifts (+ participants, staff, vehicles, pinned artifacts)
  - audit_logs, notifications, scheduled_jobs, loom_settings, loom_locks

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 0001_loom_core
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '0001_loom_core'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _override_columns():
    return [
        sa.Column("is_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("override_source", sa.String(length=10), nullable=False, server_default="engine",
                  comment="engine | human"),
        sa.Column("override_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    ]


def _soft_delete_columns():
    return [
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Reference data ────────────────────────────────────────────────────
    if "participants" not in existing:
        op.create_table(
            "participants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("supervision_multiplier", sa.Float(), nullable=False, server_default="1.0",
                      comment="Weighted participant units (WPU) contributed to staffing ratios"),
            *_soft_delete_columns(),
            sa.PrimaryKeyConstraint("id"),
        )
    if "staff" not in existing:
        op.create_table(
            "staff",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False),
            sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
            *_soft_delete_columns(),
            sa.PrimaryKeyConstraint("id"),
        )
    if "venues" not in existing:
        op.create_table(
            "venues",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("address", sa.String(length=500), nullable=True),
            *_soft_delete_columns(),
            sa.PrimaryKeyConstraint("id"),
        )
    if "vehicles" not in existing:
        op.create_table(
            "vehicles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=100), nullable=False,
                      comment="Fleet name or registration"),
            sa.Column("seats", sa.Integer(), nullable=False, server_default="10"),
            *_soft_delete_columns(),
            sa.PrimaryKeyConstraint("id"),
        )

    # ── Rule Store ────────────────────────────────────────────────────────
    if "rules_programs" not in existing:
        op.create_table(
            "rules_programs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("pattern", sa.String(length=20), nullable=False, server_default="weekly",
                      comment="weekly | fortnightly | monthly"),
            sa.Column("days_of_week", sa.JSON(), nullable=False),
            sa.Column("week_in_cycle", sa.SmallInteger(), nullable=False, server_default="1"),
            sa.Column("cycle_anchor", sa.Date(), nullable=True),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("venue_id", sa.Integer(), nullable=True),
            sa.Column("default_vehicle_id", sa.Integer(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True, comment="NULL = open-ended"),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["default_vehicle_id"], ["vehicles.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
    if "rules_program_slots" not in existing:
        op.create_table(
            "rules_program_slots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False),
            sa.Column("slot_type", sa.String(length=20), nullable=False,
                      comment="pickup | activity | meal | dropoff | other"),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("route_run_number", sa.Integer(), nullable=True),
            sa.Column("label", sa.String(length=200), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["rules_programs.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_rules_program_slots_rule_id", "rules_program_slots", ["rule_id"])
    if "rules_participant_schedule" not in existing:
        op.create_table(
            "rules_participant_schedule",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("program_rule_id", sa.Integer(), nullable=False),
            sa.Column("participant_id", sa.Integer(), nullable=False),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("pickup_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("dropoff_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["program_rule_id"], ["rules_programs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("participant_id", "program_rule_id", "start_date",
                                name="uq_rps_participant_rule_start"),
        )
        op.create_index("ix_rules_participant_schedule_program_rule_id",
                        "rules_participant_schedule", ["program_rule_id"])
        op.create_index("ix_rules_participant_schedule_participant_id",
                        "rules_participant_schedule", ["participant_id"])
    if "rules_staff_roster" not in existing:
        op.create_table(
            "rules_staff_roster",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("program_rule_id", sa.Integer(), nullable=False),
            sa.Column("staff_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="support",
                      comment="lead | support | driver"),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["program_rule_id"], ["rules_programs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["staff_id"], ["staff.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("staff_id", "program_rule_id", "start_date",
                                name="uq_rsr_staff_rule_start"),
        )
        op.create_index("ix_rules_staff_roster_program_rule_id",
                        "rules_staff_roster", ["program_rule_id"])
        op.create_index("ix_rules_staff_roster_staff_id", "rules_staff_roster", ["staff_id"])
    if "rules_program_exceptions" not in existing:
        op.create_table(
            "rules_program_exceptions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("exception_date", sa.Date(), nullable=False),
            sa.Column("exception_type", sa.String(length=30), nullable=False,
                      comment="cancel | shift | substitute | participant_cancel"),
            sa.Column("new_date", sa.Date(), nullable=True),
            sa.Column("start_time", sa.Time(), nullable=True),
            sa.Column("end_time", sa.Time(), nullable=True),
            sa.Column("venue_id", sa.Integer(), nullable=True),
            sa.Column("vehicle_id", sa.Integer(), nullable=True),
            sa.Column("staff_id", sa.Integer(), nullable=True),
            sa.Column("replaced_staff_id", sa.Integer(), nullable=True),
            sa.Column("participant_id", sa.Integer(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["rules_programs.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["staff_id"], ["staff.id"]),
            sa.ForeignKeyConstraint(["replaced_staff_id"], ["staff.id"]),
            sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id", "exception_date", "exception_type", "participant_id",
                                name="uq_rule_exception_scope"),
        )
        op.create_index("ix_rules_program_exceptions_rule_id",
                        "rules_program_exceptions", ["rule_id"])
        op.create_index("ix_rules_program_exceptions_exception_date",
                        "rules_program_exceptions", ["exception_date"])

    # ── Instance Store ────────────────────────────────────────────────────
    if "loom_instances" not in existing:
        op.create_table(
            "loom_instances",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("source_rule_id", sa.Integer(), nullable=True),
            sa.Column("instance_date", sa.Date(), nullable=False),
            sa.Column("nominal_date", sa.Date(), nullable=True,
                      comment="Recurrence date before any shift exception"),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("venue_id", sa.Integer(), nullable=True),
            sa.Column("participant_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("wpu_total", sa.Float(), nullable=False, server_default="0"),
            sa.Column("staff_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("vehicle_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("staff_required", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("vehicles_required", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="scheduled"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("manually_modified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("override_source", sa.String(length=10), nullable=False, server_default="engine"),
            sa.Column("override_reason", sa.Text(), nullable=True),
            sa.Column("projection_hash", sa.String(length=64), nullable=True,
                      comment="sha256 of the resolved rule state for this date"),
            sa.Column("integrity_warnings", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("projected_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["source_rule_id"], ["rules_programs.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["venue_id"], ["venues.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("source_rule_id", "instance_date", name="uq_loom_instance_rule_date"),
        )
        op.create_index("idx_loom_instances_date", "loom_instances", ["instance_date"])
        op.create_index("ix_loom_instances_source_rule_id", "loom_instances", ["source_rule_id"])
    if "loom_instance_slots" not in existing:
        op.create_table(
            "loom_instance_slots",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.String(length=36), nullable=False),
            sa.Column("seq", sa.Integer(), nullable=False),
            sa.Column("slot_type", sa.String(length=20), nullable=False),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("route_run_number", sa.Integer(), nullable=True),
            sa.Column("label", sa.String(length=200), nullable=True),
            sa.ForeignKeyConstraint(["instance_id"], ["loom_instances.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_loom_instance_slots_instance_id", "loom_instance_slots", ["instance_id"])
    if "loom_participant_attendance" not in existing:
        op.create_table(
            "loom_participant_attendance",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.String(length=36), nullable=False),
            sa.Column("participant_id", sa.Integer(), nullable=False),
            sa.Column("source_rule_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="confirmed"),
            sa.Column("pickup_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("dropoff_required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("notes", sa.Text(), nullable=True),
            *_override_columns(),
            *_timestamps(),
            sa.ForeignKeyConstraint(["instance_id"], ["loom_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["participant_id"], ["participants.id"]),
            sa.ForeignKeyConstraint(["source_rule_id"], ["rules_participant_schedule.id"],
                                    ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "participant_id",
                                name="uq_attendance_instance_participant"),
        )
        op.create_index("ix_loom_participant_attendance_instance_id",
                        "loom_participant_attendance", ["instance_id"])
        op.create_index("ix_loom_participant_attendance_participant_id",
                        "loom_participant_attendance", ["participant_id"])
    if "loom_staff_assignments" not in existing:
        op.create_table(
            "loom_staff_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.String(length=36), nullable=False),
            sa.Column("staff_id", sa.Integer(), nullable=False),
            sa.Column("source_rule_id", sa.Integer(), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="support"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="assigned"),
            sa.Column("notes", sa.Text(), nullable=True),
            *_override_columns(),
            *_timestamps(),
            sa.ForeignKeyConstraint(["instance_id"], ["loom_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["staff_id"], ["staff.id"]),
            sa.ForeignKeyConstraint(["source_rule_id"], ["rules_staff_roster.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "staff_id", name="uq_staff_assignment_instance_staff"),
        )
        op.create_index("ix_loom_staff_assignments_instance_id",
                        "loom_staff_assignments", ["instance_id"])
        op.create_index("ix_loom_staff_assignments_staff_id", "loom_staff_assignments", ["staff_id"])
    if "loom_vehicle_assignments" not in existing:
        op.create_table(
            "loom_vehicle_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.String(length=36), nullable=False),
            sa.Column("vehicle_id", sa.Integer(), nullable=False),
            sa.Column("source_rule_id", sa.Integer(), nullable=True),
            sa.Column("driver_staff_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="assigned"),
            sa.Column("notes", sa.Text(), nullable=True),
            *_override_columns(),
            *_timestamps(),
            sa.ForeignKeyConstraint(["instance_id"], ["loom_instances.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.id"]),
            sa.ForeignKeyConstraint(["source_rule_id"], ["rules_programs.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["driver_staff_id"], ["staff.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "vehicle_id",
                                name="uq_vehicle_assignment_instance_vehicle"),
        )
        op.create_index("ix_loom_vehicle_assignments_instance_id",
                        "loom_vehicle_assignments", ["instance_id"])
        op.create_index("ix_loom_vehicle_assignments_vehicle_id",
                        "loom_vehicle_assignments", ["vehicle_id"])

    # ── History Ribbon ────────────────────────────────────────────────────
    if "history_ribbon_shifts" not in existing:
        op.create_table(
            "history_ribbon_shifts",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("original_instance_id", sa.String(length=36), nullable=False,
                      comment="Id of the live LoomInstance this row replaced"),
            sa.Column("source_rule_id", sa.Integer(), nullable=True),
            sa.Column("program_name", sa.String(length=200), nullable=False),
            sa.Column("program_description", sa.Text(), nullable=True),
            sa.Column("instance_date", sa.Date(), nullable=False),
            sa.Column("start_time", sa.Time(), nullable=False),
            sa.Column("end_time", sa.Time(), nullable=False),
            sa.Column("venue_id", sa.Integer(), nullable=True),
            sa.Column("venue_name", sa.String(length=200), nullable=False),
            sa.Column("venue_address", sa.String(length=500), nullable=True),
            sa.Column("participant_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("staff_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("vehicle_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("was_manually_modified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("projection_hash", sa.String(length=64), nullable=True),
            sa.Column("completion_status", sa.String(length=20), nullable=False,
                      comment="completed | partial | cancelled"),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("woven_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("original_instance_id"),
        )
        op.create_index("idx_history_ribbon_date", "history_ribbon_shifts", ["instance_date"])
        op.create_index("ix_history_ribbon_shifts_source_rule_id",
                        "history_ribbon_shifts", ["source_rule_id"])
    if "history_ribbon_participants" not in existing:
        op.create_table(
            "history_ribbon_participants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("history_shift_id", sa.String(length=36), nullable=False),
            sa.Column("participant_id", sa.Integer(), nullable=False),
            sa.Column("participant_name", sa.String(length=200), nullable=False),
            sa.Column("attendance_status", sa.String(length=20), nullable=False),
            sa.Column("pickup_provided", sa.Boolean(), nullable=True),
            sa.Column("dropoff_provided", sa.Boolean(), nullable=True),
            sa.Column("was_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["history_shift_id"], ["history_ribbon_shifts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_history_ribbon_participants_history_shift_id",
                        "history_ribbon_participants", ["history_shift_id"])
    if "history_ribbon_staff" not in existing:
        op.create_table(
            "history_ribbon_staff",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("history_shift_id", sa.String(length=36), nullable=False),
            sa.Column("staff_id", sa.Integer(), nullable=False),
            sa.Column("staff_name", sa.String(length=200), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=False),
            sa.Column("hours_worked", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("was_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["history_shift_id"], ["history_ribbon_shifts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_history_ribbon_staff_history_shift_id",
                        "history_ribbon_staff", ["history_shift_id"])
    if "history_ribbon_vehicles" not in existing:
        op.create_table(
            "history_ribbon_vehicles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("history_shift_id", sa.String(length=36), nullable=False),
            sa.Column("vehicle_id", sa.Integer(), nullable=False),
            sa.Column("vehicle_label", sa.String(length=100), nullable=False),
            sa.Column("driver_name", sa.String(length=200), nullable=True),
            sa.Column("was_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["history_shift_id"], ["history_ribbon_shifts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_history_ribbon_vehicles_history_shift_id",
                        "history_ribbon_vehicles", ["history_shift_id"])
    if "history_pinned_artifacts" not in existing:
        op.create_table(
            "history_pinned_artifacts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("history_shift_id", sa.String(length=36), nullable=False),
            sa.Column("artifact_type", sa.String(length=20), nullable=False,
                      comment="note | incident | feedback | photo | spot_audit"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("content", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["history_shift_id"], ["history_ribbon_shifts.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_history_pinned_artifacts_type",
                        "history_pinned_artifacts", ["artifact_type"])
        op.create_index("ix_history_pinned_artifacts_history_shift_id",
                        "history_pinned_artifacts", ["history_shift_id"])

    # ── Audit, notifications, engine state ───────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action_type", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
            sa.Column("previous_state_json", sa.Text(), nullable=True),
            sa.Column("new_state_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action_type"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )
    if "loom_settings" not in existing:
        op.create_table(
            "loom_settings",
            sa.Column("key", sa.String(length=100), nullable=False),
            sa.Column("value", sa.JSON(), nullable=True),
            sa.Column("updated_by", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("key"),
        )
    if "loom_locks" not in existing:
        op.create_table(
            "loom_locks",
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("holder", sa.String(length=200), nullable=False),
            sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("name"),
        )


def downgrade():
    for table in (
        "loom_locks", "loom_settings", "scheduled_jobs", "notifications", "audit_logs",
        "history_pinned_artifacts", "history_ribbon_vehicles", "history_ribbon_staff",
        "history_ribbon_participants", "history_ribbon_shifts",
        "loom_vehicle_assignments", "loom_staff_assignments", "loom_participant_attendance",
        "loom_instance_slots", "loom_instances",
        "rules_program_exceptions", "rules_staff_roster", "rules_participant_schedule",
        "rules_program_slots", "rules_programs",
        "vehicles", "venues", "staff", "participants",
    ):
        op.drop_table(table)
