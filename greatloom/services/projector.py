"""
Great Loom
Projector — weaves rules into the live instance store.

Pass outline:
    1. snapshot   active rules intersecting the window → frozen RuleSpecs
    2. expand     RuleSpecs → Occurrences on a thread pool (pure, no DB)
    3. reconcile  one (rule, date) unit at a time on the calling thread,
                  one commit per unit
    4. retire     live instances in the window that are no longer planned

The projector never writes a row an operator has overridden:
    LoomInstance.manually_modified   → no derived updates at all
    <attachment>.is_overridden       → row is left exactly as the operator
                                       set it; writing it is a bug and
                                       raises OverrideViolationError

Stale writes (version_id_col mismatch) roll the unit back and re-read:
if the operator has since overridden the instance the unit is skipped.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from greatloom.core.exceptions import OverrideViolationError, RuleExpansionError, ValidationError
from greatloom.core.loom_types import Occurrence, RuleSpec
from greatloom.models import db
from greatloom.models.audit import write_audit
from greatloom.models.loom import (
    InstanceSlot,
    LoomInstance,
    ParticipantAttendance,
    StaffAssignment,
    VehicleAssignment,
)
from greatloom.models.reference import Participant, Staff
from greatloom.models.rules import ProgramRule
from greatloom.services.instance_metrics import recompute_counts, store_integrity_warnings
from greatloom.services.recurrence import expand_rule
from greatloom.services.window_config import loom_today

logger = logging.getLogger(__name__)

# (collection on LoomInstance, model, subject column, initial status)
_ATTACHMENTS = (
    ("attendance", ParticipantAttendance, "participant_id", "confirmed"),
    ("staff_assignments", StaffAssignment, "staff_id", "assigned"),
    ("vehicle_assignments", VehicleAssignment, "vehicle_id", "assigned"),
)

_MAX_ATTEMPTS = 2


@dataclass
class ProjectionResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    warnings: list[dict] = field(default_factory=list)
    cancelled: bool = False

    def warn(self, message: str, **context) -> None:
        self.warnings.append({"message": message, **context})

    def to_dict(self) -> dict:
        return asdict(self)


def _utcnow():
    return datetime.now(timezone.utc)


def _guard_write(row) -> None:
    if row.is_overridden:
        raise OverrideViolationError(
            f"Projector attempted to write overridden {type(row).__name__} id={row.id}"
        )


def _planned_attachments(occ: Occurrence) -> dict[str, dict[int, dict]]:
    return {
        "attendance": {
            a.participant_id: {
                "source_rule_id": a.source_rule_id,
                "pickup_required": a.pickup_required,
                "dropoff_required": a.dropoff_required,
            }
            for a in occ.attendance
        },
        "staff_assignments": {
            s.staff_id: {"source_rule_id": s.source_rule_id, "role": s.role}
            for s in occ.staff
        },
        "vehicle_assignments": {
            v.vehicle_id: {"source_rule_id": occ.rule_id}
            for v in occ.vehicles
        },
    }


def _slot_rows(occ: Occurrence) -> list[InstanceSlot]:
    return [
        InstanceSlot(
            seq=s.seq,
            slot_type=s.slot_type,
            start_time=s.start_time,
            end_time=s.end_time,
            route_run_number=s.route_run_number,
            label=s.label,
        )
        for s in occ.slots
    ]


def _slot_key(slots) -> list[tuple]:
    return [(s.seq, s.slot_type, s.start_time, s.end_time, s.route_run_number, s.label)
            for s in slots]


def _covers_window(start: date, end: date | None, window_start: date, window_end: date) -> bool:
    return start < window_end and (end is None or end >= window_start)


class Projector:
    """Reconciles rules against live instances for one window."""

    def __init__(self, *, today: date | None = None, workers: int | None = None,
                 pass_id: str | None = None, actor: str = "system"):
        self.today = today or loom_today()
        self.workers = max(1, workers or int(current_app.config.get("LOOM_PROJECTOR_WORKERS", 4)))
        self.pass_id = pass_id or uuid.uuid4().hex[:12]
        self.actor = actor

    def _log_extra(self, **extra) -> dict:
        return {"pass_id": self.pass_id, **extra}

    # ── Public API ───────────────────────────────────────────────────────

    def project(self, window_start: date, window_end: date, *, rule_ids=None,
                deadline: datetime | None = None, cancel_event=None) -> ProjectionResult:
        """Materialise ``[window_start, window_end)``. Idempotent."""
        if window_end <= window_start:
            raise ValidationError("window_end must be after window_start",
                                  details={"window_start": str(window_start),
                                           "window_end": str(window_end)})
        result = ProjectionResult()
        logger.info("Projection pass %s..%s started", window_start, window_end,
                    extra=self._log_extra())

        failed_rules: set[int] = set()
        specs = self._snapshot_rules(window_start, window_end, rule_ids, result, failed_rules)
        planned = self._expand(specs, window_start, window_end, result, failed_rules)
        existing = self._existing_instances(window_start, window_end, rule_ids)

        for key in sorted(planned, key=lambda k: (k[1], k[0])):
            if self._should_stop(deadline, cancel_event):
                result.cancelled = True
                break
            self._run_unit(planned[key], existing.get(key), result)

        if not result.cancelled:
            orphans = [
                (key, instance_id) for key, instance_id in existing.items()
                if key not in planned and key[0] not in failed_rules
            ]
            for key, instance_id in sorted(orphans, key=lambda o: (o[0][1], o[0][0] or 0)):
                if self._should_stop(deadline, cancel_event):
                    result.cancelled = True
                    break
                self._retire_unit(instance_id, result)

        logger.info(
            "Projection pass finished: created=%d updated=%d skipped=%d deleted=%d "
            "warnings=%d cancelled=%s",
            result.created, result.updated, result.skipped, result.deleted,
            len(result.warnings), result.cancelled,
            extra=self._log_extra(),
        )
        return result

    # ── Snapshot + expansion ─────────────────────────────────────────────

    def _snapshot_rules(self, window_start, window_end, rule_ids, result,
                        failed_rules: set[int]) -> list[RuleSpec]:
        stmt = (
            select(ProgramRule)
            .where(
                ProgramRule.active.is_(True),
                ProgramRule.start_date < window_end,
                or_(ProgramRule.end_date.is_(None), ProgramRule.end_date >= window_start),
            )
            .order_by(ProgramRule.id)
        )
        if rule_ids is not None:
            stmt = stmt.where(ProgramRule.id.in_(list(rule_ids)))
        rules = db.session.execute(stmt).scalars().all()

        usable_participants = set(db.session.execute(
            select(Participant.id).where(Participant.usable())
        ).scalars())
        usable_staff = set(db.session.execute(
            select(Staff.id).where(Staff.usable())
        ).scalars())

        specs = []
        for rule in rules:
            for enrolment in rule.enrolments:
                if (enrolment.participant_id not in usable_participants
                        and _covers_window(enrolment.start_date, enrolment.end_date,
                                           window_start, window_end)):
                    result.warn("Inactive participant left out of projection",
                                kind="participant", ref_id=enrolment.participant_id,
                                rule_id=rule.id, state="inactive")
            for roster in rule.roster:
                if (roster.staff_id not in usable_staff
                        and _covers_window(roster.start_date, roster.end_date,
                                           window_start, window_end)):
                    result.warn("Inactive staff member left out of projection",
                                kind="staff", ref_id=roster.staff_id,
                                rule_id=rule.id, state="inactive")
            try:
                specs.append(rule.to_spec(participant_ok=usable_participants.__contains__,
                                          staff_ok=usable_staff.__contains__))
            except RuleExpansionError as exc:
                self._rule_failed(rule.id, exc, result, failed_rules)
            except (TypeError, ValueError) as exc:
                self._rule_failed(rule.id, RuleExpansionError(rule.id, str(exc)),
                                  result, failed_rules)
        return specs

    def _rule_failed(self, rule_id, exc, result, failed_rules) -> None:
        failed_rules.add(rule_id)
        logger.warning("Skipping rule: %s", exc, extra=self._log_extra(rule_id=rule_id))
        result.warn(str(exc), kind="rule_expansion", rule_id=rule_id)

    def _expand(self, specs, window_start, window_end, result, failed_rules):
        planned: dict[tuple[int, date], Occurrence] = {}
        if not specs:
            return planned

        with ThreadPoolExecutor(max_workers=self.workers,
                                thread_name_prefix=f"loom-{self.pass_id}") as pool:
            futures = {pool.submit(expand_rule, spec, window_start, window_end): spec
                       for spec in specs}
            for future in as_completed(futures):
                spec = futures[future]
                try:
                    occurrences = future.result()
                except RuleExpansionError as exc:
                    self._rule_failed(spec.rule_id, exc, result, failed_rules)
                    continue
                for occ in occurrences:
                    planned[(occ.rule_id, occ.instance_date)] = occ
        return planned

    def _existing_instances(self, window_start, window_end, rule_ids) -> dict:
        stmt = select(LoomInstance.id, LoomInstance.source_rule_id, LoomInstance.instance_date).where(
            LoomInstance.instance_date >= window_start,
            LoomInstance.instance_date < window_end,
        )
        if rule_ids is not None:
            stmt = stmt.where(LoomInstance.source_rule_id.in_(list(rule_ids)))
        return {(row.source_rule_id, row.instance_date): row.id
                for row in db.session.execute(stmt)}

    @staticmethod
    def _should_stop(deadline, cancel_event) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        if deadline is not None:
            if deadline.tzinfo is None:
                deadline = deadline.replace(tzinfo=timezone.utc)
            return _utcnow() >= deadline
        return False

    # ── Reconcile one (rule, date) ───────────────────────────────────────

    def _run_unit(self, occ: Occurrence, instance_id: str | None, result: ProjectionResult) -> None:
        unit = {"rule_id": occ.rule_id, "instance_date": occ.instance_date.isoformat()}
        for _attempt in range(_MAX_ATTEMPTS):
            try:
                outcome, instance_id, warnings = self._reconcile(occ, instance_id)
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                instance = db.session.get(LoomInstance, instance_id) if instance_id else None
                if instance is not None and instance.has_overrides:
                    logger.info("Instance edited concurrently; operator edit kept",
                                extra=self._log_extra(instance_id=instance_id, rule_id=occ.rule_id))
                    result.skipped += 1
                    result.warn("Instance changed by an operator during projection; left as edited",
                                kind="concurrent_edit", instance_id=instance_id, **unit)
                    return
                continue
            except IntegrityError as exc:
                db.session.rollback()
                logger.warning("Instance materialised concurrently: %s", exc.orig,
                               extra=self._log_extra(rule_id=occ.rule_id))
                result.skipped += 1
                result.warn("Instance already materialised by another writer",
                            kind="concurrent_create", **unit)
                return

            setattr(result, outcome, getattr(result, outcome) + 1)
            for warning in warnings:
                result.warnings.append({**warning, "instance_id": instance_id, **unit})
            return

        result.skipped += 1
        result.warn("Instance kept changing during projection; retried and gave up",
                    kind="concurrent_edit", instance_id=instance_id, **unit)

    def _reconcile(self, occ: Occurrence, instance_id: str | None):
        instance = db.session.get(LoomInstance, instance_id) if instance_id else None
        new_hash = occ.projection_hash()

        if instance is None:
            instance = self._create(occ, new_hash)
            outcome = "created"
        elif instance.manually_modified:
            outcome = "skipped"
        elif instance.projection_hash == new_hash:
            recompute_counts(instance)
            outcome = "skipped"
        else:
            previous_hash = instance.projection_hash
            self._update(instance, occ, new_hash)
            write_audit(
                entity_type="loom_instance",
                entity_id=instance.id,
                action_type="loom.instance_update",
                actor=self.actor,
                previous_state={"projection_hash": previous_hash},
                new_state={"projection_hash": new_hash},
            )
            outcome = "updated"

        warnings = store_integrity_warnings(instance)
        if outcome == "created":
            write_audit(
                entity_type="loom_instance",
                entity_id=instance.id,
                action_type="loom.instance_create",
                actor=self.actor,
                new_state={"rule_id": occ.rule_id, "instance_date": occ.instance_date,
                           "projection_hash": new_hash},
            )
        return outcome, instance.id, warnings

    def _create(self, occ: Occurrence, new_hash: str) -> LoomInstance:
        instance = LoomInstance(
            id=str(uuid.uuid4()),
            source_rule_id=occ.rule_id,
            instance_date=occ.instance_date,
            nominal_date=occ.nominal_date,
            start_time=occ.start_time,
            end_time=occ.end_time,
            venue_id=occ.venue_id,
            status="scheduled",
            manually_modified=False,
            override_source="engine",
            projection_hash=new_hash,
            projected_at=_utcnow(),
            integrity_warnings=[],
        )
        instance.slots = _slot_rows(occ)
        db.session.add(instance)
        self._sync_attachments(instance, occ)
        recompute_counts(instance)
        return instance

    def _update(self, instance: LoomInstance, occ: Occurrence, new_hash: str) -> None:
        if instance.manually_modified:
            raise OverrideViolationError(
                f"Projector attempted derived update of manually modified instance {instance.id}"
            )
        for attr in ("instance_date", "nominal_date", "start_time", "end_time", "venue_id"):
            value = getattr(occ, attr)
            if getattr(instance, attr) != value:
                setattr(instance, attr, value)
        if _slot_key(instance.slots) != _slot_key(occ.slots):
            instance.slots = _slot_rows(occ)
        self._sync_attachments(instance, occ)
        recompute_counts(instance)
        instance.projection_hash = new_hash
        instance.projected_at = _utcnow()

    def _sync_attachments(self, instance: LoomInstance, occ: Occurrence) -> None:
        """Create missing, refresh and drop engine-owned attachments. Overridden rows are untouched."""
        planned_by_kind = _planned_attachments(occ)
        for collection_name, model, subject_field, initial_status in _ATTACHMENTS:
            collection = getattr(instance, collection_name)
            planned = planned_by_kind[collection_name]
            current = {getattr(row, subject_field): row for row in collection}

            for subject_id, fields in planned.items():
                row = current.get(subject_id)
                if row is None:
                    collection.append(model(
                        **{subject_field: subject_id},
                        **fields,
                        status=initial_status,
                        is_overridden=False,
                        override_source="engine",
                    ))
                elif not row.is_overridden:
                    _guard_write(row)
                    for key, value in fields.items():
                        if getattr(row, key) != value:
                            setattr(row, key, value)

            for subject_id, row in current.items():
                if subject_id in planned or row.is_overridden or row.override_source != "engine":
                    continue
                _guard_write(row)
                collection.remove(row)

    # ── Retire orphans ───────────────────────────────────────────────────

    def _retire_unit(self, instance_id: str, result: ProjectionResult) -> None:
        instance = db.session.get(LoomInstance, instance_id)
        if instance is None:
            return
        context = {
            "instance_id": instance.id,
            "rule_id": instance.source_rule_id,
            "instance_date": instance.instance_date.isoformat(),
        }
        if instance.instance_date <= self.today:
            result.warn("Unplanned instance kept: it is not in the future",
                        kind="orphan_kept", **context)
            return
        if instance.has_overrides:
            result.warn("Unplanned instance kept: it carries operator overrides",
                        kind="orphan_kept", **context)
            return

        previous = instance.to_dict()
        try:
            db.session.delete(instance)
            write_audit(
                entity_type="loom_instance",
                entity_id=instance_id,
                action_type="loom.instance_delete",
                actor=self.actor,
                previous_state=previous,
            )
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            result.skipped += 1
            result.warn("Unplanned instance changed during projection; left in place",
                        kind="concurrent_edit", **context)
            return
        result.deleted += 1
        logger.debug("Retired unplanned instance", extra=self._log_extra(**context))
