"""
Great Loom
Tests — Conflict Resolver + guarded Rule Store mutations.

Covers:
    1. Staff / vehicle pinned by an operator block a colliding rule change,
       including substitute and shift exceptions
    2. Engine-owned rows and non-overlapping times never block
    3. Non-blocking warnings (participant overlap, manual edits, overridden rows)
    4. Input validation
"""

from datetime import date

import pytest

from greatloom.core.exceptions import ConflictResolverBlock, NotFoundError, ValidationError
from greatloom.models import db
from greatloom.models.audit import AuditLog
from greatloom.models.rules import ProgramRule, RuleException, StaffRosterRule
from greatloom.services import conflict_resolver, override_service, rule_service
from greatloom.services.conflict_resolver import ProposedRuleChange, check_conflict

from conftest import LOOM_TODAY


@pytest.fixture(autouse=True)
def _fixed_today(monkeypatch):
    monkeypatch.setattr(conflict_resolver, "loom_today", lambda: LOOM_TODAY)


@pytest.fixture()
def music(make_rule, make_venue):
    """Tuesdays 11:00–13:00 at Hall B: overlaps Tuesday Craft by an hour."""
    return make_rule("Tuesday Music", start="11:00", end="13:00", venue=make_venue("Hall B"))


def _pin(instance, kind, **entry):
    return override_service.apply_instance_patch(instance.id, {kind: [{"action": "add", **entry}]})


# ═══════════════════════════════════════════════════════════════════════════
#  Blocking
# ═══════════════════════════════════════════════════════════════════════════

class TestBlocking:
    def test_pinned_staff_blocks_roster(self, tuesday_craft, music, make_staff, project, instances):
        lee = make_staff("Lee", "Lead")
        project(rule_ids=[tuesday_craft.id])
        pinned = instances(tuesday_craft.id)[1]
        _pin(pinned, "staff", staff_id=lee.id, role="lead")

        with pytest.raises(ConflictResolverBlock) as exc_info:
            rule_service.add_roster(music.id, {"staff_id": lee.id, "role": "lead"}, actor="ops")

        conflicts = exc_info.value.conflicts
        assert len(conflicts) == 1
        assert conflicts[0]["type"] == "staff_double_booked"
        assert conflicts[0]["instance_id"] == pinned.id
        assert conflicts[0]["staff_id"] == lee.id
        assert StaffRosterRule.query.filter_by(program_rule_id=music.id).count() == 0

        blocked = AuditLog.query.filter_by(action_type="rule.change_blocked").one()
        assert blocked.actor == "ops"
        assert blocked.severity == "warning"
        assert blocked.entity_id == str(music.id)

    def test_pinned_vehicle_blocks_rule_update(self, tuesday_craft, music, make_vehicle,
                                               project, instances):
        bus = make_vehicle("Bus 7")
        project(rule_ids=[tuesday_craft.id])
        _pin(instances(tuesday_craft.id)[0], "vehicles", vehicle_id=bus.id)
        version = music.version

        with pytest.raises(ConflictResolverBlock) as exc_info:
            rule_service.update_rule(music.id, {"default_vehicle_id": bus.id})

        assert exc_info.value.conflicts[0]["type"] == "vehicle_double_booked"
        refreshed = db.session.get(ProgramRule, music.id)
        assert refreshed.default_vehicle_id is None
        assert refreshed.version == version

    def test_new_rule_can_be_blocked(self, tuesday_craft, make_vehicle, project, instances):
        bus = make_vehicle("Bus 7")
        project()
        _pin(instances()[2], "vehicles", vehicle_id=bus.id)

        with pytest.raises(ConflictResolverBlock):
            rule_service.create_rule({
                "name": "Tuesday Swim", "days_of_week": [1], "start_time": "11:30",
                "end_time": "12:30", "start_date": "2025-01-06", "default_vehicle_id": bus.id,
            })
        assert ProgramRule.query.filter_by(name="Tuesday Swim").count() == 0

    def test_substitute_onto_pinned_staff_blocks(self, tuesday_craft, music, make_staff,
                                                 project, instances):
        lee = make_staff("Lee", "Lead")
        project(rule_ids=[music.id])
        _pin(instances(music.id)[0], "staff", staff_id=lee.id, role="lead")

        with pytest.raises(ConflictResolverBlock) as exc_info:
            rule_service.add_exception(tuesday_craft.id, {
                "exception_type": "substitute", "exception_date": "2025-01-07",
                "staff_id": lee.id,
            }, actor="ops")

        conflicts = exc_info.value.conflicts
        assert [c["type"] for c in conflicts] == ["staff_double_booked"]
        assert conflicts[0]["instance_date"] == "2025-01-07"
        assert RuleException.query.count() == 0
        blocked = AuditLog.query.filter_by(action_type="rule.change_blocked").one()
        assert blocked.new_state["kind"] == "exception"

    def test_shift_onto_pinned_slot_blocks(self, music, make_rule, make_staff, roster,
                                           project, instances):
        lee = make_staff("Lee", "Lead")
        garden = make_rule("Tuesday Garden", start="13:00", end="14:00")
        roster(garden, lee)
        project(rule_ids=[music.id])
        _pin(instances(music.id)[0], "staff", staff_id=lee.id)

        with pytest.raises(ConflictResolverBlock):
            rule_service.add_exception(garden.id, {
                "exception_type": "shift", "exception_date": "2025-01-07",
                "start_time": "11:30", "end_time": "12:30",
            })
        assert RuleException.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  Not blocking
# ═══════════════════════════════════════════════════════════════════════════

class TestNotBlocking:
    def test_non_overlapping_time(self, tuesday_craft, make_rule, make_staff, project, instances):
        lee = make_staff("Lee", "Lead")
        afternoon = make_rule("Tuesday Garden", start="13:00", end="14:00")
        project(rule_ids=[tuesday_craft.id])
        _pin(instances(tuesday_craft.id)[0], "staff", staff_id=lee.id)

        roster, report = rule_service.add_roster(afternoon.id, {"staff_id": lee.id})
        assert roster.id is not None
        assert report.conflicts == []

    def test_other_day(self, tuesday_craft, make_rule, make_staff, project, instances):
        lee = make_staff("Lee", "Lead")
        thursday = make_rule("Thursday Craft", days=(3,))
        project(rule_ids=[tuesday_craft.id])
        _pin(instances(tuesday_craft.id)[0], "staff", staff_id=lee.id)

        report = check_conflict(ProposedRuleChange("roster", thursday.id, {"staff_id": lee.id}))
        assert report.blocking is False

    def test_engine_assignment_does_not_block(self, tuesday_craft, music, make_staff, roster,
                                              project):
        lee = make_staff("Lee", "Lead")
        roster(tuesday_craft, lee)
        project()

        row, report = rule_service.add_roster(music.id, {"staff_id": lee.id})
        assert row.program_rule_id == music.id
        assert report.blocking is False

    def test_removed_override_does_not_block(self, tuesday_craft, music, make_staff,
                                             project, instances):
        lee = make_staff("Lee", "Lead")
        project(rule_ids=[tuesday_craft.id])
        target = instances(tuesday_craft.id)[0]
        _pin(target, "staff", staff_id=lee.id)
        override_service.apply_instance_patch(
            target.id, {"staff": [{"staff_id": lee.id, "action": "remove"}]})

        report = check_conflict(ProposedRuleChange("roster", music.id, {"staff_id": lee.id}))
        assert report.blocking is False

    def test_substitute_on_other_date(self, tuesday_craft, music, make_staff, project, instances):
        lee = make_staff("Lee", "Lead")
        project(rule_ids=[music.id])
        _pin(instances(music.id)[0], "staff", staff_id=lee.id)

        row = rule_service.add_exception(tuesday_craft.id, {
            "exception_type": "substitute", "exception_date": "2025-01-14", "staff_id": lee.id,
        })
        assert row.id is not None
        assert RuleException.query.count() == 1

    def test_shift_clear_of_pinned_slot(self, music, make_rule, make_staff, roster, project,
                                        instances):
        lee = make_staff("Lee", "Lead")
        garden = make_rule("Tuesday Garden", start="13:00", end="14:00")
        roster(garden, lee)
        project(rule_ids=[music.id])
        _pin(instances(music.id)[0], "staff", staff_id=lee.id)

        report = check_conflict(ProposedRuleChange("exception", garden.id, {
            "exception_type": "shift", "exception_date": "2025-01-07",
            "start_time": "14:00", "end_time": "15:00",
        }))
        assert report.blocking is False

    def test_cancel_never_blocks(self, tuesday_craft, music, make_staff, roster, project,
                                 instances):
        lee = make_staff("Lee", "Lead")
        roster(tuesday_craft, lee)
        project(rule_ids=[music.id])
        _pin(instances(music.id)[0], "staff", staff_id=lee.id)

        report = check_conflict(ProposedRuleChange("exception", tuesday_craft.id, {
            "exception_type": "cancel", "exception_date": "2025-01-07",
        }))
        assert report.blocking is False

    def test_check_is_read_only(self, tuesday_craft, music, make_staff, project, instances):
        lee = make_staff("Lee", "Lead")
        project(rule_ids=[tuesday_craft.id])
        _pin(instances(tuesday_craft.id)[0], "staff", staff_id=lee.id)
        audits = AuditLog.query.count()

        report = check_conflict(ProposedRuleChange("roster", music.id, {"staff_id": lee.id}))
        assert report.blocking is True
        assert AuditLog.query.count() == audits
        assert StaffRosterRule.query.count() == 0


# ═══════════════════════════════════════════════════════════════════════════
#  Warnings
# ═══════════════════════════════════════════════════════════════════════════

class TestWarnings:
    def test_participant_overlap_is_a_warning(self, tuesday_craft, music, make_participant,
                                              project, instances):
        ada = make_participant()
        project(rule_ids=[tuesday_craft.id])
        _pin(instances(tuesday_craft.id)[0], "attendance", participant_id=ada.id)

        enrolment, report = rule_service.add_enrolment(music.id, {"participant_id": ada.id})
        assert enrolment.id is not None
        assert report.blocking is False
        assert [w["type"] for w in report.warnings] == ["participant_overlap"]

    def test_manually_modified_instances_are_reported(self, tuesday_craft, make_venue,
                                                      project, instances):
        hall_c = make_venue("Hall C")
        project()
        edited = instances()[3]
        override_service.apply_instance_patch(edited.id, {"notes": "bring aprons"})

        report = check_conflict(
            ProposedRuleChange("program_rule", tuesday_craft.id, {"venue_id": hall_c.id}))
        manual = [w for w in report.warnings if w["type"] == "manually_modified"]
        assert [w["instance_id"] for w in manual] == [edited.id]
        assert report.blocking is False

    def test_overridden_rows_are_reported(self, tuesday_craft, make_venue, make_staff, roster,
                                          project, instances):
        hall_c = make_venue("Hall C")
        lee = make_staff()
        roster(tuesday_craft, lee)
        project()
        target = instances()[0]
        override_service.apply_instance_patch(
            target.id, {"staff": [{"staff_id": lee.id, "status": "sick"}]})

        report = check_conflict(
            ProposedRuleChange("program_rule", tuesday_craft.id, {"venue_id": hall_c.id}))
        rows = [w for w in report.warnings if w["type"] == "overridden_rows"]
        assert len(rows) == 1
        assert rows[0]["instance_id"] == target.id
        assert rows[0]["rows"][0]["type"] == "StaffAssignment"

    def test_unchanged_instances_are_not_reported(self, tuesday_craft, project):
        project()
        report = check_conflict(
            ProposedRuleChange("program_rule", tuesday_craft.id, {"name": "Renamed Craft"}))
        assert report.conflicts == []
        assert report.range_start == LOOM_TODAY
        assert report.range_end == date(2025, 2, 17)


# ═══════════════════════════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidation:
    def test_unknown_kind(self, tuesday_craft):
        with pytest.raises(ValidationError):
            check_conflict(ProposedRuleChange("venue", tuesday_craft.id, {}))

    def test_missing_rule(self, app):
        with pytest.raises(NotFoundError):
            check_conflict(ProposedRuleChange("program_rule", 9999, {"name": "x"}))

    def test_roster_needs_staff(self, tuesday_craft):
        with pytest.raises(ValidationError):
            check_conflict(ProposedRuleChange("roster", tuesday_craft.id, {}))

    def test_new_roster_needs_rule(self, app):
        with pytest.raises(ValidationError):
            check_conflict(ProposedRuleChange("roster", None, {"staff_id": 1}))

    def test_exception_payload_is_validated(self, tuesday_craft):
        with pytest.raises(ValidationError):
            check_conflict(ProposedRuleChange("exception", tuesday_craft.id,
                                              {"exception_type": "holiday",
                                               "exception_date": "2025-01-07"}))

    def test_invalid_proposal(self, tuesday_craft):
        with pytest.raises(ValidationError):
            check_conflict(ProposedRuleChange("program_rule", tuesday_craft.id,
                                              {"end_time": "09:00"}))
