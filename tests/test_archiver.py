"""
Great Loom
Tests — Archiver + History Ribbon.

Covers:
    1. Archive of the 01-07 instance (venue snapshot, live row removed)
    2. Archive idempotence
    3. Snapshot contents (names, hours, completion status)
    4. Ribbon immutability (ORM listeners)
    5. Artifact pinning
    6. Per-instance failure isolation
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest

from greatloom.core.exceptions import HistoryImmutableError, NotFoundError, ValidationError
from greatloom.models import db
from greatloom.models.audit import AuditLog
from greatloom.models.history import HistoryShift, PinnedArtifact
from greatloom.models.loom import LoomInstance
from greatloom.services import history_service, override_service
from greatloom.services.archiver import Archiver, completion_status

from conftest import TUESDAYS

AS_OF = datetime(2025, 1, 8, 0, 0, tzinfo=timezone.utc)


def _archive(as_of=AS_OF):
    return Archiver(actor="test").archive_completed(as_of)


class TestArchiveCompleted:
    def test_archives_the_finished_instance(self, tuesday_craft, project, instances):
        project()
        first_id = instances()[0].id

        result = _archive()

        assert result.archived_count == 1
        assert result.errors == []
        shift = HistoryShift.query.one()
        assert shift.original_instance_id == first_id
        assert shift.venue_name == "Hall A"
        assert shift.venue_address == "1 Loom Street"
        assert shift.program_name == "Tuesday Craft"
        assert shift.instance_date == TUESDAYS[0]
        assert shift.archived is True
        assert shift.completion_status == "completed"
        assert db.session.get(LoomInstance, first_id) is None
        assert len(instances()) == 5

    def test_rerun_adds_nothing(self, tuesday_craft, project):
        project()
        _archive()
        again = _archive()
        assert again.archived_count == 0
        assert HistoryShift.query.count() == 1

    def test_instance_still_running_is_left(self, tuesday_craft, project, instances):
        project()
        result = _archive(datetime(2025, 1, 7, 11, 0, tzinfo=timezone.utc))
        assert result.archived_count == 0
        assert len(instances()) == 6

    def test_naive_as_of_uses_loom_timezone(self, tuesday_craft, project):
        project()
        assert _archive(datetime(2025, 1, 7, 12, 30)).archived_count == 1

    def test_on_hold_is_not_archived(self, tuesday_craft, project, instances):
        project()
        override_service.apply_instance_patch(instances()[0].id, {"status": "on_hold"})
        assert _archive().archived_count == 0

    def test_archive_is_audited(self, tuesday_craft, project):
        project()
        result = _archive()
        log = AuditLog.query.filter_by(action_type="history.archive").one()
        assert log.entity_id == result.shift_ids[0]
        assert log.actor == "test"

    def test_retired_venue_keeps_its_name(self, tuesday_craft, hall_a, project):
        project()
        hall_a.soft_delete()
        db.session.commit()
        _archive()
        assert HistoryShift.query.one().venue_name == "Hall A"

    def test_leftover_live_row_is_cleared(self, tuesday_craft, project, instances):
        project()
        first = instances()[0]
        db.session.add(HistoryShift(
            original_instance_id=first.id, source_rule_id=tuesday_craft.id,
            program_name="Tuesday Craft", instance_date=first.instance_date,
            start_time=first.start_time, end_time=first.end_time,
            venue_name="Hall A", completion_status="completed",
        ))
        db.session.commit()

        result = _archive()
        assert result.archived_count == 0
        assert db.session.get(LoomInstance, first.id) is None
        assert HistoryShift.query.count() == 1


class TestSnapshot:
    def test_attachments_are_denormalised(self, tuesday_craft, make_participant, make_staff,
                                          make_vehicle, enrol, roster, project, instances):
        bus = make_vehicle("Bus 7")
        driver = make_staff("Dee", "Driver")
        tuesday_craft.default_vehicle_id = bus.id
        db.session.commit()
        ada = make_participant("Ada", "Lovelace")
        bo = make_participant("Bo", "Diddley")
        enrol(tuesday_craft, ada)
        enrol(tuesday_craft, bo)
        roster(tuesday_craft, make_staff("Lee", "Lead"))
        project()
        override_service.apply_instance_patch(instances()[0].id, {
            "attendance": [{"participant_id": bo.id, "status": "no_show"}],
            "vehicles": [{"vehicle_id": bus.id, "driver_staff_id": driver.id}],
        })

        _archive()
        shift = HistoryShift.query.one()
        assert shift.completion_status == "partial"
        assert shift.participant_count == 1
        assert shift.staff_count == 1
        assert shift.vehicle_count == 1

        people = {p.participant_name: p for p in shift.participants}
        assert people["Ada Lovelace"].pickup_provided is True
        assert people["Bo Diddley"].attendance_status == "no_show"
        assert people["Bo Diddley"].was_overridden is True
        assert people["Bo Diddley"].dropoff_provided is False
        assert shift.staff[0].staff_name == "Lee Lead"
        assert shift.staff[0].hours_worked == Decimal("2.00")
        assert shift.vehicles[0].vehicle_label == "Bus 7"
        assert shift.vehicles[0].driver_name == "Dee Driver"

    def test_cancelled_instance_is_archived_as_cancelled(self, tuesday_craft, project, instances):
        project()
        override_service.apply_instance_patch(instances()[0].id, {"status": "cancelled"})
        _archive()
        shift = HistoryShift.query.one()
        assert shift.completion_status == "cancelled"
        assert shift.was_manually_modified is True

    def test_completion_status_without_attendance(self, tuesday_craft, project, instances):
        project()
        assert completion_status(instances()[0]) == "completed"


class TestImmutability:
    @pytest.fixture()
    def shift(self, tuesday_craft, project):
        project()
        _archive()
        return HistoryShift.query.one()

    def test_update_rejected(self, shift):
        shift.venue_name = "Hall Z"
        with pytest.raises(HistoryImmutableError):
            db.session.flush()
        db.session.rollback()
        assert HistoryShift.query.one().venue_name == "Hall A"

    def test_delete_rejected(self, shift):
        db.session.delete(shift)
        with pytest.raises(HistoryImmutableError):
            db.session.flush()
        db.session.rollback()
        assert HistoryShift.query.count() == 1

    def test_artifact_update_rejected(self, shift):
        artifact = history_service.pin_artifact(shift.id, {"title": "Great session"})
        artifact.title = "Edited"
        with pytest.raises(HistoryImmutableError):
            db.session.flush()
        db.session.rollback()

    def test_artifact_on_unarchived_shift_rejected(self, app):
        unarchived = HistoryShift(
            original_instance_id="x", program_name="P", instance_date=date(2025, 1, 7),
            start_time=time(10), end_time=time(12), venue_name="V",
            completion_status="completed", archived=False,
        )
        db.session.add(unarchived)
        db.session.commit()
        db.session.add(PinnedArtifact(history_shift_id=unarchived.id, artifact_type="note",
                                      title="t", created_by="x"))
        with pytest.raises(HistoryImmutableError):
            db.session.flush()
        db.session.rollback()


class TestPinning:
    @pytest.fixture()
    def shift(self, tuesday_craft, project):
        project()
        _archive()
        return HistoryShift.query.one()

    def test_pin_incident(self, shift):
        artifact = history_service.pin_artifact(
            shift.id,
            {"artifact_type": "incident", "title": "Minor fall", "content": "Ice pack applied",
             "severity": "low"},
            actor="coordinator",
        )
        assert artifact.created_by == "coordinator"
        assert [a.title for a in history_service.get_shift(shift.id).artifacts] == ["Minor fall"]
        assert AuditLog.query.filter_by(action_type="history.artifact_pin").count() == 1

    @pytest.mark.parametrize("payload", [
        {"artifact_type": "spot_audit", "title": "x"},
        {"artifact_type": "memo", "title": "x"},
        {"title": "  "},
        {"title": "x", "severity": "apocalyptic"},
    ])
    def test_invalid_artifacts(self, shift, payload):
        with pytest.raises(ValidationError):
            history_service.pin_artifact(shift.id, payload)

    def test_unknown_shift(self, app):
        with pytest.raises(NotFoundError):
            history_service.pin_artifact("missing", {"title": "x"})

    def test_history_query_filters(self, shift):
        assert history_service.history_query(date(2025, 1, 1), date(2025, 1, 8)).count() == 1
        assert history_service.history_query(date(2025, 1, 8), date(2025, 2, 1)).count() == 0
        assert history_service.history_query(completion_status="partial").count() == 0
        assert history_service.find_by_instance(shift.original_instance_id).id == shift.id


class TestFailureIsolation:
    def test_one_failure_does_not_stop_siblings(self, tuesday_craft, make_rule, hall_a,
                                                project, monkeypatch):
        make_rule("Tuesday Music", start="13:00", end="14:00", venue=hall_a)
        project()

        original = Archiver._snapshot
        calls = []

        def flaky(self, instance):
            calls.append(instance.id)
            if len(calls) == 1:
                raise RuntimeError("disk full")
            return original(self, instance)

        monkeypatch.setattr(Archiver, "_snapshot", flaky)
        result = _archive()

        assert result.archived_count == 1
        assert len(result.errors) == 1
        assert result.errors[0]["instance_id"] == calls[0]
        assert "disk full" in result.errors[0]["error"]
        assert db.session.get(LoomInstance, calls[0]) is not None

        monkeypatch.setattr(Archiver, "_snapshot", original)
        assert _archive().archived_count == 1
