"""
Great Loom
Tests — HTTP API (rules, loom, history, audit, health).

Covers:
    1. Rule Store endpoints incl. conflict dry-run and 409 on blocking changes
    2. roll-window / archive passes
    3. Instance list, detail (slots + cards), PATCH override, DELETE cancel
    4. Window config
    5. History Ribbon reads + artifact pinning
    6. Request guards, lock busy, audit filters, health probes
"""

import pytest

from greatloom.services import conflict_resolver
from greatloom.services.loom_lock import acquire_lock

from conftest import LOOM_TODAY

ROLL = {"today": "2025-01-06", "archive": False}
SIX_WEEKS = "2025-01-06..2025-02-17"
AS_OF = "2025-01-08T00:00:00+00:00"


@pytest.fixture(autouse=True)
def _fixed_today(monkeypatch):
    monkeypatch.setattr(conflict_resolver, "loom_today", lambda: LOOM_TODAY)


def _rule_payload(venue_id, **overrides):
    payload = {
        "name": "Tuesday Craft",
        "days_of_week": [1],
        "start_time": "10:00",
        "end_time": "12:00",
        "start_date": "2025-01-06",
        "venue_id": venue_id,
    }
    payload.update(overrides)
    return payload


def _roll(client, **body):
    res = client.post("/api/v1/loom/roll-window", json={**ROLL, **body})
    assert res.status_code == 200, res.get_json()
    return res.get_json()


def _instances(client):
    res = client.get(f"/api/v1/loom/instances?range={SIX_WEEKS}")
    assert res.status_code == 200
    return res.get_json()["items"]


# ═══════════════════════════════════════════════════════════════════════════
#  Rules
# ═══════════════════════════════════════════════════════════════════════════

class TestRulesApi:
    def test_create_and_get(self, client, hall_a):
        res = client.post("/api/v1/rules", json=_rule_payload(hall_a.id, slots=[
            {"slot_type": "pickup", "start_time": "09:30", "end_time": "10:00", "route_run_number": 1},
            {"slot_type": "activity", "start_time": "10:00", "end_time": "12:00"},
        ]))
        assert res.status_code == 201
        data = res.get_json()
        assert data["name"] == "Tuesday Craft"
        assert data["conflict_warnings"] == []
        assert [s["slot_type"] for s in data["slots"]] == ["pickup", "activity"]

        res = client.get(f"/api/v1/rules/{data['id']}")
        assert res.status_code == 200
        assert res.get_json()["days_of_week"] == [1]

    def test_create_missing_fields(self, client):
        res = client.post("/api/v1/rules", json={"name": "Half a rule"})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
        assert "start_time" in body["details"]

    def test_create_unknown_venue(self, client):
        res = client.post("/api/v1/rules", json=_rule_payload(404))
        assert res.status_code == 422

    def test_list_filters_active(self, client, make_rule):
        make_rule("On")
        make_rule("Off", active=False)
        res = client.get("/api/v1/rules?active=true")
        assert [r["name"] for r in res.get_json()["items"]] == ["On"]

    def test_get_missing_rule(self, client):
        res = client.get("/api/v1/rules/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_update_bumps_version(self, client, tuesday_craft):
        res = client.put(f"/api/v1/rules/{tuesday_craft.id}",
                         json={"end_time": "12:30", "version": tuesday_craft.version})
        assert res.status_code == 200
        data = res.get_json()
        assert data["end_time"] == "12:30"
        assert data["version"] == 2

    def test_update_stale_version(self, client, tuesday_craft):
        res = client.put(f"/api/v1/rules/{tuesday_craft.id}", json={"name": "x", "version": 99})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"

    def test_exception_then_duplicate(self, client, tuesday_craft):
        body = {"exception_type": "cancel", "exception_date": "2025-01-14", "reason": "holiday"}
        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/exceptions", json=body)
        assert res.status_code == 201
        assert res.get_json()["exception_type"] == "cancel"

        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/exceptions", json=body)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_exception_with_stray_fields(self, client, tuesday_craft):
        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/exceptions",
                          json={"exception_type": "cancel", "exception_date": "2025-01-14",
                                "new_date": "2025-01-15"})
        assert res.status_code == 422

    def test_enrolment_and_roster(self, client, tuesday_craft, make_participant, make_staff):
        ada = make_participant()
        sam = make_staff()
        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/enrolments",
                          json={"participant_id": ada.id, "pickup_required": False})
        assert res.status_code == 201
        assert res.get_json()["pickup_required"] is False

        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/roster",
                          json={"staff_id": sam.id, "role": "lead"})
        assert res.status_code == 201
        assert res.get_json()["conflict_warnings"] == []

    def test_roster_bad_role(self, client, tuesday_craft, make_staff):
        res = client.post(f"/api/v1/rules/{tuesday_craft.id}/roster",
                          json={"staff_id": make_staff().id, "role": "captain"})
        assert res.status_code == 422

    def test_blocking_change_answers_409(self, client, tuesday_craft, make_rule, make_staff):
        lee = make_staff("Lee", "Lead")
        music = make_rule("Tuesday Music", start="11:00", end="13:00")
        _roll(client)
        first = _instances(client)[0]
        client.patch(f"/api/v1/loom/instances/{first['id']}",
                     json={"staff": [{"staff_id": lee.id, "action": "add"}]})

        res = client.post(f"/api/v1/rules/{music.id}/roster", json={"staff_id": lee.id})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "LOOM_CONFLICT_BLOCK"
        assert body["details"]["conflicts"][0]["type"] == "staff_double_booked"

    def test_check_conflict_dry_run(self, client, tuesday_craft, make_staff):
        res = client.post("/api/v1/rules/check-conflict", json={
            "kind": "roster", "rule_id": tuesday_craft.id, "payload": {"staff_id": make_staff().id},
        })
        assert res.status_code == 200
        data = res.get_json()
        assert data["blocking"] is False
        assert data["range_start"] == "2025-01-06"

    def test_check_conflict_bad_kind(self, client):
        res = client.post("/api/v1/rules/check-conflict", json={"kind": "venue", "payload": {}})
        assert res.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
#  Loom: passes + instances
# ═══════════════════════════════════════════════════════════════════════════

class TestLoomApi:
    def test_roll_window(self, client, tuesday_craft):
        data = _roll(client)
        assert data["window"] == {"start": "2025-01-06", "end": "2025-02-17", "weeks": 6}
        assert data["projection"]["created"] == 6
        assert data["archive"] is None

    def test_roll_archive_flag_must_be_bool(self, client):
        res = client.post("/api/v1/loom/roll-window", json={"archive": "yes"})
        assert res.status_code == 422

    def test_roll_bad_today(self, client):
        res = client.post("/api/v1/loom/roll-window", json={"today": "06/01/2025"})
        assert res.status_code == 422

    def test_roll_with_archive(self, client, tuesday_craft):
        data = _roll(client, archive=True, as_of=AS_OF)
        assert data["archive"]["archived_count"] == 1
        assert data["quality_audit"]["examined"] == 1
        assert len(_instances(client)) == 5

    def test_list_requires_range(self, client):
        assert client.get("/api/v1/loom/instances").status_code == 422
        assert client.get("/api/v1/loom/instances?range=2025-02-01..2025-01-01").status_code == 422

    def test_list_filters(self, client, tuesday_craft, make_rule):
        make_rule("Thursday Music", days=(3,))
        _roll(client)
        res = client.get(f"/api/v1/loom/instances?range={SIX_WEEKS}&rule_id={tuesday_craft.id}")
        data = res.get_json()
        assert data["total"] == 6
        assert data["range"] == {"start": "2025-01-06", "end": "2025-02-17"}
        assert {i["rule_name"] for i in data["items"]} == {"Tuesday Craft"}

        res = client.get(f"/api/v1/loom/instances?range={SIX_WEEKS}&status=nope")
        assert res.status_code == 422

    def test_detail_has_slots_and_cards(self, client, tuesday_craft):
        _roll(client)
        first = _instances(client)[0]
        res = client.get(f"/api/v1/loom/instances/{first['id']}")
        data = res.get_json()
        assert data["venue_name"] == "Hall A"
        assert data["slots"][0]["slot_type"] == "activity"
        assert data["cards"][0]["display_subtitle"] == "Tuesday Craft"
        assert data["cards"][0]["display_time_start"] == "2025-01-07T10:00:00"

    def test_patch_override(self, client, tuesday_craft, make_venue):
        hall_b = make_venue("Hall B")
        _roll(client)
        target = _instances(client)[1]

        res = client.patch(f"/api/v1/loom/instances/{target['id']}",
                           json={"venue_id": hall_b.id, "version": target["version"],
                                 "override_reason": "Hall A flooded"},
                           headers={"X-Actor": "dispatcher"})
        assert res.status_code == 200
        data = res.get_json()
        assert data["venue_name"] == "Hall B"
        assert data["manually_modified"] is True

        res = client.patch(f"/api/v1/loom/instances/{target['id']}",
                           json={"notes": "late", "version": target["version"]})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"

        res = client.get("/api/v1/audit?action_type=loom.instance_override")
        assert res.get_json()["audit_logs"][0]["actor"] == "dispatcher"

    def test_patch_empty(self, client, tuesday_craft):
        _roll(client)
        target = _instances(client)[0]
        res = client.patch(f"/api/v1/loom/instances/{target['id']}", json={})
        assert res.status_code == 422

    def test_delete_cancels(self, client, tuesday_craft):
        _roll(client)
        target = _instances(client)[2]
        res = client.delete(f"/api/v1/loom/instances/{target['id']}", json={"reason": "closure"})
        assert res.status_code == 200
        assert res.get_json()["deleted"] == target["id"]

        data = _roll(client)
        assert data["projection"]["created"] == 0
        assert len(_instances(client)) == 5

    def test_delete_unknown(self, client):
        res = client.delete("/api/v1/loom/instances/nope")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_delete_archived(self, client, tuesday_craft):
        _roll(client)
        first = _instances(client)[0]
        res = client.post("/api/v1/loom/archive", json={"as_of": AS_OF})
        assert res.get_json()["archive"]["archived_count"] == 1

        res = client.delete(f"/api/v1/loom/instances/{first['id']}")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

        res = client.get(f"/api/v1/loom/instances/{first['id']}")
        assert res.status_code == 409

    def test_lock_busy(self, client, tuesday_craft):
        acquire_lock(holder="another-pass")
        res = client.post("/api/v1/loom/roll-window", json=ROLL)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "LOOM_LOCK_BUSY"
        assert body["details"]["holder"] == "another-pass"

    def test_non_json_body_rejected(self, client):
        res = client.post("/api/v1/loom/roll-window", data="today=2025-01-06",
                          content_type="text/plain")
        assert res.status_code == 415
        assert "error" in res.get_json()


# ═══════════════════════════════════════════════════════════════════════════
#  Window config
# ═══════════════════════════════════════════════════════════════════════════

class TestWindowConfigApi:
    def test_get_default(self, client):
        res = client.get("/api/v1/loom/window-config")
        assert res.get_json()["weeks"] == 6

    def test_patch(self, client):
        res = client.patch("/api/v1/loom/window-config", json={"weeks": 4},
                           headers={"X-Actor": "ops"})
        assert res.status_code == 200
        assert res.get_json()["updated_by"] == "ops"
        assert client.get("/api/v1/loom/window-config").get_json()["weeks"] == 4

    @pytest.mark.parametrize("body", [{"weeks": 20}, {"weeks": 0}, {"weeks": "many"}, {}])
    def test_patch_invalid(self, client, body):
        res = client.patch("/api/v1/loom/window-config", json=body)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_CONSTRAINT"


# ═══════════════════════════════════════════════════════════════════════════
#  History Ribbon
# ═══════════════════════════════════════════════════════════════════════════

class TestHistoryApi:
    @pytest.fixture()
    def shift_id(self, client, tuesday_craft):
        _roll(client)
        client.post("/api/v1/loom/archive", json={"as_of": AS_OF})
        items = client.get("/api/v1/loom/history").get_json()["items"]
        assert len(items) == 1
        return items[0]["id"]

    def test_list_and_detail(self, client, shift_id):
        res = client.get("/api/v1/loom/history?range=2025-01-01..2025-02-01")
        assert res.get_json()["total"] == 1

        res = client.get(f"/api/v1/loom/history/{shift_id}")
        data = res.get_json()
        assert data["venue_name"] == "Hall A"
        assert data["instance_date"] == "2025-01-07"
        assert data["completion_status"] == "completed"
        assert data["participants"] == []

    def test_pin_artifact(self, client, shift_id):
        res = client.post(f"/api/v1/loom/history/{shift_id}/artifacts",
                          json={"artifact_type": "incident", "title": "Minor fall", "severity": "low"},
                          headers={"X-Actor": "coordinator"})
        assert res.status_code == 201
        assert res.get_json()["created_by"] == "coordinator"

        detail = client.get(f"/api/v1/loom/history/{shift_id}").get_json()
        assert "Minor fall" in [a["title"] for a in detail["artifacts"]]

    def test_spot_audit_reserved(self, client, shift_id):
        res = client.post(f"/api/v1/loom/history/{shift_id}/artifacts",
                          json={"artifact_type": "spot_audit", "title": "fake"})
        assert res.status_code == 422

    def test_missing_shift(self, client):
        assert client.get("/api/v1/loom/history/none").status_code == 404
        res = client.post("/api/v1/loom/history/none/artifacts", json={"title": "x"})
        assert res.status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
#  Audit + health
# ═══════════════════════════════════════════════════════════════════════════

class TestAuditApi:
    def test_prefix_and_actor_filters(self, client, tuesday_craft):
        client.post("/api/v1/loom/roll-window", json=ROLL, headers={"X-Actor": "nightly"})
        res = client.get("/api/v1/audit?action_type=loom.&actor=nightly&per_page=2")
        data = res.get_json()
        assert data["total"] == 6
        assert data["pages"] == 3
        assert len(data["audit_logs"]) == 2

    def test_single_and_missing(self, client, tuesday_craft):
        _roll(client)
        log_id = client.get("/api/v1/audit").get_json()["audit_logs"][0]["id"]
        assert client.get(f"/api/v1/audit/{log_id}").status_code == 200
        assert client.get("/api/v1/audit/999999").status_code == 404


class TestHealthApi:
    def test_health(self, client):
        assert client.get("/api/v1/health").get_json() == {"status": "ok", "app": "Great Loom"}
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["loom_lock"] == {"status": "free"}
        assert data["checks"]["window"]["weeks"] == 6

    def test_live_reports_held_lock(self, client):
        acquire_lock(holder="pass-x")
        lock = client.get("/api/v1/health/live").get_json()["checks"]["loom_lock"]
        assert lock["status"] == "held"
        assert lock["holder"] == "pass-x"
