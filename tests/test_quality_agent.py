"""
Great Loom
Tests — Quality Agent (seeded spot audits) + notification webhook.
"""

import random
from datetime import date, time, timedelta

import pytest
import requests

from greatloom.core.exceptions import ValidationError
from greatloom.models import db
from greatloom.models.audit import AuditLog
from greatloom.models.history import HistoryShift, PinnedArtifact
from greatloom.models.notification import Notification
from greatloom.services.quality_agent import AGENT_NAME, QualityAgent, select_for_audit


class _ScriptedRng:
    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def random(self):
        self.calls += 1
        return self.values.pop(0)


@pytest.fixture()
def shifts():
    """Twenty archived shifts, one per day from 2025-01-01."""
    rows = []
    for offset in range(20):
        rows.append(HistoryShift(
            original_instance_id=f"instance-{offset:02d}",
            program_name="Tuesday Craft",
            instance_date=date(2025, 1, 1) + timedelta(days=offset),
            start_time=time(10), end_time=time(12),
            venue_name="Hall A", completion_status="completed",
        ))
    db.session.add_all(rows)
    db.session.commit()
    return [r.id for r in rows]


class TestSelectForAudit:
    def test_one_draw_per_candidate(self):
        rng = _ScriptedRng([0.05, 0.5, 0.09, 0.1])
        assert select_for_audit(["a", "b", "c", "d"], 0.1, rng) == ["a", "c"]
        assert rng.calls == 4

    def test_zero_and_one(self):
        assert select_for_audit([1, 2, 3], 0.0, random.Random(1)) == []
        assert select_for_audit([1, 2, 3], 1.0, random.Random(1)) == [1, 2, 3]

    @pytest.mark.parametrize("probability", [-0.1, 1.5])
    def test_probability_out_of_range(self, probability):
        with pytest.raises(ValidationError):
            select_for_audit([1], probability, random.Random(1))


class TestQualityAgent:
    def test_seeded_selection_is_reproducible(self, shifts):
        expected_rng = random.Random(1234)
        expected = [sid for sid in shifts if expected_rng.random() < 0.1]

        result = QualityAgent(probability=0.1, seed=1234).run(shifts)

        assert result.examined == 20
        assert result.selected == expected
        assert len(result.artifact_ids) == len(expected)
        assert PinnedArtifact.query.count() == len(expected)
        assert all(a.created_by == AGENT_NAME and a.artifact_type == "spot_audit"
                   for a in PinnedArtifact.query.all())
        assert AuditLog.query.filter_by(action_type="history.spot_audit").count() == len(expected)

    def test_seed_1234_picks_the_third_shift(self, shifts):
        # random.Random(1234) opens with 0.966, 0.441, 0.0075, 0.911, 0.939
        result = QualityAgent(probability=0.1, seed=1234, notify=False).run(shifts[:5])
        assert result.selected == [shifts[2]]
        assert PinnedArtifact.query.count() == 1

    def test_same_seed_same_choice(self, shifts):
        first = QualityAgent(probability=0.3, seed=7, notify=False).run(shifts)
        second = QualityAgent(probability=0.3, seed=7, notify=False).run(shifts)
        assert first.selected == second.selected

    def test_seed_from_config(self, app, shifts):
        result = QualityAgent(probability=0.5, notify=False).run(shifts)
        assert result.seed == int(app.config["LOOM_QUALITY_AUDIT_SEED"])
        expected_rng = random.Random(result.seed)
        assert result.selected == [sid for sid in shifts if expected_rng.random() < 0.5]

    def test_selected_shifts_raise_notifications(self, shifts):
        result = QualityAgent(probability=1.0, seed=1).run(shifts[:3])
        notes = Notification.query.filter_by(category="quality").all()
        assert sorted(n.entity_id for n in notes) == sorted(result.selected)

    def test_notify_off(self, shifts):
        QualityAgent(probability=1.0, seed=1, notify=False).run(shifts[:3])
        assert Notification.query.count() == 0

    def test_ribbon_rows_untouched(self, shifts):
        before = [s.to_dict() for s in HistoryShift.query.order_by(HistoryShift.instance_date)]
        QualityAgent(probability=1.0, seed=1, notify=False).run(shifts)
        after = [s.to_dict() for s in HistoryShift.query.order_by(HistoryShift.instance_date)]
        assert before == after

    def test_unknown_ids_are_skipped(self, shifts):
        result = QualityAgent(probability=1.0, seed=1, notify=False).run(["missing", shifts[0]])
        assert result.examined == 2
        assert result.selected == [shifts[0]]

    def test_empty_run(self, app):
        result = QualityAgent(probability=1.0, seed=1).run([])
        assert result.examined == 0
        assert result.selected == []


class TestWebhook:
    def test_forwards_to_webhook(self, app, shifts, monkeypatch):
        posted = []

        class _Response:
            def raise_for_status(self):
                return None

        def fake_post(url, json=None, timeout=None):
            posted.append((url, json, timeout))
            return _Response()

        monkeypatch.setitem(app.config, "LOOM_NOTIFY_WEBHOOK_URL", "https://hooks.example.test/loom")
        monkeypatch.setattr("greatloom.services.notification.requests.post", fake_post)

        QualityAgent(probability=1.0, seed=1).run(shifts[:1])

        assert len(posted) == 1
        url, body, timeout = posted[0]
        assert url == "https://hooks.example.test/loom"
        assert body["category"] == "quality"
        assert body["entity_id"] == shifts[0]
        assert timeout > 0

    def test_webhook_failure_keeps_notification(self, app, shifts, monkeypatch):
        def failing_post(url, json=None, timeout=None):
            raise requests.ConnectionError("connection refused")

        monkeypatch.setitem(app.config, "LOOM_NOTIFY_WEBHOOK_URL", "https://hooks.example.test/loom")
        monkeypatch.setattr("greatloom.services.notification.requests.post", failing_post)

        result = QualityAgent(probability=1.0, seed=1).run(shifts[:2])

        assert len(result.selected) == 2
        assert Notification.query.filter_by(category="quality").count() == 2
