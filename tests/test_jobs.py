"""
Great Loom
Tests — Scheduler jobs, job API and CLI commands.
"""

import pytest

from greatloom.models.history import HistoryShift
from greatloom.models.scheduling import ScheduledJob
from greatloom.services.loom_lock import acquire_lock
from greatloom.services.scheduler_service import (
    SchedulerService,
    _job_registry,
    get_registered_jobs,
    register_job,
)

from conftest import TUESDAYS


@pytest.fixture()
def seeded(app):
    return SchedulerService.ensure_jobs_registered()


@pytest.fixture()
def failing_job():
    @register_job("always_fails")
    def _boom(app):
        raise RuntimeError("kaboom")

    yield "always_fails"
    _job_registry.pop("always_fails", None)


class TestRegistry:
    def test_loom_jobs_are_registered(self, app):
        assert {"loom_roll", "loom_archive"} <= set(get_registered_jobs())

    def test_ensure_jobs_registered(self, seeded):
        assert {j.job_name for j in seeded} == {"loom_roll", "loom_archive"}
        roll = ScheduledJob.query.filter_by(job_name="loom_roll").one()
        assert roll.schedule_config["description"] == "Daily at 01:00"
        assert roll.description.startswith("Project the rolling window")
        assert SchedulerService.ensure_jobs_registered() == []


class TestRunJob:
    def test_archive_job_records_run(self, seeded):
        result = SchedulerService.run_job("loom_archive")
        assert result["status"] == "success"
        assert result["result"]["archive"]["archived_count"] == 0

        record = ScheduledJob.query.filter_by(job_name="loom_archive").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_unknown_job(self, app):
        result = SchedulerService.run_job("no_such_job")
        assert result["status"] == "error"

    def test_disabled_job_is_skipped(self, seeded):
        SchedulerService.toggle_job("loom_archive", False)
        result = SchedulerService.run_job("loom_archive")
        assert result["status"] == "skipped"
        assert ScheduledJob.query.filter_by(job_name="loom_archive").one().run_count == 0

    def test_lock_busy_is_skipped(self, seeded):
        acquire_lock(holder="another-pass")
        result = SchedulerService.run_job("loom_roll")
        assert result["status"] == "skipped"
        assert "another-pass" in result["error"]
        record = ScheduledJob.query.filter_by(job_name="loom_roll").one()
        assert record.last_run_status == "skipped"

    def test_failure_is_recorded(self, app, failing_job):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(failing_job)
        assert result["status"] == "failed"
        assert result["error"] == "kaboom"
        record = ScheduledJob.query.filter_by(job_name=failing_job).one()
        assert record.error_count == 1
        assert record.last_error == "kaboom"

    def test_toggle_unknown(self, app):
        assert SchedulerService.toggle_job("nope", True) is None


class TestJobsApi:
    def test_list(self, client, seeded):
        jobs = client.get("/api/v1/loom/jobs").get_json()["jobs"]
        by_name = {j["job_name"]: j for j in jobs}
        assert by_name["loom_roll"]["db_record"]["is_enabled"] is True

    def test_run(self, client, seeded):
        res = client.post("/api/v1/loom/jobs/loom_archive/run")
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

    def test_run_unknown(self, client):
        assert client.post("/api/v1/loom/jobs/nope/run").status_code == 404

    def test_run_failure_is_500(self, client, failing_job):
        res = client.post(f"/api/v1/loom/jobs/{failing_job}/run")
        assert res.status_code == 500
        assert res.get_json()["status"] == "failed"

    def test_get_and_toggle(self, client, seeded):
        assert client.get("/api/v1/loom/jobs/loom_roll").get_json()["status"] == "active"

        res = client.patch("/api/v1/loom/jobs/loom_roll", json={"is_enabled": False})
        assert res.status_code == 200
        assert res.get_json()["is_enabled"] is False
        assert res.get_json()["status"] == "paused"

        res = client.post("/api/v1/loom/jobs/loom_roll/run")
        assert res.get_json()["status"] == "skipped"

    def test_toggle_requires_bool(self, client, seeded):
        res = client.patch("/api/v1/loom/jobs/loom_roll", json={"is_enabled": "off"})
        assert res.status_code == 422

    def test_get_unknown(self, client):
        assert client.get("/api/v1/loom/jobs/nope").status_code == 404


class TestNotificationsApi:
    def test_lists_quality_notifications(self, client):
        from greatloom.services.notification import NotificationService

        NotificationService.create(title="Spot audit", category="quality")
        NotificationService.create(title="Something else", category="system")

        data = client.get("/api/v1/loom/notifications?category=quality").get_json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "Spot audit"


class TestCli:
    def test_loom_roll(self, app, tuesday_craft):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["loom-roll", "--today", "2025-01-06", "--no-archive"])
        assert result.exit_code == 0, result.output
        assert "created=6" in result.output

    def test_loom_archive(self, app, tuesday_craft, project):
        project()
        runner = app.test_cli_runner()
        result = runner.invoke(args=["loom-archive", "--as-of", "2025-01-08T00:00:00+00:00"])
        assert result.exit_code == 0, result.output
        assert "Archived 1 instance(s)" in result.output
        assert HistoryShift.query.one().instance_date == TUESDAYS[0]

    def test_seed_jobs(self, app):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["loom-seed-jobs"])
        assert "Seeded 2" in result.output
        assert ScheduledJob.query.count() == 2
