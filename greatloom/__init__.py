"""
Great Loom
Flask Application Factory.

Usage:
    from greatloom import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from greatloom.config import config
from greatloom.models import db
from greatloom.middleware.logging_config import configure_logging
from greatloom.middleware.rate_limiter import init_rate_limits
from greatloom.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit — apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort
        # Input length cap
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")
        # Content-Type validation for mutating methods
        if _req.method in ("POST", "PUT", "PATCH", "DELETE") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from greatloom.models import reference as _reference_models    # noqa: F401
    from greatloom.models import rules as _rules_models            # noqa: F401
    from greatloom.models import loom as _loom_models              # noqa: F401
    from greatloom.models import history as _history_models        # noqa: F401
    from greatloom.models import audit as _audit_models            # noqa: F401
    from greatloom.models import scheduling as _scheduling_models  # noqa: F401
    from greatloom.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (safe for production — CREATE IF NOT EXISTS) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from greatloom.blueprints.audit_bp import audit_bp
    from greatloom.blueprints.health_bp import health_bp
    from greatloom.blueprints.loom_bp import loom_bp
    from greatloom.blueprints.rules_bp import rules_bp

    app.register_blueprint(loom_bp)
    app.register_blueprint(rules_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("loom-roll")
    @click.option("--today", default=None, help="Project as if today were YYYY-MM-DD.")
    @click.option("--no-archive", is_flag=True, help="Skip the archive + spot-audit step.")
    def loom_roll_cmd(today, no_archive):
        """Roll the loom window now (project, archive, spot-audit)."""
        from greatloom.services.loom_roller import roll_window
        from greatloom.utils.helpers import parse_date
        summary = roll_window(today=parse_date(today, "today"), archive=not no_archive, actor="cli")
        projection = summary["projection"]
        click.echo(
            f"Window {summary['window']['start']}..{summary['window']['end']}: "
            f"created={projection['created']} updated={projection['updated']} "
            f"skipped={projection['skipped']} deleted={projection['deleted']} "
            f"warnings={len(projection['warnings'])}"
        )
        if summary["archive"]:
            click.echo(f"Archived {summary['archive']['archived_count']} instance(s)")

    @app.cli.command("loom-archive")
    @click.option("--as-of", default=None, help="Archive instances that ended before this ISO timestamp.")
    def loom_archive_cmd(as_of):
        """Weave finished instances into the History Ribbon."""
        from greatloom.services.loom_roller import archive_now
        from greatloom.utils.helpers import parse_datetime
        summary = archive_now(as_of=parse_datetime(as_of), actor="cli")
        click.echo(f"Archived {summary['archive']['archived_count']} instance(s), "
                   f"{len(summary['archive']['errors'])} error(s)")

    @app.cli.command("loom-seed-jobs")
    def loom_seed_jobs_cmd():
        """Create ScheduledJob rows for every registered loom job."""
        from greatloom.services.scheduler_service import SchedulerService
        created = SchedulerService.ensure_jobs_registered()
        logger.info("Seeded %s scheduled job record(s).", len(created))
        click.echo(f"Seeded {len(created)} scheduled job record(s).")

    # ── Health check (detailed version at /health/live) ──
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Great Loom"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logging.getLogger(__name__).error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("greatloom.services.loom_jobs")  # registers @register_job handlers
    from greatloom.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
