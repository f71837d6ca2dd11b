"""
Tax Practice Operations
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event

from app.config import config
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.security_headers import init_security_headers
from app.middleware.timing import init_request_timing
from app.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
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
    default_limits=[],                     # limits are applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
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

    init_security_headers(app)
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort, request as _req
        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            if _req.content_length and "json" not in (_req.content_type or ""):
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from app.models import audit as _audit_models             # noqa: F401
    from app.models import auth as _auth_models               # noqa: F401
    from app.models import client as _client_models           # noqa: F401
    from app.models import operations as _operations_models   # noqa: F401
    from app.models import scheduling as _scheduling_models   # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.health_bp import health_bp
    from app.blueprints.operations_bp import operations_bp
    from app.blueprints.scheduler_bp import scheduler_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(operations_bp)
    app.register_blueprint(scheduler_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    import importlib
    importlib.import_module("app.services.scheduled_jobs")  # registers @register_job handlers
    from app.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)
    try:
        SchedulerService.ensure_jobs_registered()
    except Exception as e:
        app.logger.warning("Scheduled job registration failed: %s", e)

    _register_cli(app)

    return app


def _register_cli(app):
    """CLI commands; the external cron entry point calls these."""

    @app.cli.command("generate-operation-cycles")
    @click.option("--run-date", default=None, help="YYYY-MM-DD; defaults to today in APP_TIMEZONE.")
    @click.option("--actor-id", type=int, default=None, help="User id recorded as generator.")
    def generate_operation_cycles_cmd(run_date, actor_id):
        """Generate the current recurring operation cycle for every eligible assignment."""
        from app.services.scheduler_service import SchedulerService

        params = {"run_date": run_date, "generated_by_id": actor_id}
        outcome = SchedulerService.run_job(
            "auto_generate_operation_cycles",
            **{k: v for k, v in params.items() if v is not None},
        )
        click.echo(json.dumps(outcome, default=str, indent=2))
        if outcome.get("status") == "failed":
            raise SystemExit(1)

    @app.cli.command("sync-scheduled-jobs")
    def sync_scheduled_jobs_cmd():
        """Create missing scheduled job records with their default schedule."""
        from app.services.scheduler_service import SchedulerService

        created = SchedulerService.ensure_jobs_registered()
        click.echo(f"Created {len(created)} scheduled job record(s).")
