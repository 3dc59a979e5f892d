"""
Advisory Tracker
Flask Application Factory.

Usage:
    from advisory_tracker import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import json
import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from advisory_tracker.config import config
from advisory_tracker.middleware.logging_config import configure_logging
from advisory_tracker.middleware.rate_limiter import init_rate_limits
from advisory_tracker.middleware.timing import init_request_timing
from advisory_tracker.models import db

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
    default_limits=[],                     # no global limit, applied per blueprint
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

    app.config.setdefault("MAX_CONTENT_LENGTH", 10 * 1024 * 1024)  # datasets can be large

    # ── Import all models so Alembic can detect them ─────────────────────
    from advisory_tracker.models import assignment as _assignment_models  # noqa: F401
    from advisory_tracker.models import audit as _audit_models            # noqa: F401
    from advisory_tracker.models import notification as _notification_models  # noqa: F401
    from advisory_tracker.models import sheet as _sheet_models            # noqa: F401
    from advisory_tracker.models import team as _team_models              # noqa: F401
    from advisory_tracker.models import tracking as _tracking_models      # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    # Existing tables are never altered here; that is `flask reconcile-schema`.
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from advisory_tracker.blueprints.entry_locking_bp import entry_locking_bp
    from advisory_tracker.blueprints.health_bp import health_bp
    from advisory_tracker.blueprints.sheets_bp import sheets_bp
    from advisory_tracker.blueprints.tracking_bp import tracking_bp

    app.register_blueprint(sheets_bp)
    app.register_blueprint(entry_locking_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("reconcile-schema")
    def reconcile_schema_cmd():
        """Add table columns the models define but the database lacks."""
        from advisory_tracker.services.schema_service import reconcile_schema

        report = reconcile_schema()
        click.echo(json.dumps(report, indent=2))
        if report["failed"]:
            raise SystemExit(1)

    @app.cli.command("release-expired-locks")
    def release_expired_locks_cmd():
        """Clear entry locks older than ENTRY_LOCK_STALE_MINUTES."""
        from advisory_tracker.services.entry_locking import release_expired_locks

        result = release_expired_locks()
        click.echo(f"Released {result['released']} expired lock(s).")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
