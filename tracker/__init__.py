"""
ATS Pipeline Tracker
Flask Application Factory.

Usage:
    from tracker import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

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

from tracker.auth import init_auth
from tracker.config import config
from tracker.middleware.jwt_auth import init_jwt_middleware
from tracker.middleware.logging_config import configure_logging
from tracker.middleware.rate_limiter import init_rate_limits
from tracker.middleware.tenant_context import init_tenant_context
from tracker.middleware.timing import init_request_timing
from tracker.models import db
from tracker.utils.errors import E, api_error, http_error

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
    default_limits=[],                     # no global limit - applied per blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to the APP_ENV env var, or "development".

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

    # ── Request pipeline: timing → JWT → tenant context → auth guard ────
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)
    init_auth(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_content_type():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                return api_error(E.VALIDATION, "Content-Type must be application/json", status=415)
        return None

    # ── Models (registered on db.metadata for create_all / Alembic) ─────
    from tracker.models import auth as _auth_models              # noqa: F401
    from tracker.models import pipeline as _pipeline_models      # noqa: F401
    from tracker.models import tracking as _tracking_models      # noqa: F401
    from tracker.models import signal as _signal_models          # noqa: F401
    from tracker.models import evaluation as _evaluation_models  # noqa: F401

    if config_name != "testing":
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from tracker.blueprints.health_bp import health_bp
    from tracker.blueprints.settings_bp import settings_bp
    from tracker.blueprints.signals_bp import signals_bp
    from tracker.blueprints.tracking_bp import tracking_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(tracking_bp)
    app.register_blueprint(settings_bp)
    app.register_blueprint(signals_bp)

    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-tracking-defaults")
    @click.option("--tenant-id", type=int, required=True, help="Tenant to seed.")
    def seed_tracking_defaults_cmd(tenant_id):
        """Seed default statuses, role capabilities and stage actions for a tenant."""
        from tracker.services.seed_service import seed_tenant_defaults
        counts = seed_tenant_defaults(tenant_id)
        db.session.commit()
        click.echo(f"Seeded tenant {tenant_id}: {counts}")

    # ── App-level error handlers (routing / limiter failures) ────────────
    @app.errorhandler(404)
    @app.errorhandler(405)
    @app.errorhandler(413)
    @app.errorhandler(429)
    def _http_error(e):
        return http_error(e)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s: %s", request.path, e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")

    return app
