"""
OVR Tracker
Flask Application Factory.

Usage:
    from ovr import create_app
    app = create_app()           # defaults to APP_ENV, else "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from ovr.config import config
from ovr.core.exceptions import OVRError
from ovr.middleware.jwt_auth import init_auth_middleware
from ovr.middleware.logging_config import configure_logging
from ovr.middleware.rate_limiter import init_rate_limits
from ovr.middleware.security_headers import init_security_headers
from ovr.middleware.timing import init_request_timing
from ovr.models import db
from ovr.utils.errors import E, api_error

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
# Storage comes from RATELIMIT_STORAGE_URI; limits are set per blueprint
limiter = Limiter(key_func=get_remote_address, default_limits=[])


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiating runs the production checks for required settings
    app.config.from_object(config[config_name]())

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

    # ── Middleware ───────────────────────────────────────────────────────
    init_security_headers(app)
    init_request_timing(app)

    # ── Request guards (body size + Content-Type) ────────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # Runs after the guard so oversized or non-JSON bodies never hit the DB
    init_auth_middleware(app)

    # ── Models (so Alembic sees every table) ─────────────────────────────
    from ovr.models import audit as _audit_models                  # noqa: F401
    from ovr.models import auth as _auth_models                    # noqa: F401
    from ovr.models import incident as _incident_models            # noqa: F401
    from ovr.models import shared_access as _shared_access_models  # noqa: F401

    if app.config.get("AUTO_CREATE_TABLES", True) and not app.testing:
        with app.app_context():
            try:
                db.create_all()
            except SQLAlchemyError as exc:
                app.logger.warning("db.create_all() failed: %s", exc)

    # ── Blueprints ───────────────────────────────────────────────────────
    from ovr.blueprints.auth_bp import auth_bp
    from ovr.blueprints.corrective_action_bp import corrective_action_bp
    from ovr.blueprints.health_bp import health_bp
    from ovr.blueprints.incident_bp import incident_bp
    from ovr.blueprints.investigation_bp import investigation_bp
    from ovr.blueprints.reference_bp import reference_bp
    from ovr.blueprints.shared_access_bp import shared_access_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(incident_bp)
    app.register_blueprint(investigation_bp)
    app.register_blueprint(corrective_action_bp)
    app.register_blueprint(shared_access_bp)
    app.register_blueprint(reference_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    def seed_demo_cmd():
        """Seed departments, locations and one user per role."""
        from ovr.services.seed_service import seed_demo
        db.create_all()
        created = seed_demo()
        click.echo(f"Seeded: {created}")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(OVRError)
    def handle_ovr_error(exc):
        if exc.status >= 500:
            logger.error("%s: %s", type(exc).__name__, exc.message, exc_info=True)
        return api_error(exc.code, exc.message, status=exc.status, details=exc.details or None)

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def payload_too_large(e):
        return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large")

    @app.errorhandler(415)
    def unsupported_media(e):
        return api_error(E.UNSUPPORTED_MEDIA, "Content-Type must be application/json")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        original = getattr(e, "original_exception", None) or e
        logger.error("500 error: %s", original, exc_info=original)
        return api_error(E.INTERNAL, "Internal server error")

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
