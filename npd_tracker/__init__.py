"""
NPD Tracker
Flask Application Factory.

Usage:
    from npd_tracker import create_app
    app = create_app()           # defaults to APP_ENV or "development"
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
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from npd_tracker.config import config, validate_config
from npd_tracker.core.exceptions import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    StaleVersionError,
    ValidationError,
)
from npd_tracker.middleware.auth import init_auth_middleware
from npd_tracker.middleware.logging_config import configure_logging
from npd_tracker.middleware.rate_limiter import init_rate_limits
from npd_tracker.middleware.timing import init_request_timing
from npd_tracker.models import db
from npd_tracker.services.npd_workflow import TransitionError
from npd_tracker.services.permission import PermissionDenied
from npd_tracker.services.rka_import import ImportValidationError
from npd_tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite connection setup (global engine events) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        # pysqlite defers BEGIN to its own heuristics, which breaks SAVEPOINT;
        # let SQLAlchemy emit BEGIN instead.
        dbapi_conn.isolation_level = None


@_sa_event.listens_for(_sa_engine.Engine, "begin")
def _sqlite_begin(conn):
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


migrate = Migrate()
# Storage comes from RATELIMIT_STORAGE_URI (Redis in production, memory for dev)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per-blueprint
)

# Multipart bodies are accepted only on upload routes.
_MULTIPART_PATHS = ("/api/v1/rka/import",)
_MULTIPART_SUFFIX = "/attachments"


def _register_error_handlers(app):
    """Map service exceptions to the standard JSON error body."""

    def _rollback():
        try:
            db.session.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed")

    @app.errorhandler(NotFoundError)
    def _not_found_error(exc):
        _rollback()
        logger.debug("Not found: %s", exc)
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @app.errorhandler(ImportValidationError)
    def _import_error(exc):
        _rollback()
        return api_error(E.IMPORT_INVALID, str(exc), details=exc.details)

    @app.errorhandler(ValidationError)
    def _validation_error(exc):
        _rollback()
        return api_error(E.VALIDATION_RULE, str(exc), details=exc.details)

    @app.errorhandler(StaleVersionError)
    def _stale_version(exc):
        _rollback()
        return api_error(
            E.CONFLICT_VERSION, str(exc),
            details={"expected": exc.expected, "actual": exc.actual},
        )

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        _rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})

    @app.errorhandler(TransitionError)
    def _transition_error(exc):
        _rollback()
        return api_error(
            E.CONFLICT_STATE, str(exc),
            details={"event": exc.event, "status": exc.current_status},
        )

    @app.errorhandler(PermissionDenied)
    def _permission_denied(exc):
        _rollback()
        logger.warning("%s", exc)
        return api_error(
            E.FORBIDDEN, "Permission denied",
            details={"required": f"{exc.action}:{exc.resource}"},
        )

    @app.errorhandler(AuthenticationError)
    def _authentication_error(exc):
        return api_error(E.UNAUTHENTICATED, str(exc))

    @app.errorhandler(StaleDataError)
    def _stale_data(exc):
        _rollback()
        logger.warning("Concurrent modification: %s", exc)
        return api_error(E.CONFLICT_VERSION, "Record was modified concurrently; reload and retry")

    @app.errorhandler(SQLAlchemyError)
    def _database_error(exc):
        _rollback()
        logger.exception("Database error on %s %s", request.method, request.path)
        return api_error(E.DATABASE, "Database error")


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

    # ── Config validation (flags → bool, thresholds → int) ───────────────
    validate_config(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Request timing + session auth (auth before limiter: per-user keys) ─
    init_request_timing(app)
    init_auth_middleware(app)
    limiter.init_app(app)

    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", app.config["MAX_FILE_SIZE"] + 1024 * 1024)

    @app.before_request
    def _guard_request():
        from flask import abort
        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and request.content_length and request.content_length > max_len:
            abort(413, description="Request body too large")
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if "multipart/form-data" in ct:
                if request.path.startswith(_MULTIPART_PATHS) or request.path.endswith(_MULTIPART_SUFFIX):
                    return None
                abort(415, description="Content-Type must be application/json")
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from npd_tracker.models import organization as _organization_models  # noqa: F401
    from npd_tracker.models import rka as _rka_models                    # noqa: F401
    from npd_tracker.models import npd as _npd_models                    # noqa: F401
    from npd_tracker.models import sp2d as _sp2d_models                  # noqa: F401
    from npd_tracker.models import audit as _audit_models                # noqa: F401
    from npd_tracker.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from npd_tracker.blueprints.audit_bp import audit_bp
    from npd_tracker.blueprints.email_bp import email_bp
    from npd_tracker.blueprints.export_bp import export_bp
    from npd_tracker.blueprints.health_bp import health_bp
    from npd_tracker.blueprints.notification_bp import notification_bp
    from npd_tracker.blueprints.npd_bp import npd_bp
    from npd_tracker.blueprints.reports_bp import reports_bp
    from npd_tracker.blueprints.rka_bp import rka_bp
    from npd_tracker.blueprints.rka_import_bp import rka_import_bp
    from npd_tracker.blueprints.sp2d_bp import sp2d_bp
    from npd_tracker.blueprints.user_bp import user_bp
    from npd_tracker.blueprints.webhook_bp import webhook_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(user_bp)
    app.register_blueprint(rka_bp)
    app.register_blueprint(rka_import_bp)
    app.register_blueprint(npd_bp)
    app.register_blueprint(sp2d_bp)
    app.register_blueprint(reports_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(export_bp)
    app.register_blueprint(email_bp)
    app.register_blueprint(webhook_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sweep-uploads")
    @click.option("--max-age", type=int, default=None,
                  help="Minutes; defaults to UPLOAD_CONFIRM_TIMEOUT_MINUTES.")
    def sweep_uploads_cmd(max_age):
        """Delete pending attachments that were never confirmed."""
        from npd_tracker.services.attachment import remove_blobs, sweep_unconfirmed_uploads
        keys = sweep_unconfirmed_uploads(max_age)
        db.session.commit()
        remove_blobs(keys)
        count = len(keys)
        logger.info("Swept %s unconfirmed uploads.", count)
        click.echo(f"Swept {count} unconfirmed uploads.")

    @app.cli.command("send-emails")
    @click.option("--limit", type=int, default=100, help="Maximum queued emails to deliver.")
    def send_emails_cmd(limit):
        """Deliver queued notification emails (run from cron or a worker)."""
        from npd_tracker.services.email_service import EmailService
        counts = EmailService.deliver_pending(limit)
        click.echo(f"Emails sent={counts['sent']} failed={counts['failed']} logged={counts['logged']}")

    # ── Error handlers ───────────────────────────────────────────────────
    _register_error_handlers(app)

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "code": E.NOT_FOUND, "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description or "Unsupported media type"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "code": E.RATE_LIMITED,
                "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error on %s %s: %s", request.method, request.path, e,
                     exc_info=getattr(e, "original_exception", None) or True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
