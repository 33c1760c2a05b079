"""
GroupCopilot
Flask Application Factory.

Usage:
    from groupcopilot import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from groupcopilot.config import config
from groupcopilot.models import db
from groupcopilot.middleware.logging_config import configure_logging
from groupcopilot.middleware.timing import init_request_timing
from groupcopilot.middleware.rate_limiter import init_rate_limits

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
    default_limits=[],                     # per-blueprint limits only
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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 256 * 1024)

    @app.before_request
    def _guard_request():
        from flask import request as _req, abort

        max_len = app.config.get("MAX_CONTENT_LENGTH")
        if max_len and _req.content_length and _req.content_length > max_len:
            abort(413, description="Request body too large")

        if _req.method in ("POST", "PUT", "PATCH") and _req.path.startswith("/api/"):
            ct = _req.content_type or ""
            if _req.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from groupcopilot.models import room as _room_models      # noqa: F401
    from groupcopilot.models import agent as _agent_models    # noqa: F401
    from groupcopilot.models import audit as _audit_models    # noqa: F401
    from groupcopilot.models import trello as _trello_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Agent dispatcher (generator + Trello clients) ────────────────────
    from groupcopilot.services.dispatcher import AgentDispatcher
    dispatcher = AgentDispatcher.from_config(app.config)
    app.extensions["agent_dispatcher"] = dispatcher
    if not dispatcher.gateway.available:
        app.logger.warning("GEMINI_API_KEY not set — agent replies run in mock mode")

    # ── Blueprints ───────────────────────────────────────────────────────
    from groupcopilot.blueprints.room_bp import room_bp
    from groupcopilot.blueprints.agent_bp import agent_bp
    from groupcopilot.blueprints.approval_bp import approval_bp
    from groupcopilot.blueprints.audit_bp import audit_bp
    from groupcopilot.blueprints.cron_bp import cron_bp
    from groupcopilot.blueprints.health_bp import health_bp

    app.register_blueprint(room_bp)
    app.register_blueprint(agent_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("weekly-monitor")
    def weekly_monitor_cmd():
        """Sync Trello cards and nudge rooms with stalled work."""
        from groupcopilot.services.weekly_jobs import run_weekly_monitor
        result = run_weekly_monitor(app.extensions["agent_dispatcher"], app.config)
        print(f"Monitor: {result['sessions']} sessions, {result['synced']} synced, "
              f"{result['nudged']} nudged, {result['errors']} errors")

    @app.cli.command("weekly-review")
    def weekly_review_cmd():
        """Generate the weekly review for every room in MONITOR."""
        from groupcopilot.services.weekly_jobs import run_weekly_review
        result = run_weekly_review(app.extensions["agent_dispatcher"], app.config)
        print(f"Review: {result['reviewed']}/{result['sessions']} sessions reviewed, "
              f"{result['errors']} errors")

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

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media(e):
        return {"error": "Content-Type must be application/json"}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
