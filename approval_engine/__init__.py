"""
Contractor Document Approval Platform
Flask Application Factory.

Usage:
    from approval_engine import create_app
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

from approval_engine.config import config
from approval_engine.models import db
from approval_engine.middleware.logging_config import configure_logging
from approval_engine.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit, applied per route
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None, *, approver_directory=None, document_directory=None,
               dispatcher=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        approver_directory / document_directory / dispatcher:
                     Optional collaborator overrides for the approval engine
                     (see approval_engine.services.directories).

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
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort

        if request.method in ("POST", "PUT", "PATCH", "DELETE") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from approval_engine.models import document as _document_models  # noqa: F401
    from approval_engine.models import approval as _approval_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI") or ""
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Approval engine collaborators ────────────────────────────────────
    from approval_engine.services import init_approval_engine

    init_approval_engine(
        app,
        approver_directory=approver_directory,
        document_directory=document_directory,
        dispatcher=dispatcher,
    )

    # ── Blueprints ───────────────────────────────────────────────────────
    from approval_engine.blueprints.approval_bp import approval_bp
    from approval_engine.blueprints.health_bp import health_bp

    app.register_blueprint(approval_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-stage-configs")
    @click.option("--document-type", "document_types", multiple=True,
                  help="Document type to seed (repeatable). Defaults to APPROVAL_DOCUMENT_TYPES.")
    def seed_stage_configs_cmd(document_types):
        """Seed the default four-stage approval configuration."""
        from approval_engine.services.stage_config_service import seed_default_stage_configurations

        types = list(document_types) or app.config.get("APPROVAL_DOCUMENT_TYPES", [])
        count = seed_default_stage_configurations(types)
        db.session.commit()
        logger.info("Seeded %s new stage configurations.", count)
        click.echo(f"Seeded {count} stage configurations for {len(types)} document types.")

    @app.cli.command("escalate-overdue")
    def escalate_overdue_cmd():
        """Escalate approvals whose SLA has been breached (run from cron)."""
        from approval_engine.services import get_sweeper

        result = get_sweeper().escalate_overdue_approvals()
        click.echo(
            f"Escalated {result['escalatedCount']} workflows; "
            f"{len(result['newAssignments'])} reassigned; {len(result['skipped'])} skipped."
        )

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"success": False, "error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"success": False, "error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"success": False, "error": "Request body too large"}, 413

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"success": False, "error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"success": False, "error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"success": False, "error": "Internal server error"}, 500

    return app
