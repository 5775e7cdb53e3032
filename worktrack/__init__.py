"""
WorkTrack — Work-Order Ticket Tracker
Flask Application Factory.

Usage:
    from worktrack import create_app
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
from sqlalchemy.exc import OperationalError

from worktrack.auth import init_auth
from worktrack.config import config
from worktrack.middleware.logging_config import configure_logging
from worktrack.middleware.rate_limiter import init_rate_limits
from worktrack.middleware.timing import init_request_timing
from worktrack.models import db
from worktrack.storage import init_storage

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
    default_limits=[],                     # no global limit — apply per-blueprint
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

    # ── Blob storage ─────────────────────────────────────────────────────
    init_storage(app)

    # ── Authentication & Content-Type guard ──────────────────────────────
    init_auth(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from worktrack.models import audit as _audit_models          # noqa: F401
    from worktrack.models import auth as _auth_models            # noqa: F401
    from worktrack.models import document as _document_models    # noqa: F401
    from worktrack.models import file_reference as _file_reference_models  # noqa: F401
    from worktrack.models import finance as _finance_models      # noqa: F401
    from worktrack.models import progress as _progress_models    # noqa: F401
    from worktrack.models import ticket as _ticket_models        # noqa: F401
    from worktrack.models import work_order as _work_order_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except OperationalError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from worktrack.blueprints.document_bp import document_bp
    from worktrack.blueprints.file_reference_bp import file_reference_bp
    from worktrack.blueprints.finance_bp import finance_bp
    from worktrack.blueprints.health_bp import health_bp
    from worktrack.blueprints.progress_bp import progress_bp
    from worktrack.blueprints.ticket_bp import ticket_bp
    from worktrack.blueprints.work_order_bp import work_order_bp
    from worktrack.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(ticket_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(work_order_bp)
    app.register_blueprint(document_bp)
    app.register_blueprint(file_reference_bp)
    app.register_blueprint(finance_bp)
    app.register_blueprint(progress_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    def seed_demo_cmd():
        """Seed demo users and the item/spec catalog."""
        from worktrack.services.seed_service import seed_demo
        counts = seed_demo()
        click.echo(f"Seeded {counts['users']} users, {counts['items']} items, {counts['specs']} specs.")

    @app.cli.command("reconcile-allocations")
    @click.option("--ticket-id", type=int, default=None, help="Limit to one ticket.")
    def reconcile_allocations_cmd(ticket_id):
        """Re-sum allocation rows and repair drifted allocated totals."""
        from worktrack.models.work_order import WORK_ORDER_KINDS
        from worktrack.services.allocation_service import recompute_allocated_totals
        drift = []
        for kind in WORK_ORDER_KINDS:
            drift.extend(recompute_allocated_totals(kind, ticket_id))
        for row in drift:
            state = "fixed" if row["fixed"] else "NEEDS OVERRIDE"
            click.echo(
                f"{row['kind']} detail {row['detail_id']}: stored={row['stored']} "
                f"ledger={row['ledger']} quantity={row['quantity']} [{state}]"
            )
        click.echo(f"{len(drift)} detail(s) drifted.")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def too_large(e):
        return {"error": "Request body too large"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
