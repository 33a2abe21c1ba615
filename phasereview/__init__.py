"""
Phase Review & Progress Analytics
Flask Application Factory.

The application hosts the reference persistence backend (the operation
dispatch endpoint) and health probes.  The review workflow itself lives in
``phasereview.services`` and reaches the backend through
``phasereview.integrations.backend_gateway``.

Usage:
    from phasereview import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_migrate import Migrate

from phasereview.config import config
from phasereview.integrations.backend_gateway import init_gateway
from phasereview.middleware.logging_config import configure_logging
from phasereview.middleware.timing import init_request_timing
from phasereview.models import db

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
    # Instantiated so ProductionConfig can refuse a missing DATABASE_URL / SECRET_KEY
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Backend gateway (client side of the dispatch endpoint) ───────────
    init_gateway(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from phasereview.models import phase as _phase_models      # noqa: F401
    from phasereview.models import project as _project_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from phasereview.blueprints.dispatch_bp import dispatch_bp
    from phasereview.blueprints.health_bp import health_bp

    app.register_blueprint(dispatch_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-demo")
    @click.option("--master-id", default=1, show_default=True, type=int,
                  help="Master project that owns the demo phase templates.")
    def seed_demo_cmd(master_id):
        """Create a demo project with phase templates and tasks."""
        from phasereview.services.phase_store import seed_demo
        result = seed_demo(project_master_id=master_id)
        if result["created"]:
            logger.info("Seeded demo project %s.", result["project_main_id"])
        else:
            logger.info("Demo project %s already exists.", result["project_main_id"])

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"status": "error", "message": "Not found", "path": request.path, "data": None}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"status": "error", "message": "Method not allowed", "data": None}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"status": "error", "message": "Internal server error", "code": "ERR_INTERNAL", "data": None}, 500

    return app
