"""
ITSM Change Lifecycle Engine
Flask Application Factory.

Usage:
    from itsm import create_app
    app = create_app()           # APP_ENV, or "development"
    app = create_app("testing")
"""

import importlib
import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine

from itsm.config import config
from itsm.middleware.logging_config import configure_logging
from itsm.middleware.rate_limiter import init_rate_limits
from itsm.middleware.timing import init_request_timing
from itsm.models import db
from itsm.utils.errors import E, api_error

logger = logging.getLogger(__name__)

MODEL_MODULES = (
    "itsm.models.auth",
    "itsm.models.change",
    "itsm.models.notification",
    "itsm.models.scheduling",
)

# Importing this module registers its jobs with the scheduler
JOB_MODULES = ("itsm.services.scheduled_jobs",)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE unless asked per connection
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def create_app(config_name=None):
    """Build the app for ``config_name`` (development, testing or production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    _init_cors(app)
    init_request_timing(app)
    app.before_request(_require_json_body)

    for module in MODEL_MODULES:
        importlib.import_module(module)
    _create_tables(app)

    _register_blueprints(app)
    _register_app_error_handlers(app)
    init_rate_limits(app, limiter)

    _init_scheduler(app)
    _register_cli(app)

    logger.info("App created (config=%s)", config_name)
    return app


def _init_cors(app):
    origins = app.config.get("CORS_ORIGINS", "*")
    if not origins or origins == "*":
        CORS(app)
        return
    CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _require_json_body():
    """Reject non-JSON bodies on API writes with 415."""
    if request.method not in ("POST", "PUT", "PATCH") or not request.path.startswith("/api/"):
        return
    if request.get_data(cache=True) and "json" not in (request.content_type or ""):
        abort(415, description="Content-Type must be application/json")


def _create_tables(app):
    with app.app_context():
        uri = app.config["SQLALCHEMY_DATABASE_URI"]
        if uri.startswith("sqlite") and ":memory:" not in uri:
            os.makedirs(app.instance_path, exist_ok=True)
        db.create_all()


def _register_blueprints(app):
    from itsm.blueprints.automation_bp import automation_bp
    from itsm.blueprints.change_bp import change_bp
    from itsm.blueprints.health_bp import health_bp
    from itsm.blueprints.notification_bp import notification_bp

    for bp in (change_bp, automation_bp, notification_bp, health_bp):
        app.register_blueprint(bp)


def _register_app_error_handlers(app):
    """Errors raised before any blueprint matched (unknown URL, rate limit)."""

    @app.errorhandler(404)
    def _not_found(_exc):
        return api_error(E.NOT_FOUND, "Not found", path=request.path)

    @app.errorhandler(405)
    def _bad_method(_exc):
        return api_error(E.BAD_REQUEST, "Method not allowed", status=405)

    @app.errorhandler(415)
    def _bad_media_type(exc):
        return api_error(E.BAD_REQUEST, exc.description, status=415)

    @app.errorhandler(429)
    def _rate_limited(exc):
        return api_error(E.RATE_LIMITED, "Too many requests", retry_after=exc.description)

    @app.errorhandler(500)
    def _server_error(exc):
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _init_scheduler(app):
    for module in JOB_MODULES:
        importlib.import_module(module)
    from itsm.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)


def _register_cli(app):
    from itsm.services.scheduler_service import SchedulerService

    @app.cli.command("run-change-automation")
    def run_change_automation_cmd():
        """Run one change automation pass (auto-start + completion prompts)."""
        result = SchedulerService.run_job("change_lifecycle")
        click.echo(f"{result['status']}: {result.get('result') or result.get('error')}")
