"""
Audit Engagement Workflow
Flask application factory.

    from auditflow import create_app
    app = create_app()           # APP_ENV, default "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine

from auditflow.config import config
from auditflow.middleware.logging_config import configure_logging
from auditflow.middleware.rate_limiter import init_rate_limits
from auditflow.middleware.timing import init_request_timing
from auditflow.models import db

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE / SET NULL unless asked per connection
    if type(dbapi_conn).__module__.startswith("sqlite3"):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins)
    else:
        CORS(app)


def _init_schema(app):
    # model modules must be imported before create_all / autogenerate
    from auditflow.models import audit, notification, project, workflow  # noqa: F401

    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite"):
        if uri.startswith("sqlite:///") and ":memory:" not in uri:
            os.makedirs(os.path.dirname(uri[len("sqlite:///"):]), exist_ok=True)
        with app.app_context():
            db.create_all()


def _register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(_e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return {"error": "Method not allowed", "method": request.method}, 405

    @app.errorhandler(413)
    def too_large(_e):
        limit_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return {"error": f"Upload exceeds {limit_mb} MB"}, 413

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, e, exc_info=True)
        return {"error": "Internal server error"}, 500


def create_app(config_name=None):
    """Build the Flask app for ``config_name`` (development | testing | production)."""
    config_name = config_name or os.getenv("APP_ENV", "development")
    config_class = config[config_name]
    config_class.check()

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)
    _init_schema(app)

    from auditflow.blueprints.engagement_bp import engagement_bp
    from auditflow.blueprints.health_bp import health_bp

    app.register_blueprint(engagement_bp)
    app.register_blueprint(health_bp)

    from auditflow.services.notification import register_notification_subscriber

    register_notification_subscriber()
    _register_error_handlers(app)
    init_rate_limits(app, limiter)

    logger.info("auditflow started (config=%s)", config_name)
    return app
