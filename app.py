# app.py
import logging
from pathlib import Path

from flask import Flask, jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from werkzeug.routing import IntegerConverter

from auth import login_manager
from config import get_config
from utilities.database import db, INT64_MAX
from utilities.logger import setup_logger
from inventory import inventory_bp
from events import events_bp
from loans import loans_bp
from bundles import bundles_bp

migrate = Migrate()

limiter = Limiter(
    key_func=get_remote_address,
    strategy="fixed-window",
)


class Int64Converter(IntegerConverter):
    """Path ids beyond the database integer range do not match the route."""

    def __init__(self, map, *args, **kwargs):
        kwargs.setdefault("max", INT64_MAX)
        super().__init__(map, *args, **kwargs)


def _harden_sqlite_path(app: Flask) -> None:
    """Resolve relative SQLite files into DATA_DIR so the process cwd does not matter."""
    uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if not uri.startswith("sqlite:///") or uri == "sqlite:///:memory:":
        return
    raw_path = uri.replace("sqlite:///", "", 1).strip() or "keys.db"
    db_path = Path(raw_path)
    if not db_path.is_absolute():
        base_dir = Path(app.config["DATA_DIR"])
        base_dir.mkdir(parents=True, exist_ok=True)
        db_path = (base_dir / db_path.name).resolve()
    app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{db_path.as_posix()}"
    if not app.config.get("SQLALCHEMY_ENGINE_OPTIONS"):
        # pysqlite waits for a competing writer instead of failing at once
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"timeout": 30, "check_same_thread": False}}


def create_app(test_config=None):
    app = Flask(__name__)

    # 1) Load config for the selected environment, then explicit overrides
    app.config.from_object(get_config())
    if test_config:
        app.config.update(test_config)

    # 2) Logging
    setup_logger(app.logger.name, app.config["LOG_FILE"], getattr(logging, app.config["LOG_LEVEL"], logging.INFO))

    # 3) SQLite path hardening: ensure absolute, writable path BEFORE init_app
    _harden_sqlite_path(app)
    app.logger.info("Using database at %s", app.config["SQLALCHEMY_DATABASE_URI"])

    # 4) Init DB & migrations NOW that URI is final
    db.init_app(app)
    migrate.init_app(app, db)

    # 5) Optional dev-only schema bootstrap
    if app.config.get("AUTO_CREATE_SCHEMA"):
        with app.app_context():
            db.create_all()

    # 6) Actor resolution from the gateway header
    login_manager.init_app(app)

    # 7) Rate limiting
    if app.config.get("RATELIMIT_ENABLED"):
        limiter.init_app(app)

    # 8) Blueprints (path ids are bounded before any rule is added)
    app.url_map.converters["int"] = Int64Converter
    app.register_blueprint(loans_bp, url_prefix="/loans")
    app.register_blueprint(bundles_bp, url_prefix="/bundles")
    app.register_blueprint(inventory_bp)  # /keys, /key-systems, /key-notes
    app.register_blueprint(events_bp, url_prefix="/key-events")

    # 9) Health check
    @app.get("/health")
    def health():
        return {"ok": True}, 200

    # 10) Error handlers
    @app.errorhandler(404)
    def handle_404(error):
        return jsonify({"reason": "Resource not found", "error": "not_found"}), 404

    @app.errorhandler(405)
    def handle_405(error):
        return jsonify({"reason": "Method not allowed", "error": "method_not_allowed"}), 405

    @app.errorhandler(429)
    def handle_429(error):
        return jsonify({"reason": "Too many requests", "error": "rate_limited"}), 429

    @app.errorhandler(500)
    def handle_500(error):
        app.logger.error("Unhandled error: %s", getattr(error, "original_exception", error))
        return jsonify({"error": "Internal server error"}), 500

    return app


# For `flask --app app run`, having create_app is enough.
