# app.py

import logging
import os
import sqlite3

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from flask_app.models import db  # noqa: E402
from flask_app.routes import init_routes  # noqa: E402
from flask_app.sync import init_sync  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

# FLASK_ENV -> (settings, logging settings); anything unknown runs as development
CONFIG_BY_ENV = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _sqlite_connect_hook(*, enable_foreign_keys):
    """Build a ``connect`` listener so the sync worker and the API can share one SQLite file."""
    statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if enable_foreign_keys else ())

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        except sqlite3.DatabaseError as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    return _on_connect


def _prepare_database(flask_app):
    engine = db.engine
    if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_sync_pragmas", False):
        hook = _sqlite_connect_hook(enable_foreign_keys=not flask_app.config.get("TESTING", False))
        event.listen(engine, "connect", hook)
        engine._sync_pragmas = True  # type: ignore[attr-defined]
    # Tests build their own schema per app
    if not flask_app.config.get("TESTING", False):
        db.create_all()


flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for settings in CONFIG_BY_ENV.get(flask_env, CONFIG_BY_ENV["development"]):
    app.config.from_object(settings)

db.init_app(app)
setup_logging(app)

with app.app_context():
    _prepare_database(app)

init_sync(app)
init_routes(app)


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({"error": "Not found."}), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    return jsonify({"error": "Internal server error."}), 500


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
