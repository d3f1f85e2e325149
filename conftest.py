# conftest.py

import os

import pytest
from flask import Flask

# Set testing environment BEFORE importing config so TestingConfig applies
os.environ["FLASK_ENV"] = "testing"

# Now import config and modules after environment is set
from config import TestingConfig  # noqa: E402
from config.monitoring import TestingMonitoringConfig  # noqa: E402
from flask_app.models import db  # noqa: E402
from flask_app.routes import init_routes  # noqa: E402
from flask_app.sync import init_sync  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402

TEST_MASTER_KEY = "8f3a1c5e7b9d2f4a6c8e0b1d3f5a7c9e2b4d6f8a0c1e3b5d7f9a2c4e6b8d0f1a"


def build_app(**overrides) -> Flask:
    """
    Construct an isolated Flask app with the sync engine wired the way app.py does it.
    """
    app = Flask("app")
    app.config.from_object(TestingConfig)
    app.config.from_object(TestingMonitoringConfig)
    app.config.update(overrides)
    db.init_app(app)
    setup_logging(app)
    init_sync(app)
    init_routes(app)
    return app


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create a test Flask application backed by a per-test SQLite file"""
    flask_app = build_app(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{(tmp_path / 'sync_test.db').as_posix()}",
        SECRET_KEY="test-secret-key-for-testing-only",
        SYNC_ENABLED=True,
        SYNC_ENTITY_TYPES=("contacts", "prospects", "notes"),
        SYNC_MASTER_KEY=TEST_MASTER_KEY,
        SYNC_WORKER_ENABLED=False,
        SYNC_CRM_BASE_URL="https://crm.test/api/v1",
        CELERY_SQLITE_PATH=str(tmp_path / "celery_sync.sqlite"),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )

    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
