import pytest

from config.validation import validate_and_exit, validate_environment

VALID_KEY = "ab" * 32


@pytest.fixture
def production_env(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", "postgresql://sync@db/sync")
    monkeypatch.setenv("SYNC_ENABLED", "true")
    monkeypatch.setenv("SYNC_MASTER_KEY", VALID_KEY)
    monkeypatch.setenv("SYNC_WORKER_ENABLED", "false")
    return monkeypatch


def test_non_production_skips_validation(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    assert validate_environment("development") == (True, [])
    assert validate_environment("testing") == (True, [])


def test_valid_production_environment(production_env):
    assert validate_environment("production") == (True, [])


def test_missing_master_key_when_sync_enabled(production_env):
    production_env.delenv("SYNC_MASTER_KEY")

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert errors == ["SYNC_MASTER_KEY is required when SYNC_ENABLED=true"]


@pytest.mark.parametrize("bad_key", ["abc", "zz" * 32, "ab" * 31])
def test_malformed_master_key(production_env, bad_key):
    production_env.setenv("SYNC_MASTER_KEY", bad_key)

    _, errors = validate_environment("production")

    assert "SYNC_MASTER_KEY must be 64 hexadecimal characters (32 bytes)" in errors


def test_master_key_not_needed_when_sync_disabled(production_env):
    production_env.setenv("SYNC_ENABLED", "false")
    production_env.delenv("SYNC_MASTER_KEY")

    assert validate_environment("production") == (True, [])


def test_worker_requires_broker(production_env):
    production_env.setenv("SYNC_WORKER_ENABLED", "true")
    production_env.delenv("CELERY_BROKER_URL", raising=False)

    _, errors = validate_environment("production")

    assert errors == ["CELERY_BROKER_URL is required when SYNC_WORKER_ENABLED=true"]


def test_default_secret_rejected(production_env):
    production_env.setenv("SECRET_KEY", "your-secret-key")

    _, errors = validate_environment("production")

    assert len(errors) == 1
    assert errors[0].startswith("SECRET_KEY is required in production")


def test_validate_and_exit_exits_on_errors(production_env, capsys):
    production_env.delenv("DATABASE_URL")

    with pytest.raises(SystemExit) as excinfo:
        validate_and_exit("production")

    assert excinfo.value.code == 1
    assert "DATABASE_URL is required in production" in capsys.readouterr().err
