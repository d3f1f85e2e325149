# config.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=1, maximum=None):
    """Parse an integer setting, falling back to ``default`` when invalid or out of range."""
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if number < minimum:
        return default
    if maximum is not None and number > maximum:
        return maximum
    return number


def _parse_entity_list(value):
    """
    Parse a comma-separated entity type list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized entity type identifiers.
    """
    if not value:
        return ()

    seen = set()
    entity_types = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        entity_types.append(item)
    return tuple(entity_types)


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable or generate with: "
            'python -c "import secrets; print(secrets.token_hex(32))"',
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync engine configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_ENTITY_TYPES = _parse_entity_list(os.environ.get("SYNC_ENTITY_TYPES", "contacts,prospects,notes"))
    if SYNC_ENABLED and not SYNC_ENTITY_TYPES:
        raise ValueError("SYNC_ENABLED is true but SYNC_ENTITY_TYPES is empty. Provide at least one entity type.")

    # Hex-encoded 32 byte key; generate with: python -c "import secrets; print(secrets.token_hex(32))"
    SYNC_MASTER_KEY = os.environ.get("SYNC_MASTER_KEY")
    SYNC_SOURCE_NAME = os.environ.get("SYNC_SOURCE_NAME", "CRM")

    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    SYNC_TASK_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_TIME_LIMIT"), 6 * 60 * 60)
    SYNC_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("SYNC_TASK_SOFT_TIME_LIMIT"), 5 * 60 * 60)

    SYNC_CRM_BASE_URL = os.environ.get("SYNC_CRM_BASE_URL", "https://api.crm.example/v1")
    SYNC_CRM_TIMEOUT_SECONDS = _coerce_int(os.environ.get("SYNC_CRM_TIMEOUT_SECONDS"), 30, maximum=300)
    SYNC_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_PAGE_SIZE"), 100, maximum=500)
    SYNC_NOTES_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_NOTES_PAGE_SIZE"), 25, maximum=500)

    SYNC_MAPPING_DIR = os.environ.get(
        "SYNC_MAPPING_DIR",
        os.path.join(os.path.dirname(__file__), "mappings"),
    )

    SYNC_RUNS_PAGE_SIZE_MAX = _coerce_int(os.environ.get("SYNC_RUNS_PAGE_SIZE_MAX"), 100, maximum=500)
    SYNC_RUNS_PAGE_SIZE_DEFAULT = min(
        _coerce_int(os.environ.get("SYNC_RUNS_PAGE_SIZE_DEFAULT"), 20),
        SYNC_RUNS_PAGE_SIZE_MAX,
    )
    SYNC_ERRORS_PAGE_SIZE_MAX = _coerce_int(os.environ.get("SYNC_ERRORS_PAGE_SIZE_MAX"), 200, maximum=1000)
    SYNC_ERRORS_PAGE_SIZE_DEFAULT = min(
        _coerce_int(os.environ.get("SYNC_ERRORS_PAGE_SIZE_DEFAULT"), 50),
        SYNC_ERRORS_PAGE_SIZE_MAX,
    )


class DevelopmentConfig(Config):
    DEBUG = True
    # Project root is the parent of the config directory
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, even on Windows
    db_path = os.path.join(instance_path, "sync_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
