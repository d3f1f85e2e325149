# config/monitoring.py

import os

from .base import _coerce_bool, _coerce_int

try:  # pragma: no cover - optional dependency at runtime
    from prometheus_client import Counter, Histogram
except ImportError:  # pragma: no cover
    Counter = None
    Histogram = None


class MonitoringConfig:
    """``LOG_*`` and app identity keys read by ``flask_app.utils.logging_config.setup_logging``."""

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = _coerce_int(os.environ.get("LOG_FILE_MAX_BYTES"), 10 * 1024 * 1024)
    LOG_FILE_BACKUP_COUNT = _coerce_int(os.environ.get("LOG_FILE_BACKUP_COUNT"), 10)

    # Same fallbacks setup_logging uses when a key is missing
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=False)
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)

    APP_NAME = os.environ.get("APP_NAME", "Practice Sync")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Sync workers log JSON to rotating files; stdout is left to the process manager."""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False


class TestingMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class SyncMonitoring:
    """Prometheus metric helpers for sync operator endpoints."""

    RUNS_LIST_COUNTER = (
        Counter(
            "sync_runs_list_requests_total",
            "Total sync runs list API requests.",
            labelnames=("status",),
        )
        if Counter
        else None
    )
    RUNS_LIST_LATENCY = (
        Histogram(
            "sync_runs_list_request_seconds",
            "Latency histogram for sync runs list API.",
            labelnames=("status",),
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
        )
        if Histogram
        else None
    )
    RUNS_LIST_RESULT_SIZE = (
        Histogram(
            "sync_runs_list_result_size",
            "Number of runs returned by list endpoint.",
            labelnames=("status",),
            buckets=(0, 1, 5, 10, 25, 50, 100),
        )
        if Histogram
        else None
    )

    RUNS_DETAIL_COUNTER = (
        Counter(
            "sync_runs_detail_requests_total",
            "Total sync run detail API requests.",
            labelnames=("status",),
        )
        if Counter
        else None
    )
    RUNS_DETAIL_LATENCY = (
        Histogram(
            "sync_runs_detail_request_seconds",
            "Latency histogram for sync run detail API.",
            labelnames=("status",),
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
        )
        if Histogram
        else None
    )

    ERRORS_LIST_COUNTER = (
        Counter(
            "sync_errors_list_requests_total",
            "Total sync error log API requests.",
            labelnames=("status",),
        )
        if Counter
        else None
    )
    ERRORS_LIST_LATENCY = (
        Histogram(
            "sync_errors_list_request_seconds",
            "Latency histogram for sync error log API.",
            labelnames=("status",),
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
        )
        if Histogram
        else None
    )

    @classmethod
    def record_runs_list(cls, *, duration_seconds: float, status: str, result_count: int):
        if cls.RUNS_LIST_COUNTER:
            cls.RUNS_LIST_COUNTER.labels(status=status).inc()
        if cls.RUNS_LIST_LATENCY:
            cls.RUNS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
        if cls.RUNS_LIST_RESULT_SIZE:
            cls.RUNS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))

    @classmethod
    def record_runs_detail(cls, *, duration_seconds: float, status: str):
        if cls.RUNS_DETAIL_COUNTER:
            cls.RUNS_DETAIL_COUNTER.labels(status=status).inc()
        if cls.RUNS_DETAIL_LATENCY:
            cls.RUNS_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_errors_list(cls, *, duration_seconds: float, status: str):
        if cls.ERRORS_LIST_COUNTER:
            cls.ERRORS_LIST_COUNTER.labels(status=status).inc()
        if cls.ERRORS_LIST_LATENCY:
            cls.ERRORS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))
