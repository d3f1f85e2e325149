"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Gauge, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Gauge = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _sync_enabled_gauge = Gauge(
        "sync_engine_enabled",
        "Whether the CRM sync engine is enabled (1) or disabled (0).",
    )
    _sync_page_counter = Counter(
        "sync_pages_total",
        "CRM pages processed by entity type and outcome.",
        ["entity_type", "outcome"],
    )
    _sync_page_duration = Histogram(
        "sync_page_duration_seconds",
        "Duration of processing a single CRM page in seconds.",
        ["entity_type"],
        buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
    )
    _sync_record_counter = Counter(
        "sync_records_total",
        "Records applied by entity type and outcome.",
        ["entity_type", "outcome"],
    )
    _sync_error_counter = Counter(
        "sync_errors_total",
        "Migration errors recorded by error type.",
        ["error_type"],
    )
    _sync_transition_counter = Counter(
        "sync_run_transitions_total",
        "Migration run status transitions by target status.",
        ["status"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _sync_enabled_gauge = None
    _sync_page_counter = None
    _sync_page_duration = None
    _sync_record_counter = None
    _sync_error_counter = None
    _sync_transition_counter = None


def record_sync_enabled(enabled: bool) -> None:
    """Set the sync engine enabled gauge."""

    if _sync_enabled_gauge is None:
        return
    _sync_enabled_gauge.set(1 if enabled else 0)


def record_page(
    *,
    entity_type: str,
    outcome: Literal["success", "failure"],
    duration_seconds: float,
) -> None:
    """Capture metrics for one processed (or failed) page."""

    if _sync_page_counter is not None:
        _sync_page_counter.labels(entity_type=entity_type, outcome=outcome).inc()
    if _sync_page_duration is not None:
        _sync_page_duration.labels(entity_type=entity_type).observe(duration_seconds)


def record_records(entity_type: str, counts: dict[str, int]) -> None:
    if _sync_record_counter is None:
        return
    for outcome, count in counts.items():
        if count:
            _sync_record_counter.labels(entity_type=entity_type, outcome=outcome).inc(count)


def record_sync_error(error_type: str) -> None:
    if _sync_error_counter is None:
        return
    _sync_error_counter.labels(error_type=error_type).inc()


def record_run_transition(status: str) -> None:
    if _sync_transition_counter is None:
        return
    _sync_transition_counter.labels(status=status).inc()
