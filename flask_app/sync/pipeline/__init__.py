"""Sync pipeline: run lifecycle, page processing, merge guard and duplicate linking."""

from __future__ import annotations

from .duplicates import DuplicateDecision, DuplicateResolver, normalize_email
from .error_recorder import ErrorFilters, ErrorLogService, ErrorPage, ErrorRecorder, serialize_error
from .idempotency import ImportTarget, MissingExternalIdentifier, resolve_import_target
from .loaders import LoaderCounters, NoteLoader, PersonLoader, SyncedEntityLoader
from .merge_guard import TRACKABLE_FIELDS, ConflictTrackingError, MergeGuard, detect_changed_fields, normalize_value
from .processor import PageProcessor, PageResult, ProcessResult, RunCancellationToken
from .run_controller import (
    IntegrationNotReady,
    InvalidTransition,
    MigrationRunController,
    RunDescription,
    RunFilters,
    RunListResult,
    estimate_seconds_remaining,
    progress_percent,
)

__all__ = [
    "ConflictTrackingError",
    "DuplicateDecision",
    "DuplicateResolver",
    "ErrorFilters",
    "ErrorLogService",
    "ErrorPage",
    "ErrorRecorder",
    "ImportTarget",
    "IntegrationNotReady",
    "InvalidTransition",
    "LoaderCounters",
    "MergeGuard",
    "MigrationRunController",
    "MissingExternalIdentifier",
    "NoteLoader",
    "PageProcessor",
    "PageResult",
    "PersonLoader",
    "ProcessResult",
    "RunCancellationToken",
    "RunDescription",
    "RunFilters",
    "RunListResult",
    "SyncedEntityLoader",
    "TRACKABLE_FIELDS",
    "detect_changed_fields",
    "estimate_seconds_remaining",
    "normalize_email",
    "normalize_value",
    "progress_percent",
    "resolve_import_target",
    "serialize_error",
]
