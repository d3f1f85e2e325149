"""
Append-only error log for migration runs.

``ErrorRecorder.record`` is called from the processor's failure paths and must
never raise. ``ErrorLogService`` backs the operator-facing error listing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from flask_app.models import MigrationError, MigrationErrorType, MigrationRun, db
from flask_app.models.base import isoformat
from flask_app.sync.metrics import record_sync_error

DEFAULT_ERRORS_PAGE_SIZE = 50
MAX_ERRORS_PAGE_SIZE = 200


class ErrorRecorder:
    """Write MigrationError rows and bump the run's error counter."""

    def __init__(self, session: Session | None = None, logger: logging.Logger | None = None) -> None:
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    def record(
        self,
        run_id: int,
        entity_type: str,
        external_id: str | None,
        error_type: MigrationErrorType | str,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> MigrationError | None:
        """Append one error row and increment ``error_count``. Returns ``None`` if the write failed."""

        try:
            error_type = _coerce_error_type(error_type)
        except ValueError:
            self.logger.warning(f"Unknown migration error type {error_type!r}; recording as INSERT")
            error_type = MigrationErrorType.INSERT
        log_extra = {
            "sync_run_id": run_id,
            "sync_entity_type": entity_type,
            "sync_external_id": external_id,
            "sync_error_type": error_type.value,
        }
        try:
            error = MigrationError(
                run_id=run_id,
                entity_type=entity_type,
                external_id=external_id,
                error_type=error_type,
                error_message=str(message)[:4000],
                error_details=dict(details) if details else None,
            )
            self.session.add(error)
            self._increment_error_count(run_id)
            self.session.commit()
        except Exception:
            self._rollback_quietly()
            self.logger.exception("Failed to write migration error row", extra=log_extra)
            self._increment_error_count_only(run_id, log_extra)
            return None

        record_sync_error(error_type.value)
        self.logger.warning(f"Sync error ({error_type.value}): {message}", extra=log_extra)
        return error

    def _increment_error_count(self, run_id: int) -> None:
        self.session.execute(
            update(MigrationRun)
            .where(MigrationRun.id == run_id)
            .values(error_count=MigrationRun.error_count + 1)
            .execution_options(synchronize_session=False)
        )

    def _increment_error_count_only(self, run_id: int, log_extra: Mapping[str, Any]) -> None:
        try:
            self._increment_error_count(run_id)
            self.session.commit()
        except Exception:
            self._rollback_quietly()
            self.logger.exception("Failed to increment run error count", extra=dict(log_extra))

    def _rollback_quietly(self) -> None:
        try:
            self.session.rollback()
        except Exception:  # pragma: no cover - connection already gone
            self.logger.exception("Rollback after error-log failure also failed")


@dataclass(frozen=True)
class ErrorFilters:
    """Validated filter and pagination options for a run's error log."""

    page: int = 1
    limit: int = DEFAULT_ERRORS_PAGE_SIZE
    entity_type: str | None = None
    error_type: MigrationErrorType | None = None
    resolved: bool | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        limit: int | str | None = None,
        entity_type: str | None = None,
        error_type: str | None = None,
        resolved: str | bool | None = None,
        default_limit: int = DEFAULT_ERRORS_PAGE_SIZE,
        max_limit: int = MAX_ERRORS_PAGE_SIZE,
    ) -> "ErrorFilters":
        resolved_page = _coerce_positive_int(page, fallback=1, label="page")
        resolved_limit = min(_coerce_positive_int(limit, fallback=default_limit, label="limit"), max_limit)
        resolved_entity = entity_type.strip() if isinstance(entity_type, str) and entity_type.strip() else None
        resolved_error_type = _coerce_error_type(error_type) if error_type else None
        return cls(
            page=resolved_page,
            limit=resolved_limit,
            entity_type=resolved_entity,
            error_type=resolved_error_type,
            resolved=_coerce_optional_bool(resolved),
        )


@dataclass(slots=True)
class ErrorPage:
    """One page of the error log plus pagination totals."""

    errors: list[MigrationError]
    page: int
    limit: int
    total_count: int
    total_pages: int

    def pagination(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "totalCount": self.total_count,
            "totalPages": self.total_pages,
        }


class ErrorLogService:
    """Read and resolve entries in a run's error log."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_errors(self, run_id: int, filters: ErrorFilters) -> ErrorPage:
        if self.session.get(MigrationRun, run_id) is None:
            raise NoResultFound(f"Migration run {run_id} not found.")

        predicates = [MigrationError.run_id == run_id]
        if filters.entity_type:
            predicates.append(MigrationError.entity_type == filters.entity_type)
        if filters.error_type:
            predicates.append(MigrationError.error_type == filters.error_type)
        if filters.resolved is not None:
            predicates.append(MigrationError.resolved.is_(filters.resolved))

        total = self.session.scalar(select(func.count()).select_from(MigrationError).where(*predicates)) or 0
        total_pages = (total + filters.limit - 1) // filters.limit
        errors = list(
            self.session.scalars(
                select(MigrationError)
                .where(*predicates)
                .order_by(MigrationError.created_at.desc(), MigrationError.id.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
        )
        return ErrorPage(
            errors=errors,
            page=filters.page,
            limit=filters.limit,
            total_count=total,
            total_pages=total_pages,
        )

    def resolve_error(self, run_id: int, error_id: int) -> MigrationError:
        error = self.session.scalars(
            select(MigrationError).where(MigrationError.id == error_id, MigrationError.run_id == run_id)
        ).first()
        if error is None:
            raise NoResultFound(f"Migration error {error_id} not found for run {run_id}.")
        if not error.resolved:
            error.mark_resolved()
            self.session.commit()
        return error


def serialize_error(error: MigrationError) -> dict[str, Any]:
    return {
        "id": error.id,
        "runId": error.run_id,
        "entityType": error.entity_type,
        "externalId": error.external_id,
        "errorType": error.error_type.value if isinstance(error.error_type, MigrationErrorType) else error.error_type,
        "errorMessage": error.error_message,
        "errorDetails": error.error_details,
        "retryCount": error.retry_count,
        "resolved": error.resolved,
        "resolvedAt": isoformat(error.resolved_at),
        "createdAt": isoformat(error.created_at),
    }


def _coerce_error_type(value: MigrationErrorType | str) -> MigrationErrorType:
    if isinstance(value, MigrationErrorType):
        return value
    try:
        return MigrationErrorType(str(value).strip().upper())
    except ValueError:
        raise ValueError(f"Unsupported error type '{value}'.") from None


def _coerce_positive_int(candidate: int | str | None, *, fallback: int, label: str) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate.strip()))
    raise ValueError(f"Expected positive integer for {label}, received '{candidate}'.")


def _coerce_optional_bool(candidate: str | bool | None) -> bool | None:
    if candidate is None or candidate == "":
        return None
    if isinstance(candidate, bool):
        return candidate
    normalized = str(candidate).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Unable to interpret boolean value '{candidate}'.")
