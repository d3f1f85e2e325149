"""
Lifecycle and query helpers for migration runs.

The controller owns every status transition. Transitions are written as a
conditional UPDATE on the current status so an operator action racing the
processor never overwrites a newer state.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from flask_app.models import (
    Checkpoint,
    ImportDuplicate,
    Integration,
    MigrationError,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
    db,
)
from flask_app.models.base import as_utc, isoformat, utcnow
from flask_app.sync.metrics import record_run_transition
from flask_app.sync.registry import order_entity_types

DEFAULT_PAGE = 1
DEFAULT_RUNS_PAGE_SIZE = 20
MAX_RUNS_PAGE_SIZE = 100
RECENT_ERROR_WINDOW = 100

ACTIVE_STATUSES = (MigrationRunStatus.RUNNING, MigrationRunStatus.PAUSED)


class InvalidTransition(ValueError):
    """Raised when a status transition is not allowed from the run's current status."""

    def __init__(self, message: str, *, status: MigrationRunStatus) -> None:
        super().__init__(message)
        self.status = status


class IntegrationNotReady(ValueError):
    """Raised when an integration cannot be used to start a run."""


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to migration run queries."""

    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_RUNS_PAGE_SIZE
    integration_id: int | None = None
    statuses: tuple[MigrationRunStatus, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        limit: int | str | None = None,
        integration_id: int | str | None = None,
        statuses: Iterable[str] | None = None,
        default_limit: int = DEFAULT_RUNS_PAGE_SIZE,
        max_limit: int = MAX_RUNS_PAGE_SIZE,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_limit = min(_coerce_positive_int(limit, fallback=default_limit), max_limit)
        resolved_integration = (
            _coerce_positive_int(integration_id, fallback=0) if integration_id not in (None, "") else None
        )

        resolved_statuses: list[MigrationRunStatus] = []
        for value in statuses or ():
            if value is None or value == "":
                continue
            status = _coerce_status(value)
            if status not in resolved_statuses:
                resolved_statuses.append(status)

        return cls(
            page=resolved_page,
            limit=resolved_limit,
            integration_id=resolved_integration,
            statuses=tuple(resolved_statuses),
        )


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for migration runs."""

    items: list[MigrationRun]
    total: int
    page: int
    limit: int
    total_pages: int

    def pagination(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "totalCount": self.total,
            "totalPages": self.total_pages,
        }


@dataclass(slots=True)
class RunDescription:
    """A run plus the derived progress figures shown to operators."""

    run: MigrationRun
    progress_percent: int | None
    estimated_seconds_remaining: int | None
    duplicates_linked: int
    recent_error_count: int

    @property
    def checkpoint(self) -> Checkpoint | None:
        if self.run.status not in ACTIVE_STATUSES:
            return None
        return self.run.checkpoint

    def to_dict(self) -> dict[str, Any]:
        run = self.run
        checkpoint = self.checkpoint
        return {
            "id": run.id,
            "integrationId": run.integration_id,
            "runType": _enum_value(run.run_type),
            "entityTypes": list(run.ordered_entity_types),
            "status": _enum_value(run.status),
            "totalEntities": run.total_entities,
            "processedEntities": run.processed_entities,
            "createdRecords": run.created_records,
            "updatedRecords": run.updated_records,
            "skippedRecords": run.skipped_records,
            "errorCount": run.error_count,
            "duplicatesLinked": self.duplicates_linked,
            "progressPercent": self.progress_percent,
            "estimatedTimeRemaining": self.estimated_seconds_remaining,
            "checkpoint": checkpoint.to_json() if checkpoint else None,
            "currentPhase": checkpoint.phase if checkpoint else None,
            "currentPage": checkpoint.page if checkpoint else None,
            "recentErrorCount": self.recent_error_count,
            "startedAt": isoformat(run.started_at),
            "completedAt": isoformat(run.completed_at),
            "createdAt": isoformat(run.created_at),
            "updatedAt": isoformat(run.updated_at),
        }


def progress_percent(processed: int | None, total: int | None) -> int | None:
    if not total or total <= 0:
        return None
    return math.floor((processed or 0) / total * 100 + 0.5)


def estimate_seconds_remaining(
    *,
    status: MigrationRunStatus,
    started_at: datetime | None,
    processed: int,
    total: int | None,
    now: datetime | None = None,
) -> int | None:
    if status != MigrationRunStatus.RUNNING or started_at is None or processed <= 0 or not total:
        return None
    now = now or utcnow()
    elapsed_ms = (now - as_utc(started_at)).total_seconds() * 1000
    if elapsed_ms <= 0:
        return None
    records_per_ms = processed / elapsed_ms
    return math.floor((total - processed) / records_per_ms / 1000 + 0.5)


class MigrationRunController:
    """Create runs, apply operator transitions and describe progress."""

    def __init__(self, session: Session | None = None, logger: logging.Logger | None = None) -> None:
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def create(
        self,
        integration_id: int,
        run_type: MigrationRunType | str,
        entity_types: Iterable[str],
        *,
        allowed_entity_types: Sequence[str] | None = None,
    ) -> MigrationRun:
        integration = self.session.get(Integration, integration_id)
        if integration is None:
            raise NoResultFound(f"Integration {integration_id} not found.")

        requested = list(entity_types)
        ordered = order_entity_types(requested, allowed_entity_types or requested)
        run = MigrationRun(
            integration_id=integration.id,
            run_type=_coerce_run_type(run_type),
            entity_types=list(ordered),
            status=MigrationRunStatus.RUNNING,
            total_entities=None,
            processed_entities=0,
            created_records=0,
            updated_records=0,
            skipped_records=0,
            error_count=0,
            checkpoint_json=None,
            started_at=utcnow(),
        )
        self.session.add(run)
        self.session.commit()
        record_run_transition(MigrationRunStatus.RUNNING.value)
        self.logger.info(
            "Created migration run",
            extra={
                "sync_run_id": run.id,
                "sync_integration_id": integration.id,
                "sync_run_type": run.run_type.value,
                "sync_entity_types": list(ordered),
            },
        )
        return run

    def pause(self, run_id: int) -> MigrationRun:
        return self._transition(
            run_id,
            allowed=(MigrationRunStatus.RUNNING,),
            target=MigrationRunStatus.PAUSED,
            message="Cannot pause migration with status: {status}. Only RUNNING migrations can be paused.",
        )

    def cancel(self, run_id: int) -> MigrationRun:
        return self._transition(
            run_id,
            allowed=ACTIVE_STATUSES,
            target=MigrationRunStatus.CANCELLED,
            message="Cannot cancel migration with status: {status}",
            completed=True,
        )

    def resume(self, run_id: int) -> MigrationRun:
        return self._transition(
            run_id,
            allowed=(MigrationRunStatus.PAUSED,),
            target=MigrationRunStatus.RUNNING,
            message="Cannot resume migration with status: {status}. Only PAUSED migrations can be resumed.",
        )

    def complete(self, run_id: int) -> MigrationRun:
        return self._transition(
            run_id,
            allowed=(MigrationRunStatus.RUNNING,),
            target=MigrationRunStatus.COMPLETED,
            message="Cannot complete migration with status: {status}",
            completed=True,
            clear_checkpoint=True,
        )

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def get_run(self, run_id: int) -> MigrationRun:
        run = self.session.get(MigrationRun, run_id)
        if run is None:
            raise NoResultFound(f"Migration run {run_id} not found.")
        return run

    def refresh_status(self, run_id: int) -> MigrationRunStatus:
        """Read the status column directly, bypassing the identity map."""
        status = self.session.scalar(select(MigrationRun.status).where(MigrationRun.id == run_id))
        if status is None:
            raise NoResultFound(f"Migration run {run_id} not found.")
        return _coerce_status(status)

    def find_active_run(self, integration_id: int) -> MigrationRun | None:
        stmt = (
            select(MigrationRun)
            .where(
                MigrationRun.integration_id == integration_id,
                MigrationRun.status.in_(ACTIVE_STATUSES),
            )
            .order_by(MigrationRun.id.desc())
        )
        return self.session.scalars(stmt).first()

    def describe(self, run_id: int, *, now: datetime | None = None) -> RunDescription:
        run = self.get_run(run_id)
        duplicates = (
            self.session.scalar(
                select(func.count()).select_from(ImportDuplicate).where(ImportDuplicate.run_id == run.id)
            )
            or 0
        )
        recent_errors = (
            self.session.scalar(
                select(func.count()).select_from(
                    select(MigrationError.id).where(MigrationError.run_id == run.id).limit(RECENT_ERROR_WINDOW).subquery()
                )
            )
            or 0
        )
        status = _coerce_status(run.status)
        return RunDescription(
            run=run,
            progress_percent=progress_percent(run.processed_entities, run.total_entities),
            estimated_seconds_remaining=estimate_seconds_remaining(
                status=status,
                started_at=run.started_at,
                processed=run.processed_entities or 0,
                total=run.total_entities,
                now=now,
            ),
            duplicates_linked=duplicates,
            recent_error_count=recent_errors,
        )

    def list_runs(self, filters: RunFilters) -> RunListResult:
        predicates = []
        if filters.integration_id is not None:
            predicates.append(MigrationRun.integration_id == filters.integration_id)
        if filters.statuses:
            predicates.append(MigrationRun.status.in_(filters.statuses))

        total = self.session.scalar(select(func.count()).select_from(MigrationRun).where(*predicates)) or 0
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, limit=filters.limit, total_pages=0)

        items = list(
            self.session.scalars(
                select(MigrationRun)
                .where(*predicates)
                .order_by(MigrationRun.created_at.desc(), MigrationRun.id.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
        )
        total_pages = (total + filters.limit - 1) // filters.limit
        return RunListResult(items=items, total=total, page=filters.page, limit=filters.limit, total_pages=total_pages)

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _transition(
        self,
        run_id: int,
        *,
        allowed: Sequence[MigrationRunStatus],
        target: MigrationRunStatus,
        message: str,
        completed: bool = False,
        clear_checkpoint: bool = False,
    ) -> MigrationRun:
        now = utcnow()
        values: dict[str, Any] = {"status": target, "updated_at": now}
        if completed:
            values["completed_at"] = now
        if clear_checkpoint:
            values["checkpoint_json"] = None

        result = self.session.execute(
            update(MigrationRun)
            .where(MigrationRun.id == run_id, MigrationRun.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            current = self.refresh_status(run_id)
            raise InvalidTransition(message.format(status=current.value), status=current)

        self.session.commit()
        run = self.get_run(run_id)
        self.session.refresh(run)
        record_run_transition(target.value)
        self.logger.info(
            f"Migration run moved to {target.value}",
            extra={"sync_run_id": run_id, "sync_status": target.value},
        )
        return run


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate.strip()))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | MigrationRunStatus) -> MigrationRunStatus:
    if isinstance(value, MigrationRunStatus):
        return value
    normalized = str(value).strip().upper()
    try:
        return MigrationRunStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_run_type(value: str | MigrationRunType) -> MigrationRunType:
    if isinstance(value, MigrationRunType):
        return value
    normalized = str(value or "").strip().upper()
    try:
        return MigrationRunType(normalized)
    except ValueError:
        raise ValueError(f"Unsupported run type '{value}'. Expected FULL or INCREMENTAL.") from None
