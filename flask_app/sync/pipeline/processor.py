"""
Checkpointed page processor.

Drives a run through its entity types one page at a time. Every record is
committed on its own so one failure never rolls back its neighbours; the
counters and the checkpoint for a page are written together in a single
UPDATE once the page is done. The run's status is re-read before each page
fetch, which is the only point at which a pause or cancel takes effect.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from flask_app.models import (
    Checkpoint,
    Integration,
    MigrationErrorType,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
    db,
)
from flask_app.models.base import isoformat
from flask_app.sync.client import CrmApiError, CrmClient, CrmClientError, CrmPage, RateLimitError
from flask_app.sync.mapping import MappingError, MappingSpec, RecordValidationError, get_mapping
from flask_app.sync.metrics import record_page, record_records
from flask_app.sync.pipeline.error_recorder import ErrorRecorder
from flask_app.sync.pipeline.idempotency import MissingExternalIdentifier
from flask_app.sync.pipeline.loaders import LoaderCounters
from flask_app.sync.pipeline.merge_guard import MergeGuard
from flask_app.sync.pipeline.run_controller import InvalidTransition, MigrationRunController
from flask_app.sync.registry import EntityDescriptor, get_entity_registry

DEFAULT_PAGE_SIZE = 100

StopReason = Literal["completed", "paused", "cancelled", "fetch_failed", "credentials_failed", "not_running"]


@dataclass(slots=True)
class PageResult:
    """Outcome of one processed page."""

    entity_type: str
    page: int
    fetched: int
    counters: LoaderCounters
    errors: int
    has_more: bool
    total_count: int | None


@dataclass(slots=True)
class ProcessResult:
    """Outcome of one processing pass over a run."""

    run_id: int
    reason: StopReason
    status: MigrationRunStatus
    pages: list[PageResult] = field(default_factory=list)

    @property
    def pages_processed(self) -> int:
        return len(self.pages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "reason": self.reason,
            "status": self.status.value,
            "pages_processed": self.pages_processed,
        }


class RunCancellationToken:
    """
    Stop flag for a processing pass, backed by the run's status column.

    The column is the durable state; ``refresh`` re-reads it once per page.
    """

    def __init__(self, controller: MigrationRunController, run_id: int) -> None:
        self.controller = controller
        self.run_id = run_id
        self.status: MigrationRunStatus | None = None

    def refresh(self) -> MigrationRunStatus:
        self.status = self.controller.refresh_status(self.run_id)
        return self.status


class PageProcessor:
    """Process a migration run page by page, resuming from its checkpoint."""

    def __init__(
        self,
        run_id: int,
        client: CrmClient,
        *,
        source: str = "CRM",
        session: Session | None = None,
        controller: MigrationRunController | None = None,
        recorder: ErrorRecorder | None = None,
        merge_guard: MergeGuard | None = None,
        registry: Mapping[str, EntityDescriptor] | None = None,
        page_sizes: Mapping[str, int] | None = None,
        mapping_loader: Callable[[str], MappingSpec] = get_mapping,
        logger: logging.Logger | None = None,
    ) -> None:
        self.run_id = run_id
        self.client = client
        self.source = source
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)
        self.controller = controller or MigrationRunController(session=self.session, logger=self.logger)
        self.recorder = recorder or ErrorRecorder(session=self.session, logger=self.logger)
        self.merge_guard = merge_guard or MergeGuard(session=self.session, logger=self.logger)
        self.registry = registry or get_entity_registry()
        self.page_sizes = dict(page_sizes or {})
        self.mapping_loader = mapping_loader
        self.token = RunCancellationToken(self.controller, run_id)

    # Public API -----------------------------------------------------------------

    def run(self) -> ProcessResult:
        """Process pages until the run completes, is paused or cancelled, or a fetch fails."""

        run = self.controller.get_run(self.run_id)
        if self.token.refresh() != MigrationRunStatus.RUNNING:
            return ProcessResult(run_id=self.run_id, reason="not_running", status=self.token.status)

        phases = run.ordered_entity_types
        if not phases:
            return self._complete([])
        run_type = run.run_type
        started_at = isoformat(run.started_at)
        checkpoint = run.checkpoint
        if checkpoint is None or checkpoint.phase not in phases:
            checkpoint = Checkpoint(phase=phases[0], page=1)

        pages: list[PageResult] = []
        for phase in phases[phases.index(checkpoint.phase):]:
            descriptor = self._descriptor(phase)
            page = checkpoint.page if phase == checkpoint.phase else 1
            updated_since = None
            if run_type == MigrationRunType.INCREMENTAL:
                updated_since = self._updated_since(run.integration_id, phase)
            page_size = self.page_sizes.get(phase, DEFAULT_PAGE_SIZE)

            while True:
                if self.token.refresh() != MigrationRunStatus.RUNNING:
                    return self._stopped(pages)
                try:
                    result = self.process_page(
                        descriptor,
                        page,
                        page_size,
                        updated_since=updated_since,
                    )
                except CrmClientError as exc:
                    self._record_fetch_failure(descriptor, page, exc)
                    return ProcessResult(
                        run_id=self.run_id,
                        reason="fetch_failed",
                        status=MigrationRunStatus.RUNNING,
                        pages=pages,
                    )
                pages.append(result)
                if not result.has_more:
                    break
                page += 1

            self._finish_phase(run.integration_id, phase, phases, started_at)

        if self.token.refresh() != MigrationRunStatus.RUNNING:
            return self._stopped(pages)
        return self._complete(pages)

    def process_page(
        self,
        descriptor: EntityDescriptor,
        page: int,
        page_size: int,
        *,
        updated_since: str | None = None,
    ) -> PageResult:
        """Fetch one page, apply every record and persist counters with the next checkpoint."""

        started = time.perf_counter()
        try:
            crm_page = self.client.fetch_page(
                descriptor.name,
                page=page,
                per_page=page_size,
                updated_since=updated_since,
            )
        except CrmClientError:
            record_page(entity_type=descriptor.name, outcome="failure", duration_seconds=time.perf_counter() - started)
            raise

        mapping = self.mapping_loader(descriptor.mapping_file)
        loader = descriptor.loader(
            descriptor,
            mapping,
            run_id=self.run_id,
            source=self.source,
            session=self.session,
            merge_guard=self.merge_guard,
            logger=self.logger,
        )

        counters = LoaderCounters()
        errors = 0
        for record in crm_page.records:
            try:
                outcome = loader.load(record)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                errors += 1
                self.recorder.record(
                    self.run_id,
                    descriptor.name,
                    record.id or None,
                    _classify_record_error(exc),
                    str(exc),
                    _error_details(exc, page=page),
                )
                continue
            counters.record(outcome)

        self._persist_page_progress(descriptor.name, page, crm_page, counters)
        duration = time.perf_counter() - started
        record_page(entity_type=descriptor.name, outcome="success", duration_seconds=duration)
        record_records(descriptor.name, {**counters.to_dict(), "failed": errors})
        self.logger.info(
            "Processed sync page",
            extra={
                "sync_run_id": self.run_id,
                "sync_entity_type": descriptor.name,
                "sync_page": page,
                "sync_record_count": len(crm_page.records),
                "sync_counts": counters.to_dict(),
                "sync_errors": errors,
                "sync_duration_seconds": round(duration, 3),
            },
        )
        return PageResult(
            entity_type=descriptor.name,
            page=page,
            fetched=len(crm_page.records),
            counters=counters,
            errors=errors,
            has_more=crm_page.has_more,
            total_count=crm_page.total_count,
        )

    # Internal helpers -----------------------------------------------------------

    def _descriptor(self, phase: str) -> EntityDescriptor:
        try:
            return self.registry[phase]
        except KeyError:
            raise ValueError(f"Run {self.run_id} references unknown entity type '{phase}'.") from None

    def _persist_page_progress(
        self,
        entity_type: str,
        page: int,
        crm_page: CrmPage,
        counters: LoaderCounters,
    ) -> None:
        processed = MigrationRun.processed_entities + len(crm_page.records)
        values: dict[str, Any] = {
            "processed_entities": processed,
            "created_records": MigrationRun.created_records + counters.created,
            "updated_records": MigrationRun.updated_records + counters.updated,
            "skipped_records": MigrationRun.skipped_records + counters.skipped,
            "checkpoint_json": Checkpoint(phase=entity_type, page=page + 1).to_json(),
        }
        total = MigrationRun.total_entities
        if page == 1 and crm_page.total_count:
            total = func.coalesce(MigrationRun.total_entities, 0) + crm_page.total_count
        # Keep total >= processed once the total is known
        values["total_entities"] = case(
            (total.is_(None), None),
            (total < processed, processed),
            else_=total,
        )
        self.session.execute(
            update(MigrationRun)
            .where(MigrationRun.id == self.run_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

    def _finish_phase(self, integration_id: int, phase: str, phases: tuple[str, ...], started_at: str | None) -> None:
        position = phases.index(phase)
        integration = self.session.get(Integration, integration_id)
        if integration is not None and started_at:
            integration.record_sync_timestamp(phase, started_at)
        if position + 1 < len(phases):
            self.session.execute(
                update(MigrationRun)
                .where(MigrationRun.id == self.run_id)
                .values(checkpoint_json=Checkpoint(phase=phases[position + 1], page=1).to_json())
                .execution_options(synchronize_session=False)
            )
        self.session.commit()
        self.logger.info(
            "Finished sync phase",
            extra={"sync_run_id": self.run_id, "sync_entity_type": phase},
        )

    def _updated_since(self, integration_id: int, phase: str) -> str | None:
        integration = self.session.get(Integration, integration_id)
        return integration.last_sync_for(phase) if integration else None

    def _record_fetch_failure(self, descriptor: EntityDescriptor, page: int, exc: CrmClientError) -> None:
        error_type = MigrationErrorType.RATE_LIMIT if isinstance(exc, RateLimitError) else MigrationErrorType.API
        self.recorder.record(
            self.run_id,
            descriptor.name,
            None,
            error_type,
            str(exc),
            _error_details(exc, page=page),
        )
        self.logger.error(
            "Sync pass stopped: CRM page fetch failed",
            extra={
                "sync_run_id": self.run_id,
                "sync_entity_type": descriptor.name,
                "sync_page": page,
                "sync_error_type": error_type.value,
            },
        )

    def _stopped(self, pages: list[PageResult]) -> ProcessResult:
        status = self.token.status
        reason: StopReason = "cancelled" if status == MigrationRunStatus.CANCELLED else "paused"
        if status not in (MigrationRunStatus.CANCELLED, MigrationRunStatus.PAUSED):
            reason = "not_running"
        self.logger.info(
            f"Sync pass stopped: run is {status.value}",
            extra={"sync_run_id": self.run_id, "sync_status": status.value},
        )
        return ProcessResult(run_id=self.run_id, reason=reason, status=status, pages=pages)

    def _complete(self, pages: list[PageResult]) -> ProcessResult:
        try:
            run = self.controller.complete(self.run_id)
        except InvalidTransition as exc:
            # Paused or cancelled between the last check and completion
            self.token.status = exc.status
            return self._stopped(pages)
        return ProcessResult(run_id=self.run_id, reason="completed", status=run.status, pages=pages)


def _classify_record_error(exc: Exception) -> MigrationErrorType:
    if isinstance(exc, (RecordValidationError, MissingExternalIdentifier)):
        return MigrationErrorType.VALIDATION
    if isinstance(exc, MappingError):
        return MigrationErrorType.TRANSFORM
    if isinstance(exc, RateLimitError):
        return MigrationErrorType.RATE_LIMIT
    if isinstance(exc, CrmClientError):
        return MigrationErrorType.API
    return MigrationErrorType.INSERT


def _error_details(exc: Exception, *, page: int) -> dict[str, Any]:
    details: dict[str, Any] = {"exception": type(exc).__name__, "page": page}
    field_name = getattr(exc, "field", None)
    if field_name:
        details["field"] = field_name
    if isinstance(exc, CrmApiError):
        details["status_code"] = exc.status_code
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        details["retry_after"] = exc.retry_after
    return details

