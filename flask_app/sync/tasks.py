"""
Sync Celery tasks and the in-process run entry point they share.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from celery import shared_task
from flask import Flask, current_app

from flask_app.models import Integration, MigrationErrorType, MigrationRun, db
from flask_app.sync.celery_app import get_celery_app
from flask_app.sync.client import CrmClient
from flask_app.sync.integrations import create_crm_client
from flask_app.sync.pipeline import ErrorRecorder, IntegrationNotReady, PageProcessor, ProcessResult
from flask_app.sync.registry import get_entity_registry
from flask_app.sync.vault import VaultError

ClientFactory = Callable[[Integration], CrmClient]


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="sync.pipeline.process_run", bind=True)
def process_run(self, *, run_id: int) -> dict[str, Any]:
    """
    Process a migration run from its checkpoint on the sync worker.
    """
    result = run_migration(run_id)
    return result.to_dict()


def page_sizes_from_config(app: Flask) -> dict[str, int]:
    return {
        name: int(app.config.get(descriptor.page_size_key) or app.config.get("SYNC_PAGE_SIZE", 100))
        for name, descriptor in get_entity_registry().items()
    }


def run_migration(run_id: int, *, client_factory: ClientFactory | None = None) -> ProcessResult:
    """
    Run one processing pass for ``run_id`` in the current app context.

    Credentials are decrypted once here. If that fails the run stays RUNNING
    with a CREDENTIALS error recorded.
    """

    app = current_app._get_current_object()
    run = db.session.get(MigrationRun, run_id)
    if run is None:
        raise ValueError(f"Migration run {run_id} not found.")

    integration = db.session.get(Integration, run.integration_id)
    factory = client_factory or create_crm_client
    try:
        if integration is None:
            raise IntegrationNotReady(f"Integration {run.integration_id} no longer exists.")
        client = factory(integration)
    except (VaultError, IntegrationNotReady) as exc:
        ErrorRecorder(logger=app.logger).record(
            run_id,
            "integration",
            None,
            MigrationErrorType.CREDENTIALS,
            str(exc),
            {"exception": type(exc).__name__, "integration_id": run.integration_id},
        )
        app.logger.error(
            "Sync run could not start: credentials unavailable",
            extra={"sync_run_id": run_id, "sync_integration_id": run.integration_id},
        )
        return ProcessResult(run_id=run_id, reason="credentials_failed", status=run.status)

    processor = PageProcessor(
        run_id,
        client,
        source=app.config.get("SYNC_SOURCE_NAME", "CRM"),
        page_sizes=page_sizes_from_config(app),
        logger=app.logger,
    )
    result = processor.run()
    app.logger.info(
        "Sync pass finished",
        extra={
            "sync_run_id": run_id,
            "sync_stop_reason": result.reason,
            "sync_status": result.status.value,
            "sync_pages_processed": result.pages_processed,
        },
    )
    return result


def dispatch_run(run: MigrationRun, *, app: Flask | None = None) -> dict[str, Any]:
    """
    Queue the run on the sync worker when enabled, otherwise process it inline.
    """
    app = app or current_app._get_current_object()
    state = app.extensions.get("sync", {})
    if state.get("worker_enabled"):
        celery_app = get_celery_app(app)
        task = celery_app.tasks.get("sync.pipeline.process_run") if celery_app is not None else None
        if task is not None:
            async_result = task.apply_async(kwargs={"run_id": run.id})
            app.logger.info(
                "Queued migration run",
                extra={"sync_run_id": run.id, "sync_task_id": async_result.id},
            )
            return {"mode": "queued", "taskId": async_result.id}
        app.logger.warning("Sync worker enabled but process_run task unavailable; running inline.")

    result = run_migration(run.id)
    return {"mode": "inline", **result.to_dict()}
