"""
Operator CLI for the sync engine (``flask sync ...``).
"""

from __future__ import annotations

import json
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from flask_app.sync.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from flask_app.sync.integrations import check_connection, create_integration, rotate_credentials
from flask_app.sync.pipeline import (
    ErrorFilters,
    ErrorLogService,
    IntegrationNotReady,
    InvalidTransition,
    MigrationRunController,
    RunFilters,
    serialize_error,
)
from flask_app.sync.service import ActiveRunExists, start_run
from flask_app.sync.tasks import dispatch_run, run_migration
from flask_app.sync.vault import VaultError
from flask_app.utils.sync import get_page_size_limits, get_sync_entity_types, is_sync_enabled


def _load_app(ctx):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    CRM sync management commands.

    Displays the enabled entity types when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync CLI commands.")
    if ctx.invoked_subcommand is None:
        click.echo("Enabled sync entity types (phase order):")
        for entity_type in get_sync_entity_types(app):
            click.echo(f"  - {entity_type}")


def get_disabled_sync_group() -> click.Group:
    """
    Return a minimal command group that informs the operator sync is disabled.
    """

    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the sync package "
            "initialises before running worker commands."
        )
    return celery_app


def _format_run(payload: dict) -> str:
    progress = payload["progressPercent"]
    checkpoint = payload["checkpoint"]
    return (
        f"Run {payload['id']} ({payload['runType']}) status {payload['status']}\n"
        f"  integration : {payload['integrationId']}\n"
        f"  entity types: {', '.join(payload['entityTypes'])}\n"
        f"  progress    : {payload['processedEntities']}/{payload['totalEntities'] if payload['totalEntities'] is not None else '?'}"
        f" ({progress if progress is not None else '-'}%)\n"
        f"  created     : {payload['createdRecords']}\n"
        f"  updated     : {payload['updatedRecords']}\n"
        f"  skipped     : {payload['skippedRecords']}\n"
        f"  errors      : {payload['errorCount']}\n"
        f"  duplicates  : {payload['duplicatesLinked']}\n"
        f"  checkpoint  : {json.dumps(checkpoint) if checkpoint else '-'}"
    )


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


@sync_cli.group(name="integrations")
def integrations_group():
    """Manage CRM integrations and their stored credentials."""


@integrations_group.command("add")
@click.option("--name", required=True, help="Display name for the integration.")
@click.option("--provider", default="crm", show_default=True)
@click.option("--token", prompt=True, hide_input=True, help="API token issued by the CRM.")
@click.pass_context
def integrations_add(ctx, name: str, provider: str, token: str):
    """Create an integration and store its encrypted API token."""
    _load_app(ctx)
    try:
        integration = create_integration(name, token, provider=provider)
    except (ValueError, VaultError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"integration_id": integration.id, "status": integration.status.value}))


@integrations_group.command("rotate")
@click.option("--integration-id", required=True, type=int)
@click.option("--token", prompt=True, hide_input=True, help="Replacement API token.")
@click.pass_context
def integrations_rotate(ctx, integration_id: int, token: str):
    """Re-encrypt the integration's credentials with a new token."""
    _load_app(ctx)
    try:
        integration = rotate_credentials(integration_id, token)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except (ValueError, VaultError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"integration_id": integration.id, "status": integration.status.value}))


@integrations_group.command("test")
@click.option("--integration-id", required=True, type=int)
@click.pass_context
def integrations_test(ctx, integration_id: int):
    """Decrypt credentials and fetch one record to verify connectivity."""
    _load_app(ctx)
    try:
        result = check_connection(integration_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(result))
    if not result["ok"]:
        raise click.ClickException(f"Connection test failed: {result['error']}")


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@sync_cli.group(name="runs")
def runs_group():
    """Start, inspect and control migration runs."""


@runs_group.command("start")
@click.option("--integration-id", required=True, type=int)
@click.option(
    "--run-type",
    type=click.Choice(["FULL", "INCREMENTAL"], case_sensitive=False),
    default="FULL",
    show_default=True,
)
@click.option("--entity-types", help="Comma-separated entity types; defaults to all enabled types.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Process within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def runs_start(ctx, integration_id: int, run_type: str, entity_types: str | None, inline: bool):
    """Create a migration run and process or queue it."""
    app = _load_app(ctx)
    try:
        run = start_run(integration_id, run_type.upper(), _split_csv(entity_types), app=app)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    except (ActiveRunExists, IntegrationNotReady, VaultError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if inline:
        result = run_migration(run.id)
        click.echo(json.dumps({"run_id": run.id, "mode": "inline", **result.to_dict()}))
        return

    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.pipeline.process_run")
    if task is None:
        raise click.ClickException("Task 'sync.pipeline.process_run' is not registered.")
    async_result = task.apply_async(kwargs={"run_id": run.id})
    click.echo(json.dumps({"run_id": run.id, "mode": "queued", "taskId": async_result.id}))


@runs_group.command("list")
@click.option("--integration-id", type=int)
@click.option("--status", "statuses", help="Comma-separated statuses (RUNNING, PAUSED, CANCELLED, COMPLETED).")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--limit", type=int)
@click.pass_context
def runs_list(ctx, integration_id: int | None, statuses: str | None, page: int, limit: int | None):
    """List migration runs, newest first."""
    app = _load_app(ctx)
    default_limit, max_limit = get_page_size_limits("runs", app)
    try:
        filters = RunFilters.coerce(
            page=page,
            limit=limit,
            integration_id=integration_id,
            statuses=_split_csv(statuses),
            default_limit=default_limit,
            max_limit=max_limit,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    controller = MigrationRunController(logger=app.logger)
    result = controller.list_runs(filters)
    if not result.items:
        click.echo("No migration runs found.")
        return
    for run in result.items:
        click.echo(
            f"{run.id:>6}  {run.status.value:<10} integration={run.integration_id} "
            f"processed={run.processed_entities} errors={run.error_count} "
            f"types={','.join(run.ordered_entity_types)}"
        )
    click.echo(f"Page {result.page}/{result.total_pages} ({result.total} runs)")


@runs_group.command("show")
@click.argument("run_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit the run resource as JSON.")
@click.pass_context
def runs_show(ctx, run_id: int, as_json: bool):
    """Describe a migration run with progress and ETA."""
    app = _load_app(ctx)
    try:
        payload = MigrationRunController(logger=app.logger).describe(run_id).to_dict()
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, indent=2) if as_json else _format_run(payload))


def _transition(ctx, run_id: int, action: str):
    app = _load_app(ctx)
    controller = MigrationRunController(logger=app.logger)
    try:
        run = getattr(controller, action)(run_id)
    except (NoResultFound, InvalidTransition) as exc:
        raise click.ClickException(str(exc)) from exc
    return app, run


@runs_group.command("pause")
@click.argument("run_id", type=int)
@click.pass_context
def runs_pause(ctx, run_id: int):
    """Ask a RUNNING run to stop before its next page."""
    _, run = _transition(ctx, run_id, "pause")
    click.echo(f"Run {run.id} paused. The current page will finish first.")


@runs_group.command("cancel")
@click.argument("run_id", type=int)
@click.pass_context
def runs_cancel(ctx, run_id: int):
    """Cancel a RUNNING or PAUSED run."""
    _, run = _transition(ctx, run_id, "cancel")
    click.echo(
        f"Run {run.id} cancelled. In-flight pages may still complete, but no new pages will be processed. "
        f"Processed {run.processed_entities}, created {run.created_records}, updated {run.updated_records}, "
        f"errors {run.error_count}."
    )


@runs_group.command("resume")
@click.argument("run_id", type=int)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Continue within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def runs_resume(ctx, run_id: int, inline: bool):
    """Resume a PAUSED run from its checkpoint."""
    app, run = _transition(ctx, run_id, "resume")
    if inline:
        result = run_migration(run.id)
        click.echo(json.dumps({"run_id": run.id, "mode": "inline", **result.to_dict()}))
        return
    click.echo(json.dumps({"run_id": run.id, **dispatch_run(run, app=app)}))


@runs_group.command("errors")
@click.argument("run_id", type=int)
@click.option("--entity-type")
@click.option("--error-type")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--limit", type=int)
@click.pass_context
def runs_errors(ctx, run_id: int, entity_type: str | None, error_type: str | None, page: int, limit: int | None):
    """Print a page of a run's error log as JSON."""
    app = _load_app(ctx)
    default_limit, max_limit = get_page_size_limits("errors", app)
    try:
        filters = ErrorFilters.coerce(
            page=page,
            limit=limit,
            entity_type=entity_type,
            error_type=error_type,
            default_limit=default_limit,
            max_limit=max_limit,
        )
        result = ErrorLogService().list_errors(run_id, filters)
    except (NoResultFound, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        json.dumps(
            {"errors": [serialize_error(error) for error in result.errors], "pagination": result.pagination()},
            indent=2,
        )
    )


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("sync", {})
    if not state.get("worker_enabled") and not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag so runs are queued to the worker.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)

    state = app.extensions.get("sync", {})
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
