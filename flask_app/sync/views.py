"""
Sync blueprint endpoints: health, integrations, run control and error logs.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import SyncMonitoring
from flask_app.models.base import isoformat
from flask_app.sync.integrations import (
    check_connection,
    create_integration,
    get_integration,
    rotate_credentials,
    serialize_integration,
)
from flask_app.sync.pipeline import (
    ErrorFilters,
    ErrorLogService,
    IntegrationNotReady,
    InvalidTransition,
    MigrationRunController,
    RunFilters,
    progress_percent,
    serialize_error,
)
from flask_app.sync.service import ActiveRunExists, start_run
from flask_app.sync.tasks import dispatch_run
from flask_app.sync.vault import VaultError
from flask_app.utils.sync import get_page_size_limits, is_sync_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app

sync_blueprint = Blueprint("sync", __name__, url_prefix="/sync")

CANCEL_MESSAGE = "Migration cancelled. In-flight pages may still complete, but no new pages will be processed."


@sync_blueprint.get("/health")
def sync_healthcheck():
    """
    Lightweight health endpoint proving the sync blueprint mounted correctly.
    """
    sync_state = current_app.extensions.get("sync", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": sync_state.get("enabled", False),
                "entityTypes": list(sync_state.get("entity_types", ())),
                "workerEnabled": sync_state.get("worker_enabled", False),
            }
        ),
        200,
    )


@sync_blueprint.get("/worker_health")
def sync_worker_health():
    """
    Validate sync worker availability via the heartbeat task.
    """
    sync_state = current_app.extensions.get("sync", {})
    enabled = sync_state.get("enabled", False)
    worker_enabled = sync_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "sync_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set SYNC_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        payload["status"] = "error"
        payload["error"] = "celery_app_unavailable"
        return jsonify(payload), 500

    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Sync worker health check failed.", exc_info=exc)
        payload["status"] = "error"
        payload["error"] = str(exc)
        return jsonify(payload), 500


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _ensure_sync_enabled_api():
    if not is_sync_enabled(current_app):
        return _json_error("Sync is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _controller() -> MigrationRunController:
    return MigrationRunController(logger=current_app.logger)


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    if isinstance(value, (tuple, list)):
        return tuple(v for v in value if v)
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


@sync_blueprint.post("/integrations")
def sync_integrations_create():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled

    body = _json_body()
    try:
        integration = create_integration(
            body.get("name", ""),
            body.get("apiToken", ""),
            provider=body.get("provider") or "crm",
        )
    except (ValueError, VaultError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(serialize_integration(integration)), HTTPStatus.CREATED


@sync_blueprint.get("/integrations/<int:integration_id>")
def sync_integration_detail(integration_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    try:
        integration = get_integration(integration_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify(serialize_integration(integration)), HTTPStatus.OK


@sync_blueprint.put("/integrations/<int:integration_id>/credentials")
def sync_integration_credentials(integration_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    body = _json_body()
    try:
        integration = rotate_credentials(integration_id, body.get("apiToken", ""))
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except (ValueError, VaultError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    return jsonify(serialize_integration(integration)), HTTPStatus.OK


@sync_blueprint.post("/integrations/<int:integration_id>/test")
def sync_integration_test(integration_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    try:
        result = check_connection(integration_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    status = HTTPStatus.OK if result["ok"] else HTTPStatus.BAD_GATEWAY
    return jsonify(result), status


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@sync_blueprint.get("/runs")
def sync_runs_list():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled

    raw = request.args
    default_limit, max_limit = get_page_size_limits("runs", current_app)
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            limit=raw.get("limit"),
            integration_id=raw.get("integrationId"),
            statuses=_split_csv(raw.get("status")),
            default_limit=default_limit,
            max_limit=max_limit,
        )
    except ValueError as exc:
        SyncMonitoring.record_runs_list(duration_seconds=0.0, status="invalid_request", result_count=0)
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        result = _controller().list_runs(filters)
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Sync runs list failed.", exc_info=exc)
        SyncMonitoring.record_runs_list(
            duration_seconds=time.perf_counter() - start_time, status="error", result_count=0
        )
        return _json_error("Failed to load migration runs.", HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    SyncMonitoring.record_runs_list(duration_seconds=duration, status="success", result_count=len(result.items))

    runs = []
    for run in result.items:
        runs.append(
            {
                "id": run.id,
                "integrationId": run.integration_id,
                "runType": run.run_type.value,
                "status": run.status.value,
                "entityTypes": list(run.ordered_entity_types),
                "totalEntities": run.total_entities,
                "processedEntities": run.processed_entities,
                "createdRecords": run.created_records,
                "updatedRecords": run.updated_records,
                "skippedRecords": run.skipped_records,
                "errorCount": run.error_count,
                "progressPercent": progress_percent(run.processed_entities, run.total_entities),
                "startedAt": isoformat(run.started_at),
                "completedAt": isoformat(run.completed_at),
                "createdAt": isoformat(run.created_at),
            }
        )

    current_app.logger.info(
        "Sync runs list retrieved",
        extra={
            "sync_run_count": len(result.items),
            "sync_total_runs": result.total,
            "sync_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify({"runs": runs, "pagination": result.pagination()}), HTTPStatus.OK


@sync_blueprint.post("/runs")
def sync_runs_start():
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled

    body = _json_body()
    integration_id = body.get("integrationId")
    if not isinstance(integration_id, int):
        return _json_error("integrationId is required.", HTTPStatus.BAD_REQUEST)
    entity_types = body.get("entityTypes") or ()
    if isinstance(entity_types, str):
        entity_types = _split_csv(entity_types)

    try:
        run = start_run(integration_id, body.get("runType") or "FULL", entity_types)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    except ActiveRunExists as exc:
        return jsonify({"error": str(exc), "activeRunId": exc.run.id}), HTTPStatus.CONFLICT
    except (IntegrationNotReady, VaultError, ValueError) as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    dispatched = dispatch_run(run)
    status = HTTPStatus.ACCEPTED if dispatched["mode"] == "queued" else HTTPStatus.CREATED
    return jsonify({"runId": run.id, **dispatched}), status


@sync_blueprint.get("/runs/<int:run_id>")
def sync_run_detail(run_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled

    start_time = time.perf_counter()
    try:
        description = _controller().describe(run_id)
    except NoResultFound:
        SyncMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Migration run {run_id} not found.", HTTPStatus.NOT_FOUND)
    except Exception as exc:  # pragma: no cover
        current_app.logger.exception("Sync run detail failed.", exc_info=exc)
        SyncMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="error")
        return _json_error("Failed to load run detail.", HTTPStatus.INTERNAL_SERVER_ERROR)

    SyncMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(description.to_dict()), HTTPStatus.OK


def _apply_transition(run_id: int, action: str):
    try:
        return getattr(_controller(), action)(run_id), None
    except NoResultFound:
        return None, _json_error(f"Migration run {run_id} not found.", HTTPStatus.NOT_FOUND)
    except InvalidTransition as exc:
        return None, _json_error(str(exc), HTTPStatus.BAD_REQUEST)


@sync_blueprint.post("/runs/<int:run_id>/pause")
def sync_run_pause(run_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    run, error = _apply_transition(run_id, "pause")
    if error:
        return error
    return (
        jsonify(
            {
                "id": run.id,
                "status": run.status.value,
                "message": "Migration paused. The page in progress will finish before processing stops.",
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.post("/runs/<int:run_id>/cancel")
def sync_run_cancel(run_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    run, error = _apply_transition(run_id, "cancel")
    if error:
        return error
    return (
        jsonify(
            {
                "id": run.id,
                "status": run.status.value,
                "message": CANCEL_MESSAGE,
                "finalProgress": {
                    "processed": run.processed_entities,
                    "created": run.created_records,
                    "updated": run.updated_records,
                    "errors": run.error_count,
                },
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.post("/runs/<int:run_id>/resume")
def sync_run_resume(run_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    run, error = _apply_transition(run_id, "resume")
    if error:
        return error
    checkpoint = run.checkpoint
    dispatched = dispatch_run(run)
    return (
        jsonify(
            {
                "id": run.id,
                "status": run.status.value,
                "resumedFrom": checkpoint.to_json() if checkpoint else None,
                **dispatched,
            }
        ),
        HTTPStatus.OK,
    )


# ---------------------------------------------------------------------------
# Error log
# ---------------------------------------------------------------------------


@sync_blueprint.get("/runs/<int:run_id>/errors")
def sync_run_errors(run_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled

    raw = request.args
    default_limit, max_limit = get_page_size_limits("errors", current_app)
    try:
        filters = ErrorFilters.coerce(
            page=raw.get("page"),
            limit=raw.get("limit"),
            entity_type=raw.get("entityType"),
            error_type=raw.get("errorType"),
            resolved=raw.get("resolved"),
            default_limit=default_limit,
            max_limit=max_limit,
        )
    except ValueError as exc:
        SyncMonitoring.record_errors_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        result = ErrorLogService().list_errors(run_id, filters)
    except NoResultFound:
        SyncMonitoring.record_errors_list(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Migration run {run_id} not found.", HTTPStatus.NOT_FOUND)

    SyncMonitoring.record_errors_list(duration_seconds=time.perf_counter() - start_time, status="success")
    return (
        jsonify(
            {
                "errors": [serialize_error(error) for error in result.errors],
                "pagination": result.pagination(),
            }
        ),
        HTTPStatus.OK,
    )


@sync_blueprint.post("/runs/<int:run_id>/errors/<int:error_id>/resolve")
def sync_run_error_resolve(run_id: int, error_id: int):
    disabled = _ensure_sync_enabled_api()
    if disabled:
        return disabled
    try:
        error = ErrorLogService().resolve_error(run_id, error_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)
    return jsonify(serialize_error(error)), HTTPStatus.OK
