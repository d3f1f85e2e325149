"""
Operator-level run actions shared by the HTTP API and the CLI.
"""

from __future__ import annotations

from typing import Iterable

from flask import Flask, current_app

from flask_app.models import MigrationRun, MigrationRunType
from flask_app.sync.integrations import ensure_ready, get_integration
from flask_app.sync.pipeline import MigrationRunController
from flask_app.utils.sync import get_sync_entity_types


class ActiveRunExists(RuntimeError):
    """Raised when an integration already has a RUNNING or PAUSED run."""

    def __init__(self, run: MigrationRun) -> None:
        super().__init__(
            f"Integration {run.integration_id} already has an active migration run "
            f"({run.id}, status {run.status.value}). Pause, resume or cancel it first."
        )
        self.run = run


def start_run(
    integration_id: int,
    run_type: MigrationRunType | str,
    entity_types: Iterable[str] | None,
    *,
    controller: MigrationRunController | None = None,
    app: Flask | None = None,
) -> MigrationRun:
    """
    Validate the integration and create a RUNNING run.

    Credentials are decrypted here so a bad envelope or missing master key
    stops the run before it exists.
    """

    app = app or current_app._get_current_object()
    controller = controller or MigrationRunController(logger=app.logger)
    integration = get_integration(integration_id)
    active = controller.find_active_run(integration.id)
    if active is not None:
        raise ActiveRunExists(active)
    ensure_ready(integration)

    allowed = get_sync_entity_types(app)
    requested = list(entity_types or ()) or list(allowed)
    return controller.create(
        integration.id,
        run_type or MigrationRunType.FULL,
        requested,
        allowed_entity_types=allowed,
    )
