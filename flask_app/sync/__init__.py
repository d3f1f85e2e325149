"""
CRM sync engine package.

Registers the sync blueprint and CLI when ``SYNC_ENABLED`` is set and keeps
the engine state in ``app.extensions['sync']``.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import Flask

from flask_app.utils.sync import get_sync_entity_types, is_sync_enabled

from .celery_app import SYNC_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .metrics import record_sync_enabled
from .pipeline import ErrorLogService, MigrationRunController, RunFilters
from .registry import EntityDescriptor, get_entity_registry, resolve_entity_types
from .views import sync_blueprint

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "ErrorLogService",
    "MigrationRunController",
    "RunFilters",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "entity_types": (),
            "descriptors": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def init_sync(app: Flask) -> None:
    """
    Conditionally mount the sync blueprint and CLI based on configuration.

    Unknown entity types in ``SYNC_ENTITY_TYPES`` raise ``ValueError`` so a
    misconfigured deployment fails at startup.
    """
    enabled = is_sync_enabled(app)
    configured: Tuple[str, ...] = get_sync_entity_types(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "entity_types": configured,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
        }
    )
    record_sync_enabled(enabled)

    if not enabled:
        state["descriptors"] = ()
        _set_cli(app, enabled=False)
        app.logger.info("Sync disabled via SYNC_ENABLED flag; skipping registration.")
        return

    descriptors: Iterable[EntityDescriptor] = resolve_entity_types(configured, get_entity_registry())
    state["descriptors"] = tuple(descriptors)
    ensure_celery_app(app, state)

    if sync_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(sync_blueprint)
    elif sync_blueprint.name not in app.blueprints:
        app.logger.warning("Sync blueprint registration skipped because the app has already handled its first request.")
    _set_cli(app, enabled=True)

    app.logger.info("Sync enabled for entity types: %s", ", ".join(configured) or "none")
