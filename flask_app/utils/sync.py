"""
Utility helpers for sync feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_sync_enabled(app=None) -> bool:
    """Return True when the sync feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("SYNC_ENABLED", False))


def get_sync_entity_types(app=None) -> Tuple[str, ...]:
    """Return the configured entity types in phase order."""
    config = _get_config(app)
    entity_types: Iterable[str] = config.get("SYNC_ENTITY_TYPES", ())
    return tuple(entity_types)


def get_page_size_limits(kind: str, app=None) -> tuple[int, int]:
    """Return ``(default, maximum)`` page sizes for the ``runs`` or ``errors`` listings."""
    config = _get_config(app)
    prefix = f"SYNC_{kind.upper()}_PAGE_SIZE"
    return int(config.get(f"{prefix}_DEFAULT", 20)), int(config.get(f"{prefix}_MAX", 100))
