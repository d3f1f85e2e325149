"""Utilities for loading and applying CRM-to-local field mappings."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence

import yaml
from flask import current_app

MAPPING_CACHE_KEY = "_sync_mapping_cache"


class MappingLoadError(RuntimeError):
    """Raised when a mapping specification cannot be loaded or validated."""


class MappingError(ValueError):
    """Raised when a record cannot be transformed with a loaded mapping."""


class RecordValidationError(ValueError):
    """Raised when a mapped record is missing required values."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


@dataclass(frozen=True)
class MappingField:
    target: str
    source: str | None = None
    required: bool = False
    default: Any | None = None
    transform: str | None = None


@dataclass(frozen=True)
class MappingSpec:
    version: int
    entity: str
    fields: Sequence[MappingField]
    checksum: str
    path: Path

    @property
    def targets(self) -> tuple[str, ...]:
        return tuple(field.target for field in self.fields)


def _strip(value: Any) -> Any:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _lower(value: Any) -> Any:
    text = _strip(value)
    return text.lower() if text else None


def _digits(value: Any) -> Any:
    text = _strip(value)
    if not text:
        return None
    cleaned = re.sub(r"[^\d+]", "", text)
    if cleaned.startswith("+"):
        cleaned = "+" + cleaned[1:].replace("+", "")
    else:
        cleaned = cleaned.replace("+", "")
    return cleaned or None


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "strip": _strip,
    "lower": _lower,
    "normalize_email": _lower,
    "digits": _digits,
}


def load_mapping(path: str | Path) -> MappingSpec:
    """
    Load and validate a YAML mapping specification.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        entity = str(raw["entity"]).strip()
        fields_payload = raw["fields"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not entity:
        raise MappingLoadError("Mapping entity value cannot be empty.")

    fields: list[MappingField] = []
    seen_targets: set[str] = set()
    for entry in fields_payload or ():
        if not isinstance(entry, Mapping):
            raise MappingLoadError(f"Field definition must be a mapping, got {entry!r}")
        target = entry.get("target")
        if not target:
            raise MappingLoadError(f"Field entry missing 'target': {entry!r}")
        target = str(target).strip()
        if target in seen_targets:
            raise MappingLoadError(f"Duplicate target '{target}' in mapping.")
        seen_targets.add(target)
        source = entry.get("source")
        transform = entry.get("transform")
        if transform and str(transform).strip() not in TRANSFORMS:
            raise MappingLoadError(f"Unknown transform '{transform}' for field '{target}'.")
        field = MappingField(
            source=str(source).strip() if source else None,
            target=target,
            required=bool(entry.get("required", False)),
            default=entry.get("default"),
            transform=str(transform).strip() if transform else None,
        )
        if field.source is None and field.default is None:
            raise MappingLoadError(f"Field '{target}' requires either source or default.")
        fields.append(field)

    return MappingSpec(
        version=version,
        entity=entity,
        fields=tuple(fields),
        checksum=_compute_checksum(raw),
        path=path,
    )


def apply_mapping(spec: MappingSpec, payload: Mapping[str, Any]) -> dict[str, Any]:
    """
    Project an external payload onto local field names.

    Raises ``RecordValidationError`` when a required target ends up empty and
    ``MappingError`` when a transform cannot handle the incoming value.
    """

    mapped: dict[str, Any] = {}
    for field in spec.fields:
        value = payload.get(field.source) if field.source else None
        if value is None or value == "":
            value = field.default
        if field.transform and value is not None:
            try:
                value = TRANSFORMS[field.transform](value)
            except (TypeError, ValueError, AttributeError) as exc:
                raise MappingError(f"Transform '{field.transform}' failed for field '{field.target}': {exc}") from exc
        if field.required and (value is None or value == ""):
            raise RecordValidationError(f"Missing required field '{field.target}'.", field=field.target)
        mapped[field.target] = value
    return mapped


def get_mapping(filename: str) -> MappingSpec:
    """
    Load a mapping from ``SYNC_MAPPING_DIR`` (cached per app).
    The cache is invalidated when the file modification time changes.
    """

    mapping_dir = current_app.config.get("SYNC_MAPPING_DIR")
    if not mapping_dir:
        raise MappingLoadError("SYNC_MAPPING_DIR is not configured.")
    config_path = Path(mapping_dir) / filename
    if not config_path.exists():
        raise MappingLoadError(f"Mapping file not found at {config_path}")

    cache: dict[str, tuple[MappingSpec, float]] = current_app.extensions.setdefault(MAPPING_CACHE_KEY, {})
    cache_key = str(config_path)
    current_mtime = config_path.stat().st_mtime

    cached_entry = cache.get(cache_key)
    if cached_entry and cached_entry[1] == current_mtime:
        return cached_entry[0]

    if cached_entry:
        current_app.logger.debug(f"Mapping file changed, reloading: {config_path}")
    spec = load_mapping(config_path)
    cache[cache_key] = (spec, current_mtime)
    return spec


def _compute_checksum(raw: Mapping[str, Any]) -> str:
    normalized = json.dumps(raw, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
