"""
Typed views over the JSON columns written by the sync engine.

Business logic passes these dataclasses around; dictionaries only appear at
the storage boundary via ``from_json``/``to_json``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Mapping


def _as_tuple(values: Iterable[Any] | None) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values or ():
        if value is None:
            continue
        name = str(value)
        if name not in seen:
            seen.append(name)
    return tuple(seen)


@dataclass(frozen=True)
class ImportMetadata:
    """Provenance and local-edit protection embedded on a synced entity."""

    source: str | None = None
    external_id: str | None = None
    imported_at: str | None = None
    last_synced_at: str | None = None
    import_run_id: int | None = None
    locally_modified_fields: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()

    @property
    def is_imported(self) -> bool:
        return bool(self.source)

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | None) -> "ImportMetadata":
        if not isinstance(payload, Mapping):
            return cls()
        run_id = payload.get("importRunId")
        try:
            run_id = int(run_id) if run_id is not None else None
        except (TypeError, ValueError):
            run_id = None
        return cls(
            source=payload.get("source") or None,
            external_id=payload.get("externalId"),
            imported_at=payload.get("importedAt"),
            last_synced_at=payload.get("lastSyncedAt"),
            import_run_id=run_id,
            locally_modified_fields=_as_tuple(payload.get("locallyModifiedFields")),
            flags=_as_tuple(payload.get("flags")),
        )

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "source": self.source,
            "locallyModifiedFields": list(self.locally_modified_fields),
        }
        if self.external_id is not None:
            payload["externalId"] = self.external_id
        if self.imported_at is not None:
            payload["importedAt"] = self.imported_at
        if self.last_synced_at is not None:
            payload["lastSyncedAt"] = self.last_synced_at
        if self.import_run_id is not None:
            payload["importRunId"] = self.import_run_id
        if self.flags:
            payload["flags"] = list(self.flags)
        return payload

    def with_modified_fields(self, fields: Iterable[str]) -> "ImportMetadata":
        """Return a copy whose protected set is the union with ``fields``."""
        return replace(self, locally_modified_fields=_as_tuple((*self.locally_modified_fields, *fields)))

    def synced(self, *, at: datetime, run_id: int | None) -> "ImportMetadata":
        return replace(self, last_synced_at=at.isoformat(), import_run_id=run_id)


@dataclass(frozen=True)
class Checkpoint:
    """Resume pointer for a run: the next page to fetch within ``phase``."""

    phase: str
    page: int = 1

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | None) -> "Checkpoint | None":
        if not isinstance(payload, Mapping) or not payload.get("phase"):
            return None
        try:
            page = max(1, int(payload.get("page") or 1))
        except (TypeError, ValueError):
            page = 1
        return cls(phase=str(payload["phase"]), page=page)

    def to_json(self) -> dict[str, Any]:
        return {"phase": self.phase, "page": self.page}

