"""
Helpers for idempotent loader decisions backed by external_id_map.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from flask_app.models import ExternalIdMap


class MissingExternalIdentifier(ValueError):
    """Raised when a payload cannot be resolved due to missing identifiers."""

    def __init__(self, external_system: str) -> None:
        super().__init__(
            f"No external identifier supplied for system '{external_system}'. "
            "Idempotent upsert requires external_id."
        )
        self.external_system = external_system


@dataclass(frozen=True)
class ImportTarget:
    """
    Resolution outcome for an incoming payload.

    `action` values:
    - ``create``: no prior mapping exists; the loader may link a duplicate or insert.
    - ``update``: mapping found; the loader updates the mapped entity.
    """

    action: Literal["create", "update"]
    id_map: ExternalIdMap | None
    entity: Any | None


def find_id_map(
    session: Session,
    *,
    entity_type: str,
    external_system: str,
    external_id: str,
) -> ExternalIdMap | None:
    stmt = select(ExternalIdMap).where(
        ExternalIdMap.entity_type == entity_type,
        ExternalIdMap.external_system == external_system,
        ExternalIdMap.external_id == external_id,
    )
    return session.scalars(stmt).first()


def resolve_import_target(
    session: Session,
    *,
    run_id: int,
    entity_type: str,
    model: type,
    external_system: str,
    external_id: str | None,
) -> ImportTarget:
    """
    Resolve the import target for a payload using `external_id_map`.
    """

    if not external_id:
        raise MissingExternalIdentifier(external_system)

    id_map = find_id_map(
        session,
        entity_type=entity_type,
        external_system=external_system,
        external_id=external_id,
    )
    if id_map is not None:
        id_map.mark_seen(run_id=run_id)
        entity = session.get(model, id_map.entity_id)
        return ImportTarget(action="update", id_map=id_map, entity=entity)

    return ImportTarget(action="create", id_map=None, entity=None)
