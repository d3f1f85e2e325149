"""
Entity registry for the sync engine.

Each CRM entity type that can appear in ``MigrationRun.entity_types`` is
described here: which local table it lands in, the mapping file used to
project its attributes, the loader, and the config key for its page size.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from flask_app.models import PersonType
from flask_app.sync.pipeline.loaders import NoteLoader, PersonLoader, SyncedEntityLoader
from flask_app.sync.pipeline.merge_guard import TRACKABLE_FIELDS


@dataclass(frozen=True)
class EntityDescriptor:
    """Metadata describing one syncable CRM entity type."""

    name: str
    title: str
    local_kind: str
    mapping_file: str
    loader: type[SyncedEntityLoader]
    page_size_key: str = "SYNC_PAGE_SIZE"
    natural_key: str | None = None
    person_type: PersonType | None = None

    @property
    def trackable_fields(self) -> tuple[str, ...]:
        return tuple(TRACKABLE_FIELDS.get(self.local_kind, ()))


def get_entity_registry() -> Mapping[str, EntityDescriptor]:
    """Return the registry of syncable entity types."""
    return OrderedDict(
        (
            (
                "contacts",
                EntityDescriptor(
                    name="contacts",
                    title="Contacts",
                    local_kind="people",
                    mapping_file="crm_people_v1.yaml",
                    loader=PersonLoader,
                    natural_key="email",
                    person_type=PersonType.CLIENT,
                ),
            ),
            (
                "prospects",
                EntityDescriptor(
                    name="prospects",
                    title="Prospects",
                    local_kind="people",
                    mapping_file="crm_people_v1.yaml",
                    loader=PersonLoader,
                    natural_key="email",
                    person_type=PersonType.PROSPECT,
                ),
            ),
            (
                "notes",
                EntityDescriptor(
                    name="notes",
                    title="Notes",
                    local_kind="notes",
                    mapping_file="crm_notes_v1.yaml",
                    loader=NoteLoader,
                    page_size_key="SYNC_NOTES_PAGE_SIZE",
                ),
            ),
        )
    )


def resolve_entity_types(
    configured: Sequence[str],
    registry: Mapping[str, EntityDescriptor] | None = None,
) -> tuple[EntityDescriptor, ...]:
    """
    Map configured entity type names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_entity_registry()
    unknown = sorted({name for name in configured if name not in registry})
    if unknown:
        raise ValueError(
            "Unknown sync entity types: "
            + ", ".join(unknown)
            + ". Supported types: "
            + ", ".join(registry)
            + "."
        )
    return tuple(registry[name] for name in configured)


def order_entity_types(requested: Iterable[str], allowed: Sequence[str]) -> tuple[str, ...]:
    """
    Deduplicate ``requested`` and put it in phase order (the order of ``allowed``).
    """
    names = []
    for value in requested:
        name = str(value).strip().lower()
        if name and name not in names:
            names.append(name)
    if not names:
        raise ValueError("At least one entity type is required.")
    not_allowed = [name for name in names if name not in allowed]
    if not_allowed:
        raise ValueError(
            "Entity types not enabled for sync: " + ", ".join(not_allowed) + ". Enabled: " + ", ".join(allowed) + "."
        )
    return tuple(name for name in allowed if name in names)
