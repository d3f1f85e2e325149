"""
Entity loaders that upsert mapped CRM records into local tables.

Each loader resolves its target through ``external_id_map``; records without a
mapping go through the duplicate resolver before a new row is inserted. Rows
that already carry import metadata only receive the fields the merge guard
allows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Mapping

from sqlalchemy.orm import Session

from flask_app.models import ExternalIdMap, ImportMetadata, Note, Person, db
from flask_app.models.base import utcnow
from flask_app.sync.client import CrmRecord
from flask_app.sync.mapping import MappingSpec, RecordValidationError, apply_mapping
from flask_app.sync.pipeline.duplicates import DuplicateDecision, DuplicateResolver
from flask_app.sync.pipeline.idempotency import find_id_map, resolve_import_target
from flask_app.sync.pipeline.merge_guard import MergeGuard, normalize_value

if TYPE_CHECKING:  # pragma: no cover
    from flask_app.sync.registry import EntityDescriptor

RecordOutcome = Literal["created", "updated", "skipped"]


@dataclass
class LoaderCounters:
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def record(self, outcome: RecordOutcome) -> None:
        if outcome == "created":
            self.created += 1
        elif outcome == "updated":
            self.updated += 1
        else:
            self.skipped += 1

    @property
    def total(self) -> int:
        return self.created + self.updated + self.skipped

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
        }


class SyncedEntityLoader:
    """Base loader; subclasses provide the model and the local field values."""

    model: type = None  # type: ignore[assignment]

    def __init__(
        self,
        descriptor: "EntityDescriptor",
        mapping: MappingSpec,
        *,
        run_id: int,
        source: str,
        session: Session | None = None,
        merge_guard: MergeGuard | None = None,
        resolver: DuplicateResolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.mapping = mapping
        self.run_id = run_id
        self.source = source
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)
        self.merge_guard = merge_guard or MergeGuard(session=self.session, logger=self.logger)
        self.resolver = resolver or DuplicateResolver(
            run_id=run_id,
            source=source,
            session=self.session,
            logger=self.logger,
        )

    @property
    def entity_type(self) -> str:
        return self.descriptor.local_kind

    def load(self, record: CrmRecord) -> RecordOutcome:
        """Apply one CRM record. The caller commits or rolls back."""

        mapped = apply_mapping(self.mapping, record.as_payload())
        external_id = str(mapped.pop("external_id", None) or record.id or "").strip() or None
        values = self.prepare_values(mapped)
        now = utcnow()

        target = resolve_import_target(
            self.session,
            run_id=self.run_id,
            entity_type=self.entity_type,
            model=self.model,
            external_system=self.source,
            external_id=external_id,
        )

        if target.action == "update":
            if target.entity is None:
                # Mapped row was deleted locally; recreate and repoint the map
                entity = self._insert(values, external_id, now)
                target.id_map.entity_id = entity.id
                return "created"
            return self._apply(target.entity, values, external_id, now)

        decision: DuplicateDecision = self.resolver.resolve(
            self.entity_type,
            external_id,
            values,
            model=self.model,
            natural_key=self.descriptor.natural_key,
        )
        if decision.action == "link":
            self._map_external_id(decision.existing.id, external_id, now)
            return self._apply(decision.existing, values, external_id, now)

        entity = self._insert(values, external_id, now, flags=decision.flags)
        self._map_external_id(entity.id, external_id, now)
        return "created"

    def prepare_values(self, mapped: Mapping[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    # Internal helpers -----------------------------------------------------------

    def _insert(
        self,
        values: Mapping[str, Any],
        external_id: str,
        now: datetime,
        *,
        flags: tuple[str, ...] = (),
    ) -> Any:
        entity = self.model(**values)
        entity.sync_metadata = ImportMetadata(
            source=self.source,
            external_id=external_id,
            imported_at=now.isoformat(),
            last_synced_at=now.isoformat(),
            import_run_id=self.run_id,
            flags=tuple(flags),
        )
        self.session.add(entity)
        self.session.flush()
        return entity

    def _apply(self, entity: Any, values: Mapping[str, Any], external_id: str, now: datetime) -> RecordOutcome:
        metadata = entity.sync_metadata
        first_import = not metadata.is_imported
        if first_import:
            applicable = dict(values)
            metadata = ImportMetadata(
                source=self.source,
                external_id=external_id,
                imported_at=now.isoformat(),
                locally_modified_fields=metadata.locally_modified_fields,
                flags=metadata.flags,
            )
        else:
            applicable = self.merge_guard.filter_applicable(self.entity_type, values, metadata)

        changed = [
            name
            for name, value in applicable.items()
            if normalize_value(getattr(entity, name, None)) != normalize_value(value)
        ]
        for name in changed:
            setattr(entity, name, applicable[name])

        entity.sync_metadata = metadata.synced(at=now, run_id=self.run_id)
        if changed or first_import:
            return "updated"
        return "skipped"

    def _map_external_id(self, entity_id: int, external_id: str, now: datetime) -> None:
        self.session.add(
            ExternalIdMap(
                entity_type=self.entity_type,
                entity_id=entity_id,
                external_system=self.source,
                external_id=external_id,
                run_id=self.run_id,
                first_seen_at=now,
                last_seen_at=now,
            )
        )
        self.session.flush()


class PersonLoader(SyncedEntityLoader):
    """Loads CRM contacts and prospects into ``people``."""

    model = Person

    def prepare_values(self, mapped: Mapping[str, Any]) -> dict[str, Any]:
        values = {name: mapped.get(name) for name in self.mapping.targets if name != "external_id"}
        if self.descriptor.person_type is not None:
            values["person_type"] = self.descriptor.person_type
        return values


class NoteLoader(SyncedEntityLoader):
    """Loads CRM notes, attaching each to the person its contact maps to."""

    model = Note
    contact_kind = "people"

    def prepare_values(self, mapped: Mapping[str, Any]) -> dict[str, Any]:
        contact_external_id = mapped.get("contact_external_id")
        if not contact_external_id:
            raise RecordValidationError("Note is missing its contact reference.", field="contact_external_id")
        contact_map = find_id_map(
            self.session,
            entity_type=self.contact_kind,
            external_system=self.source,
            external_id=str(contact_external_id),
        )
        if contact_map is None:
            raise RecordValidationError(
                f"Note references contact {contact_external_id} which has not been imported.",
                field="contact_external_id",
            )
        return {
            "person_id": contact_map.entity_id,
            "subject": mapped.get("subject"),
            "body": mapped.get("body"),
        }
