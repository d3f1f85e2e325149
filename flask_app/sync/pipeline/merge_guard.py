"""
Field-level protection for locally edited synced records.

A human edit to an imported record adds the touched trackable fields to
``ImportMetadata.locally_modified_fields``. Later sync passes consult
``filter_applicable`` and leave those fields alone.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy.orm import Session

from flask_app.models import ImportMetadata, Note, Person, db

TRACKABLE_FIELDS: Mapping[str, tuple[str, ...]] = {
    "people": (
        "first_name",
        "last_name",
        "email",
        "phone",
        "company_name",
        "city",
        "state",
        "postal_code",
    ),
    "notes": ("subject", "body"),
}

ENTITY_MODELS = {
    "people": Person,
    "notes": Note,
}


class ConflictTrackingError(RuntimeError):
    """Raised internally when locally modified fields cannot be persisted."""


def normalize_value(value: Any) -> Any:
    """Collapse empty values to ``None`` and compare temporal values by epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, str) and value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime.combine(value, time.min, tzinfo=timezone.utc).timestamp() * 1000)
    return value


def detect_changed_fields(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    field_names: Iterable[str],
) -> list[str]:
    """Return the fields from ``field_names`` present in ``incoming`` whose value differs."""
    changed: list[str] = []
    for name in field_names:
        if name not in incoming:
            continue
        if normalize_value(existing.get(name)) != normalize_value(incoming.get(name)):
            changed.append(name)
    return changed


class MergeGuard:
    """Decide which incoming sync values may overwrite local data."""

    def __init__(
        self,
        *,
        session: Session | None = None,
        trackable_fields: Mapping[str, Sequence[str]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.trackable_fields = dict(trackable_fields or TRACKABLE_FIELDS)
        self.logger = logger or logging.getLogger(__name__)

    def trackable_for(self, entity_type: str) -> tuple[str, ...]:
        return tuple(self.trackable_fields.get(entity_type, ()))

    def record_local_edit(
        self,
        entity_type: str,
        entity_id: int,
        existing_values: Mapping[str, Any],
        new_values: Mapping[str, Any],
        trackable_fields: Sequence[str] | None = None,
    ) -> list[str]:
        """
        Mark trackable fields changed by a local edit as protected.

        Only imported records (metadata with a ``source``) are tracked. This is
        bookkeeping after the primary write has committed, so any failure is
        logged and an empty list returned instead of raising.
        """

        metadata = ImportMetadata.from_json(existing_values.get("import_metadata"))
        if not metadata.is_imported:
            return []

        fields = trackable_fields if trackable_fields is not None else self.trackable_for(entity_type)
        changed = detect_changed_fields(existing_values, new_values, fields)
        if not changed:
            return []

        try:
            self._persist_modified_fields(entity_type, entity_id, changed)
        except Exception as exc:
            self.session.rollback()
            error = ConflictTrackingError(
                f"Failed to record locally modified fields for {entity_type} {entity_id}: {exc}"
            )
            self.logger.exception(
                str(error),
                extra={
                    "sync_entity_type": entity_type,
                    "sync_entity_id": entity_id,
                    "sync_changed_fields": changed,
                },
            )
            return []

        self.logger.info(
            "Recorded locally modified fields",
            extra={
                "sync_entity_type": entity_type,
                "sync_entity_id": entity_id,
                "sync_changed_fields": changed,
            },
        )
        return changed

    def filter_applicable(
        self,
        entity_type: str,
        incoming_fields: Mapping[str, Any],
        current_metadata: ImportMetadata | None,
    ) -> dict[str, Any]:
        """Drop incoming values for trackable fields a human has edited locally."""
        if current_metadata is None or not current_metadata.locally_modified_fields:
            return dict(incoming_fields)
        trackable = set(self.trackable_for(entity_type))
        protected = set(current_metadata.locally_modified_fields) & trackable
        return {name: value for name, value in incoming_fields.items() if name not in protected}

    def _persist_modified_fields(self, entity_type: str, entity_id: int, fields: Sequence[str]) -> None:
        model = ENTITY_MODELS.get(entity_type)
        if model is None:
            raise ConflictTrackingError(f"No synced model registered for entity type '{entity_type}'.")
        record = self.session.get(model, entity_id)
        if record is None:
            raise ConflictTrackingError(f"{entity_type} {entity_id} no longer exists.")
        # Union with the stored set so concurrent marks are not lost
        record.sync_metadata = record.sync_metadata.with_modified_fields(fields)
        self.session.commit()
