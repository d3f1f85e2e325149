"""
Natural-key duplicate detection for records entering through the create path.

A record with no ExternalIdMap entry is checked against local rows that share
its normalized email and have never been linked to the external system. A hit
is recorded as an ImportDuplicate and the caller updates that row instead of
inserting a new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from flask_app.models import ExternalIdMap, ImportDuplicate, db

MATCH_REASON_EMAIL = "email"
EXACT_MATCH_CONFIDENCE = 100
FLAG_DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
PLACEHOLDER_EMAIL_DOMAINS = ("@imported.local", "@placeholder.local")


def normalize_email(value: Any) -> str | None:
    """Trim and lower-case an email; placeholder addresses normalize to ``None``."""
    if value is None:
        return None
    email = str(value).strip().lower()
    if not email or "@" not in email:
        return None
    if email.endswith(PLACEHOLDER_EMAIL_DOMAINS):
        return None
    return email


@dataclass(frozen=True)
class DuplicateDecision:
    """Outcome of a duplicate check: link to ``existing`` or insert a new row."""

    action: Literal["new", "link"]
    existing: Any | None = None
    duplicate: ImportDuplicate | None = None
    flags: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def new(cls, *flags: str) -> "DuplicateDecision":
        return cls(action="new", flags=tuple(flags))


class DuplicateResolver:
    """Find unlinked local matches by natural key and record the link."""

    def __init__(
        self,
        *,
        run_id: int,
        source: str,
        session: Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.run_id = run_id
        self.source = source
        self.session: Session = session or db.session
        self.logger = logger or logging.getLogger(__name__)

    def resolve(
        self,
        entity_type: str,
        external_id: str,
        mapped: Mapping[str, Any],
        *,
        model: type,
        natural_key: str | None = "email",
    ) -> DuplicateDecision:
        if not natural_key:
            return DuplicateDecision.new()

        prior = self._existing_link(entity_type, external_id)
        if prior is not None:
            existing = self.session.get(model, prior.existing_local_id)
            if existing is not None:
                return DuplicateDecision(action="link", existing=existing, duplicate=prior)

        key_value = normalize_email(mapped.get(natural_key))
        if key_value is None:
            return DuplicateDecision.new()

        column = getattr(model, natural_key)
        linked_ids = select(ExternalIdMap.entity_id).where(
            ExternalIdMap.entity_type == entity_type,
            ExternalIdMap.external_system == self.source,
        )
        candidates = list(
            self.session.scalars(
                select(model).where(func.lower(func.trim(column)) == key_value).order_by(model.id.asc())
            )
        )
        if not candidates:
            return DuplicateDecision.new()

        linked = set(self.session.scalars(linked_ids.where(ExternalIdMap.entity_id.in_([c.id for c in candidates]))))
        unlinked = [candidate for candidate in candidates if candidate.id not in linked]
        if not unlinked:
            # The match already belongs to another external record
            self.logger.info(
                "Natural key already linked to another external record",
                extra={
                    "sync_run_id": self.run_id,
                    "sync_entity_type": entity_type,
                    "sync_external_id": external_id,
                },
            )
            return DuplicateDecision.new(FLAG_DUPLICATE_EMAIL)

        existing = unlinked[0]
        duplicate = ImportDuplicate(
            run_id=self.run_id,
            source=self.source,
            entity_type=entity_type,
            external_id=external_id,
            existing_local_id=existing.id,
            match_reason=MATCH_REASON_EMAIL,
            matching_field=natural_key,
            matching_value=key_value,
            confidence_score=EXACT_MATCH_CONFIDENCE,
        )
        self.session.add(duplicate)
        self.session.flush()
        self.logger.info(
            "Linked external record to existing local record",
            extra={
                "sync_run_id": self.run_id,
                "sync_entity_type": entity_type,
                "sync_external_id": external_id,
                "sync_local_id": existing.id,
            },
        )
        return DuplicateDecision(action="link", existing=existing, duplicate=duplicate)

    def _existing_link(self, entity_type: str, external_id: str) -> ImportDuplicate | None:
        stmt = select(ImportDuplicate).where(
            ImportDuplicate.source == self.source,
            ImportDuplicate.entity_type == entity_type,
            ImportDuplicate.external_id == external_id,
        )
        return self.session.scalars(stmt).first()
