from __future__ import annotations

from typing import Any, Iterable

import pytest

from flask_app.models import (
    Integration,
    IntegrationCredential,
    IntegrationStatus,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
    Person,
    PersonType,
    db,
)
from flask_app.models.base import utcnow
from flask_app.sync.client import CrmPage, CrmRecord
from flask_app.sync.vault import get_vault


class FakeCrmClient:
    """
    In-memory stand-in for ``CrmClient``.

    ``pages`` maps an entity type to a list of pages, each a list of attribute
    dicts carrying an ``id`` key. ``failures`` maps ``(entity_type, page)`` to
    an exception raised instead of returning that page.
    """

    def __init__(self, pages: dict[str, list[list[dict[str, Any]]]] | None = None, *, failures=None):
        self.pages = pages or {}
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, int, int, str | None]] = []
        self.before_fetch = None

    def fetch_page(self, entity_type, *, page=1, per_page=100, updated_since=None):
        self.calls.append((entity_type, page, per_page, updated_since))
        if self.before_fetch is not None:
            self.before_fetch(entity_type, page)
        failure = self.failures.get((entity_type, page))
        if failure is not None:
            raise failure

        batches = self.pages.get(entity_type, [])
        items = batches[page - 1] if 0 < page <= len(batches) else []
        records = [
            CrmRecord(
                id=str(item["id"]),
                type=entity_type,
                attributes={key: value for key, value in item.items() if key != "id"},
            )
            for item in items
        ]
        return CrmPage(
            records=records,
            current_page=page,
            total_pages=max(len(batches), 1),
            total_count=sum(len(batch) for batch in batches),
            per_page=per_page,
        )


@pytest.fixture
def fake_crm():
    def _factory(pages=None, *, failures=None) -> FakeCrmClient:
        return FakeCrmClient(pages, failures=failures)

    return _factory


@pytest.fixture
def integration_factory(app):
    def _factory(
        *,
        name: str = "Practice CRM",
        token: str | None = "crm-token-123",
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
        last_sync_timestamps: dict | None = None,
    ) -> Integration:
        credentials_key = None
        if token is not None:
            credential = IntegrationCredential(envelope=get_vault(app).encrypt(token))
            db.session.add(credential)
            db.session.flush()
            credentials_key = credential.key
        integration = Integration(
            name=name,
            provider="crm",
            status=status,
            credentials_key=credentials_key,
            last_sync_timestamps=last_sync_timestamps,
        )
        db.session.add(integration)
        db.session.commit()
        return integration

    return _factory


@pytest.fixture
def run_factory(app, integration_factory):
    def _factory(
        *,
        integration: Integration | None = None,
        status: MigrationRunStatus = MigrationRunStatus.RUNNING,
        run_type: MigrationRunType = MigrationRunType.FULL,
        entity_types: Iterable[str] = ("contacts",),
        checkpoint: dict | None = None,
        **counters,
    ) -> MigrationRun:
        integration = integration or integration_factory()
        run = MigrationRun(
            integration_id=integration.id,
            run_type=run_type,
            entity_types=list(entity_types),
            status=status,
            checkpoint_json=checkpoint,
            started_at=utcnow(),
            **counters,
        )
        db.session.add(run)
        db.session.commit()
        return run

    return _factory


@pytest.fixture
def person_factory(app):
    def _factory(*, import_metadata: dict | None = None, **values) -> Person:
        defaults = {
            "first_name": "Grace",
            "last_name": "Hopper",
            "email": "grace@example.com",
            "phone": "5550100",
            "person_type": PersonType.CLIENT,
        }
        defaults.update(values)
        person = Person(import_metadata=import_metadata, **defaults)
        db.session.add(person)
        db.session.commit()
        return person

    return _factory
