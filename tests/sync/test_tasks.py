from __future__ import annotations

import pytest
from sqlalchemy import select

from flask_app.models import (
    IntegrationCredential,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    MigrationRunStatus,
    db,
)
from flask_app.sync.pipeline import IntegrationNotReady
from flask_app.sync.service import ActiveRunExists, start_run
from flask_app.sync.tasks import dispatch_run, page_sizes_from_config, run_migration


def _contact(external_id):
    return {"id": external_id, "first_name": "Ada", "last_name": external_id, "email": f"{external_id}@example.com"}


def _credential_errors(run_id):
    return list(
        db.session.scalars(
            select(MigrationError).where(
                MigrationError.run_id == run_id,
                MigrationError.error_type == MigrationErrorType.CREDENTIALS,
            )
        )
    )


def test_run_migration_records_credentials_error_for_corrupt_envelope(run_factory, integration_factory):
    integration = integration_factory()
    credential = IntegrationCredential.find_by_key(integration.credentials_key)
    credential.envelope = "AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
    db.session.commit()
    run = run_factory(integration=integration)

    result = run_migration(run.id)

    assert result.reason == "credentials_failed"
    assert result.status == MigrationRunStatus.RUNNING
    errors = _credential_errors(run.id)
    assert len(errors) == 1
    assert errors[0].entity_type == "integration"
    assert errors[0].error_details["exception"] == "DecryptionError"
    db.session.expire_all()
    assert db.session.get(MigrationRun, run.id).status == MigrationRunStatus.RUNNING


def test_run_migration_records_credentials_error_when_token_missing(run_factory, integration_factory):
    run = run_factory(integration=integration_factory(token=None))

    result = run_migration(run.id)

    assert result.reason == "credentials_failed"
    assert _credential_errors(run.id)[0].error_details["exception"] == "IntegrationNotReady"


def test_run_migration_unknown_run(app):
    with pytest.raises(ValueError, match="not found"):
        run_migration(999)


def test_page_sizes_follow_config(app):
    app.config["SYNC_NOTES_PAGE_SIZE"] = 25

    sizes = page_sizes_from_config(app)

    assert sizes["notes"] == 25
    assert sizes["contacts"] == app.config["SYNC_PAGE_SIZE"]


def test_start_run_orders_entity_types_and_blocks_duplicates(app, integration_factory):
    integration = integration_factory()

    run = start_run(integration.id, "incremental", ["notes", "contacts", "notes"])

    assert run.ordered_entity_types == ("contacts", "notes")
    assert run.status == MigrationRunStatus.RUNNING
    with pytest.raises(ActiveRunExists) as excinfo:
        start_run(integration.id, "FULL", ())
    assert excinfo.value.run.id == run.id


def test_start_run_needs_credentials(app, integration_factory):
    integration = integration_factory(token=None)

    with pytest.raises(IntegrationNotReady):
        start_run(integration.id, "FULL", ())
    assert db.session.scalars(select(MigrationRun)).first() is None


def test_dispatch_run_inline_when_worker_disabled(app, monkeypatch, fake_crm, run_factory):
    run = run_factory()
    monkeypatch.setattr(
        "flask_app.sync.tasks.create_crm_client", lambda integration: fake_crm({"contacts": [[_contact("C-1")]]})
    )

    dispatched = dispatch_run(run)

    assert dispatched["mode"] == "inline"
    assert dispatched["reason"] == "completed"
    assert dispatched["pages_processed"] == 1


def test_dispatch_run_queues_when_worker_enabled(app, monkeypatch, fake_crm, run_factory):
    app.extensions["sync"]["worker_enabled"] = True
    run = run_factory()
    fake = fake_crm({"contacts": [[_contact("C-1")], [_contact("C-2")]]})
    monkeypatch.setattr("flask_app.sync.tasks.create_crm_client", lambda integration: fake)

    dispatched = dispatch_run(run)

    assert dispatched["mode"] == "queued"
    assert dispatched["taskId"]
    # eager Celery executes the task immediately
    assert [call[:2] for call in fake.calls] == [("contacts", 1), ("contacts", 2)]
    db.session.expire_all()
    assert db.session.get(MigrationRun, run.id).status == MigrationRunStatus.COMPLETED
