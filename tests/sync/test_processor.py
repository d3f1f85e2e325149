from __future__ import annotations

from sqlalchemy import func, select

from flask_app.models import (
    ExternalIdMap,
    ImportDuplicate,
    Integration,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
    Note,
    Person,
    db,
)
from flask_app.sync.client import CrmApiError, RateLimitError
from flask_app.sync.pipeline import MigrationRunController, PageProcessor
from flask_app.sync.registry import get_entity_registry


def _contact(external_id: str, **attributes):
    payload = {
        "id": external_id,
        "first_name": "Ada",
        "last_name": f"Client {external_id}",
        "email": f"{external_id.lower()}@example.com",
        "phone": "(555) 010-0000",
    }
    payload.update(attributes)
    return payload


def _processor(run, client, **page_sizes):
    return PageProcessor(run.id, client, page_sizes=page_sizes or {"contacts": 10, "notes": 10})


def _count(model):
    return db.session.scalar(select(func.count()).select_from(model))


def _reload(run_id):
    db.session.expire_all()
    return db.session.get(MigrationRun, run_id)


def test_full_run_processes_every_page_and_completes(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    client = fake_crm({"contacts": [[_contact("C-1"), _contact("C-2")], [_contact("C-3")]]})

    result = _processor(run, client, contacts=2).run()

    assert result.reason == "completed"
    assert result.status == MigrationRunStatus.COMPLETED
    assert [call[:2] for call in client.calls] == [("contacts", 1), ("contacts", 2)]

    run = _reload(run.id)
    assert run.status == MigrationRunStatus.COMPLETED
    assert run.total_entities == 3
    assert run.processed_entities == 3
    assert run.created_records == 3
    assert run.error_count == 0
    assert run.checkpoint_json is None
    assert run.completed_at is not None

    person = db.session.scalars(select(Person).where(Person.email == "c-1@example.com")).one()
    assert person.phone == "5550100000"
    assert person.sync_metadata.source == "CRM"
    assert person.sync_metadata.external_id == "C-1"
    assert person.sync_metadata.locally_modified_fields == ()

    integration = db.session.get(Integration, run.integration_id)
    assert integration.last_sync_for("contacts") is not None


def test_invalid_record_is_logged_and_page_continues(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    first_page = [_contact(f"C-{index}") for index in range(9)]
    first_page.insert(4, {"id": "", "first_name": "Nobody"})
    client = fake_crm({"contacts": [first_page, [_contact("C-100")]]})

    result = _processor(run, client).run()

    assert result.reason == "completed"
    assert result.pages[0].errors == 1
    assert result.pages[0].counters.created == 9

    run = _reload(run.id)
    assert run.error_count == 1
    assert run.created_records == 10
    assert run.processed_entities == 11
    assert run.total_entities == 11

    error = db.session.scalars(select(MigrationError).where(MigrationError.run_id == run.id)).one()
    assert error.error_type == MigrationErrorType.VALIDATION
    assert error.entity_type == "contacts"
    assert error.error_details["field"] == "external_id"
    assert error.error_details["page"] == 1


def test_reprocessing_a_page_is_idempotent(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    client = fake_crm({"contacts": [[_contact("C-1"), _contact("C-2"), _contact("C-3")]]})
    processor = _processor(run, client)
    descriptor = get_entity_registry()["contacts"]

    first = processor.process_page(descriptor, 1, 10)
    people_after_first = {
        (person.email, person.first_name, person.phone) for person in db.session.scalars(select(Person))
    }
    second = processor.process_page(descriptor, 1, 10)

    assert first.counters.created == 3
    assert second.counters.created == 0
    assert second.counters.skipped == 3
    assert _count(Person) == 3
    assert _count(ExternalIdMap) == 3
    assert {
        (person.email, person.first_name, person.phone) for person in db.session.scalars(select(Person))
    } == people_after_first


def test_pause_stops_between_pages_and_resume_continues_from_checkpoint(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    pages = [[_contact("C-1")], [_contact("C-2")], [_contact("C-3")]]
    client = fake_crm({"contacts": pages})
    controller = MigrationRunController()

    def pause_during_page_two(entity_type, page):
        if page == 2:
            controller.pause(run.id)

    client.before_fetch = pause_during_page_two
    result = _processor(run, client).run()

    assert result.reason == "paused"
    assert result.status == MigrationRunStatus.PAUSED
    paused = _reload(run.id)
    # The page in flight finishes; the next fetch does not happen
    assert paused.processed_entities == 2
    assert paused.checkpoint.to_json() == {"phase": "contacts", "page": 3}

    controller.resume(run.id)
    client.before_fetch = None
    client.calls.clear()
    resumed = _processor(run, client).run()

    assert resumed.reason == "completed"
    assert [call[:2] for call in client.calls] == [("contacts", 3)]
    final = _reload(run.id)
    assert final.status == MigrationRunStatus.COMPLETED
    assert final.created_records == 3


def test_cancel_stops_processing(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts", "notes"))
    client = fake_crm({"contacts": [[_contact("C-1")], [_contact("C-2")]], "notes": [[]]})
    controller = MigrationRunController()

    def cancel_on_first_page(entity_type, page):
        if page == 1:
            controller.cancel(run.id)

    client.before_fetch = cancel_on_first_page
    result = _processor(run, client).run()

    assert result.reason == "cancelled"
    assert len(client.calls) == 1
    cancelled = _reload(run.id)
    assert cancelled.status == MigrationRunStatus.CANCELLED
    assert cancelled.processed_entities == 1


def test_processing_a_non_running_run_is_a_no_op(run_factory, fake_crm):
    run = run_factory(status=MigrationRunStatus.PAUSED)
    client = fake_crm({"contacts": [[_contact("C-1")]]})

    result = _processor(run, client).run()

    assert result.reason == "not_running"
    assert client.calls == []


def test_rate_limited_fetch_is_recorded_and_leaves_run_resumable(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    client = fake_crm(
        {"contacts": [[_contact("C-1")], [_contact("C-2")]]},
        failures={("contacts", 2): RateLimitError("Rate limit exceeded", retry_after=30)},
    )

    result = _processor(run, client).run()

    assert result.reason == "fetch_failed"
    run = _reload(run.id)
    assert run.status == MigrationRunStatus.RUNNING
    assert run.checkpoint.to_json() == {"phase": "contacts", "page": 2}
    assert run.error_count == 1
    error = db.session.scalars(select(MigrationError).where(MigrationError.run_id == run.id)).one()
    assert error.error_type == MigrationErrorType.RATE_LIMIT
    assert error.error_details["retry_after"] == 30

    client.failures.clear()
    client.calls.clear()
    assert _processor(run, client).run().reason == "completed"
    assert [call[:2] for call in client.calls] == [("contacts", 2)]


def test_api_error_on_fetch_is_recorded_as_api(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    client = fake_crm(failures={("contacts", 1): CrmApiError("CRM API error: 500", 500, "boom")})

    _processor(run, client).run()

    error = db.session.scalars(select(MigrationError).where(MigrationError.run_id == run.id)).one()
    assert error.error_type == MigrationErrorType.API
    assert error.error_details["status_code"] == 500


def test_phases_run_in_order_and_notes_attach_to_imported_contacts(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts", "notes"))
    client = fake_crm(
        {
            "contacts": [[_contact("C-1")]],
            "notes": [
                [
                    {"id": "N-1", "contact_id": "C-1", "name": "Intake", "body": "Discussed plan."},
                    {"id": "N-2", "contact_id": "C-404", "name": "Orphan", "body": "No contact."},
                ]
            ],
        }
    )

    result = _processor(run, client).run()

    assert result.reason == "completed"
    assert [call[0] for call in client.calls] == ["contacts", "notes"]
    note = db.session.scalars(select(Note)).one()
    person = db.session.scalars(select(Person)).one()
    assert note.person_id == person.id
    assert note.sync_metadata.external_id == "N-1"

    error = db.session.scalars(select(MigrationError).where(MigrationError.run_id == run.id)).one()
    assert error.entity_type == "notes"
    assert error.external_id == "N-2"
    assert error.error_type == MigrationErrorType.VALIDATION


def test_incremental_run_filters_by_last_sync(integration_factory, run_factory, fake_crm):
    integration = integration_factory(last_sync_timestamps={"contacts": "2024-05-01T00:00:00+00:00"})
    run = run_factory(integration=integration, run_type=MigrationRunType.INCREMENTAL, entity_types=("contacts",))
    client = fake_crm({"contacts": [[_contact("C-1")]]})

    _processor(run, client).run()

    assert client.calls[0][3] == "2024-05-01T00:00:00+00:00"
    db.session.expire_all()
    refreshed = db.session.get(Integration, integration.id)
    assert refreshed.last_sync_for("contacts") != "2024-05-01T00:00:00+00:00"


def test_existing_local_person_is_linked_not_duplicated(run_factory, person_factory, fake_crm):
    existing = person_factory(email="  Shared@Example.com ", first_name="Local")
    run = run_factory(entity_types=("contacts",))
    client = fake_crm({"contacts": [[_contact("C-1", email="shared@example.com", first_name="Remote")]]})

    result = _processor(run, client).run()

    assert result.pages[0].counters.updated == 1
    assert _count(Person) == 1
    duplicate = db.session.scalars(select(ImportDuplicate)).one()
    assert duplicate.existing_local_id == existing.id
    assert duplicate.external_id == "C-1"
    assert duplicate.confidence_score == 100

    person = db.session.get(Person, existing.id)
    assert person.first_name == "Remote"
    assert person.sync_metadata.external_id == "C-1"


def test_second_external_record_with_linked_email_is_created_and_flagged(run_factory, fake_crm):
    run = run_factory(entity_types=("contacts",))
    client = fake_crm(
        {
            "contacts": [
                [
                    _contact("C-1", email="twin@example.com"),
                    _contact("C-2", email="twin@example.com"),
                ]
            ]
        }
    )

    _processor(run, client).run()

    people = list(db.session.scalars(select(Person).order_by(Person.id)))
    assert len(people) == 2
    assert "DUPLICATE_EMAIL" in people[1].sync_metadata.flags
    assert _count(ImportDuplicate) == 0


def test_locally_modified_fields_survive_sync(run_factory, person_factory, fake_crm):
    person = person_factory(
        email="kept@example.com",
        phone="5550000",
        import_metadata={"source": "CRM", "externalId": "C-1", "locallyModifiedFields": ["email"]},
    )
    db.session.add(ExternalIdMap(entity_type="people", entity_id=person.id, external_system="CRM", external_id="C-1"))
    db.session.commit()
    run = run_factory(entity_types=("contacts",))
    client = fake_crm({"contacts": [[_contact("C-1", email="remote@example.com", phone="555 999 1234")]]})

    _processor(run, client).run()

    db.session.expire_all()
    refreshed = db.session.get(Person, person.id)
    assert refreshed.email == "kept@example.com"
    assert refreshed.phone == "5559991234"
    assert refreshed.sync_metadata.locally_modified_fields == ("email",)
