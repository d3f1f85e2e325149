from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from flask_app.models import ImportMetadata, Person, db
from flask_app.sync.pipeline import MergeGuard, detect_changed_fields, normalize_value
from flask_app.sync.pipeline.merge_guard import TRACKABLE_FIELDS


def _snapshot(person):
    values = person.field_values(TRACKABLE_FIELDS["people"])
    values["import_metadata"] = person.import_metadata
    return values


def test_normalize_value_treats_empty_and_temporal_values_consistently():
    assert normalize_value("") is None
    assert normalize_value(None) is None
    assert normalize_value("x") == "x"
    naive = datetime(2024, 3, 1, 9, 30)
    aware = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
    assert normalize_value(naive) == normalize_value(aware)
    assert normalize_value(date(2024, 3, 1)) == normalize_value(datetime(2024, 3, 1, tzinfo=timezone.utc))


def test_detect_changed_fields_only_considers_supplied_fields():
    existing = {"email": "a@example.com", "phone": "", "city": "Austin"}
    incoming = {"email": "b@example.com", "phone": None}

    assert detect_changed_fields(existing, incoming, ["email", "phone", "city"]) == ["email"]


def test_local_edit_of_email_only_protects_email(person_factory):
    person = person_factory(import_metadata={"source": "CRM", "locallyModifiedFields": []})
    guard = MergeGuard()

    changed = guard.record_local_edit("people", person.id, _snapshot(person), {"email": "new@example.com"})

    assert changed == ["email"]
    db.session.expire_all()
    refreshed = db.session.get(Person, person.id)
    assert refreshed.sync_metadata.locally_modified_fields == ("email",)
    assert refreshed.sync_metadata.source == "CRM"


def test_local_edit_unions_with_existing_protection(person_factory):
    person = person_factory(import_metadata={"source": "CRM", "locallyModifiedFields": ["phone"]})
    guard = MergeGuard()

    guard.record_local_edit("people", person.id, _snapshot(person), {"city": "Denver", "phone": "1"})

    db.session.expire_all()
    fields = db.session.get(Person, person.id).sync_metadata.locally_modified_fields
    assert set(fields) == {"phone", "city"}


def test_local_edit_ignores_untracked_and_unchanged_fields(person_factory):
    person = person_factory(import_metadata={"source": "CRM"})
    guard = MergeGuard()

    changed = guard.record_local_edit(
        "people",
        person.id,
        _snapshot(person),
        {"person_type": "PROSPECT", "first_name": person.first_name},
    )

    assert changed == []
    db.session.expire_all()
    assert db.session.get(Person, person.id).sync_metadata.locally_modified_fields == ()


def test_local_edit_on_non_imported_record_is_not_tracked(person_factory):
    person = person_factory(import_metadata=None)

    changed = MergeGuard().record_local_edit("people", person.id, _snapshot(person), {"email": "x@example.com"})

    assert changed == []
    db.session.expire_all()
    assert db.session.get(Person, person.id).import_metadata is None


def test_local_edit_failure_is_logged_not_raised(person_factory, caplog):
    person = person_factory(import_metadata={"source": "CRM"})
    snapshot = _snapshot(person)
    guard = MergeGuard(logger=logging.getLogger("tests.merge_guard"))

    with caplog.at_level(logging.ERROR, logger="tests.merge_guard"):
        changed = guard.record_local_edit("people", person.id + 1000, snapshot, {"email": "x@example.com"})

    assert changed == []
    assert "Failed to record locally modified fields" in caplog.text


def test_filter_applicable_drops_protected_fields_only():
    guard = MergeGuard()
    metadata = ImportMetadata(source="CRM", locally_modified_fields=("email",))

    applicable = guard.filter_applicable(
        "people",
        {"email": "remote@example.com", "phone": "5559991234", "person_type": "CLIENT"},
        metadata,
    )

    assert applicable == {"phone": "5559991234", "person_type": "CLIENT"}


def test_filter_applicable_passes_everything_without_protection():
    guard = MergeGuard()
    incoming = {"subject": "Intake", "body": "Notes"}

    assert guard.filter_applicable("notes", incoming, None) == incoming
    assert guard.filter_applicable("notes", incoming, ImportMetadata(source="CRM")) == incoming
