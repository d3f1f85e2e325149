from __future__ import annotations

from flask_app.models import Note, Person, db

IMPORTED = {"source": "CRM", "externalId": "C-1", "locallyModifiedFields": []}


def _reload(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk)


def test_editing_email_protects_only_email(client, person_factory):
    person = person_factory(import_metadata=dict(IMPORTED))

    response = client.patch(f"/api/people/{person.id}", json={"email": "grace.new@example.com"})

    assert response.status_code == 200, response.get_data(as_text=True)
    payload = response.get_json()
    assert payload["email"] == "grace.new@example.com"
    assert payload["locallyModifiedFields"] == ["email"]
    assert payload["newlyProtectedFields"] == ["email"]
    assert _reload(Person, person.id).sync_metadata.locally_modified_fields == ("email",)


def test_repeated_edits_accumulate_protected_fields(client, person_factory):
    person = person_factory(import_metadata=dict(IMPORTED, locallyModifiedFields=["phone"]))

    client.patch(f"/api/people/{person.id}", json={"city": "Austin"})
    response = client.patch(f"/api/people/{person.id}", json={"city": "Austin"})

    assert response.status_code == 200
    assert sorted(response.get_json()["locallyModifiedFields"]) == ["city", "phone"]
    assert response.get_json()["newlyProtectedFields"] == []


def test_native_records_are_not_tracked(client, person_factory):
    person = person_factory()

    response = client.patch(f"/api/people/{person.id}", json={"email": "local@example.com"})

    assert response.status_code == 200
    assert response.get_json()["locallyModifiedFields"] == []
    assert response.get_json()["importMetadata"] is None


def test_person_type_change_is_not_protected(client, person_factory):
    person = person_factory(import_metadata=dict(IMPORTED))

    response = client.patch(f"/api/people/{person.id}", json={"person_type": "prospect"})

    assert response.status_code == 200
    assert response.get_json()["personType"] == "PROSPECT"
    assert response.get_json()["locallyModifiedFields"] == []


def test_rejects_unknown_fields_and_empty_payloads(client, person_factory):
    person = person_factory(import_metadata=dict(IMPORTED))

    unknown = client.patch(f"/api/people/{person.id}", json={"import_metadata": {}})
    empty = client.patch(f"/api/people/{person.id}", json={})
    bad_type = client.patch(f"/api/people/{person.id}", json={"person_type": "ALIEN"})

    assert unknown.status_code == 400
    assert "import_metadata" in unknown.get_json()["error"]
    assert empty.status_code == 400
    assert bad_type.status_code == 400


def test_missing_person_returns_404(client):
    assert client.patch("/api/people/4040", json={"email": "x@example.com"}).status_code == 404
    assert client.get("/api/people/4040").status_code == 404


def test_note_edit_protects_body(client, person_factory):
    person = person_factory(import_metadata=dict(IMPORTED))
    note = Note(
        person_id=person.id,
        subject="Intake",
        body="Initial call",
        import_metadata={"source": "CRM", "externalId": "N-1", "locallyModifiedFields": []},
    )
    db.session.add(note)
    db.session.commit()

    response = client.patch(f"/api/notes/{note.id}", json={"body": "Follow-up scheduled"})
    empty_body = client.patch(f"/api/notes/{note.id}", json={"body": ""})

    assert response.status_code == 200
    assert response.get_json()["locallyModifiedFields"] == ["body"]
    assert empty_body.status_code == 400
    assert _reload(Note, note.id).body == "Follow-up scheduled"
