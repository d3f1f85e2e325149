# flask_app/routes/api.py

"""
API routes for local edits to synced records
"""

from http import HTTPStatus

from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from flask_app.models import Note, Person, PersonType, db
from flask_app.sync.pipeline import TRACKABLE_FIELDS, MergeGuard

EDITABLE_FIELDS = {
    "people": TRACKABLE_FIELDS["people"] + ("person_type",),
    "notes": TRACKABLE_FIELDS["notes"],
}


def _serialize_person(person):
    return {
        "id": person.id,
        "personType": person.person_type.value if person.person_type else None,
        "firstName": person.first_name,
        "lastName": person.last_name,
        "email": person.email,
        "phone": person.phone,
        "companyName": person.company_name,
        "city": person.city,
        "state": person.state,
        "postalCode": person.postal_code,
        "importMetadata": person.sync_metadata.to_json() if person.import_metadata else None,
    }


def _serialize_note(note):
    return {
        "id": note.id,
        "personId": note.person_id,
        "subject": note.subject,
        "body": note.body,
        "importMetadata": note.sync_metadata.to_json() if note.import_metadata else None,
    }


def _coerce_updates(entity_type, payload):
    """Keep known editable fields; reject anything else."""
    allowed = EDITABLE_FIELDS[entity_type]
    unknown = sorted(key for key in payload if key not in allowed)
    if unknown:
        raise ValueError(f"Fields cannot be edited: {', '.join(unknown)}")
    updates = dict(payload)
    if "person_type" in updates:
        try:
            updates["person_type"] = PersonType(str(updates["person_type"]).upper())
        except ValueError:
            raise ValueError(f"Unsupported person_type '{updates['person_type']}'.") from None
    if entity_type == "notes" and "body" in updates and not updates["body"]:
        raise ValueError("Note body cannot be empty.")
    return updates


def _apply_local_edit(entity_type, model, entity_id, serializer):
    entity = db.session.get(model, entity_id)
    if entity is None:
        return jsonify({"error": f"{model.__name__} {entity_id} not found."}), HTTPStatus.NOT_FOUND

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not payload:
        return jsonify({"error": "JSON body with fields to update is required."}), HTTPStatus.BAD_REQUEST
    try:
        updates = _coerce_updates(entity_type, payload)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST

    existing_values = entity.field_values(TRACKABLE_FIELDS[entity_type])
    existing_values["import_metadata"] = entity.import_metadata

    for name, value in updates.items():
        setattr(entity, name, value)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(f"Failed to update {entity_type} {entity_id}: {exc}", exc_info=True)
        return jsonify({"error": "Failed to save changes."}), HTTPStatus.INTERNAL_SERVER_ERROR

    guard = MergeGuard(logger=current_app.logger)
    newly_protected = guard.record_local_edit(entity_type, entity.id, existing_values, updates)

    db.session.refresh(entity)
    body = serializer(entity)
    body["locallyModifiedFields"] = list(entity.sync_metadata.locally_modified_fields)
    body["newlyProtectedFields"] = newly_protected
    return jsonify(body), HTTPStatus.OK


def register_api_routes(app):
    """Register API routes"""

    @app.route("/api/people/<int:person_id>", methods=["GET"])
    def api_person_detail(person_id):
        person = db.session.get(Person, person_id)
        if person is None:
            return jsonify({"error": f"Person {person_id} not found."}), HTTPStatus.NOT_FOUND
        return jsonify(_serialize_person(person))

    @app.route("/api/people/<int:person_id>", methods=["PATCH"])
    def api_person_update(person_id):
        """
        Apply a local edit to a person.

        Trackable fields changed on an imported person are protected from
        being overwritten by later sync passes.
        """
        return _apply_local_edit("people", Person, person_id, _serialize_person)

    @app.route("/api/notes/<int:note_id>", methods=["PATCH"])
    def api_note_update(note_id):
        return _apply_local_edit("notes", Note, note_id, _serialize_note)
