from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from flask_app.sync.mapping import (
    MAPPING_CACHE_KEY,
    MappingLoadError,
    RecordValidationError,
    apply_mapping,
    get_mapping,
    load_mapping,
)


def _write(tmp_path: Path, body: str, name: str = "mapping.yaml") -> Path:
    path = tmp_path / name
    path.write_text(body, encoding="utf-8")
    return path


def test_shipped_people_mapping_projects_crm_attributes(app):
    spec = get_mapping("crm_people_v1.yaml")

    mapped = apply_mapping(
        spec,
        {
            "id": " C-1 ",
            "first_name": "  Ada ",
            "last_name": "Lovelace",
            "email": " Ada@Example.COM ",
            "phone": "+1 (555) 010-2000",
            "zipcode": "73301",
        },
    )

    assert mapped["external_id"] == "C-1"
    assert mapped["first_name"] == "Ada"
    assert mapped["email"] == "ada@example.com"
    assert mapped["phone"] == "+15550102000"
    assert mapped["postal_code"] == "73301"
    assert mapped["company_name"] is None


def test_shipped_notes_mapping_requires_body(app):
    spec = get_mapping("crm_notes_v1.yaml")

    with pytest.raises(RecordValidationError) as excinfo:
        apply_mapping(spec, {"id": "N-1", "contact_id": "C-1", "name": "Intake", "body": ""})
    assert excinfo.value.field == "body"


def test_defaults_fill_missing_values(tmp_path):
    path = _write(
        tmp_path,
        """
version: 1
entity: people
fields:
  - source: id
    target: external_id
    required: true
  - source: state
    target: state
    default: TX
""",
    )

    mapped = apply_mapping(load_mapping(path), {"id": "C-1"})

    assert mapped == {"external_id": "C-1", "state": "TX"}


@pytest.mark.parametrize(
    "body, message",
    [
        ("entity: people\nfields: []\n", "Missing required mapping attribute"),
        ("version: 1\nentity: people\nfields:\n  - source: a\n", "missing 'target'"),
        (
            "version: 1\nentity: people\nfields:\n  - source: a\n    target: x\n  - source: b\n    target: x\n",
            "Duplicate target",
        ),
        ("version: 1\nentity: people\nfields:\n  - source: a\n    target: x\n    transform: upper\n", "Unknown transform"),
        ("version: 1\nentity: people\nfields:\n  - target: x\n", "requires either source or default"),
    ],
)
def test_invalid_mappings_are_rejected(tmp_path, body, message):
    with pytest.raises(MappingLoadError, match=message):
        load_mapping(_write(tmp_path, body))


def test_get_mapping_caches_until_file_changes(app, tmp_path):
    path = _write(
        tmp_path,
        "version: 1\nentity: people\nfields:\n  - source: id\n    target: external_id\n",
        name="custom.yaml",
    )
    app.config["SYNC_MAPPING_DIR"] = str(tmp_path)

    first = get_mapping("custom.yaml")
    assert get_mapping("custom.yaml") is first
    assert str(path) in app.extensions[MAPPING_CACHE_KEY]

    path.write_text(
        "version: 2\nentity: people\nfields:\n  - source: id\n    target: external_id\n",
        encoding="utf-8",
    )
    future = time.time() + 5
    os.utime(path, (future, future))

    reloaded = get_mapping("custom.yaml")
    assert reloaded.version == 2


def test_get_mapping_missing_file(app):
    with pytest.raises(MappingLoadError, match="not found"):
        get_mapping("missing.yaml")
