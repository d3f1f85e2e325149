# flask_app/models/person.py

import enum

from sqlalchemy import Enum, Index

from .base import BaseModel, db
from .sync.metadata import ImportMetadata


class PersonType(str, enum.Enum):
    CLIENT = "CLIENT"
    PROSPECT = "PROSPECT"


class SyncedEntityMixin:
    """Columns and helpers shared by entities the sync engine writes to."""

    import_metadata = db.Column(db.JSON, nullable=True)

    @property
    def sync_metadata(self) -> ImportMetadata:
        return ImportMetadata.from_json(self.import_metadata)

    @sync_metadata.setter
    def sync_metadata(self, value: ImportMetadata | None) -> None:
        # Assign a fresh dict so the JSON column is flagged dirty
        self.import_metadata = value.to_json() if value is not None else None

    def field_values(self, fields):
        """Snapshot the given attributes, used before and after a local edit."""
        return {name: getattr(self, name, None) for name in fields}


class Person(SyncedEntityMixin, BaseModel):
    """A client or prospect of the practice."""

    __tablename__ = "people"

    id = db.Column(db.Integer, primary_key=True)
    person_type = db.Column(
        Enum(PersonType, name="person_type_enum"),
        default=PersonType.CLIENT,
        nullable=False,
        index=True,
    )
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(40), nullable=True)
    company_name = db.Column(db.String(200), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(50), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)

    notes = db.relationship("Note", back_populates="person", cascade="all, delete-orphan")

    __table_args__ = (Index("idx_people_name", "last_name", "first_name"),)

    def __repr__(self):
        return f"<Person {self.first_name} {self.last_name}>"

    @property
    def display_name(self):
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or self.company_name or self.email or f"Person {self.id}"


class Note(SyncedEntityMixin, BaseModel):
    """Free-text note attached to a person."""

    __tablename__ = "notes"

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey("people.id", ondelete="CASCADE"), nullable=False, index=True)
    subject = db.Column(db.String(255), nullable=True)
    body = db.Column(db.Text, nullable=False)

    person = db.relationship("Person", back_populates="notes")

    def __repr__(self):
        return f"<Note {self.id} person={self.person_id}>"
