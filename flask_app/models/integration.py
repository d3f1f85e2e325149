# flask_app/models/integration.py

import enum
import uuid

from flask import current_app
from sqlalchemy import Enum
from sqlalchemy.exc import SQLAlchemyError

from .base import BaseModel, db


class IntegrationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class Integration(BaseModel):
    """An external CRM account the sync engine pulls from."""

    __tablename__ = "integrations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    provider = db.Column(db.String(50), nullable=False, default="crm", index=True)
    status = db.Column(
        Enum(IntegrationStatus, name="integration_status_enum"),
        default=IntegrationStatus.DISCONNECTED,
        nullable=False,
        index=True,
    )
    # Opaque reference to IntegrationCredential.key; the envelope never lives on this row
    credentials_key = db.Column(db.String(64), nullable=True, index=True)
    last_sync_timestamps = db.Column(db.JSON, nullable=True)  # {entity_type: iso timestamp}
    last_tested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    runs = db.relationship("MigrationRun", back_populates="integration", lazy="dynamic")

    def __repr__(self):
        return f"<Integration {self.name} ({self.provider})>"

    def last_sync_for(self, entity_type):
        """Return the ISO timestamp of the last completed pass for ``entity_type``."""
        return (self.last_sync_timestamps or {}).get(entity_type)

    def record_sync_timestamp(self, entity_type, timestamp):
        timestamps = dict(self.last_sync_timestamps or {})
        timestamps[entity_type] = timestamp
        self.last_sync_timestamps = timestamps

    @staticmethod
    def find_by_id(integration_id):
        """Find integration by ID with error handling"""
        try:
            return db.session.get(Integration, integration_id)
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding integration by id {integration_id}: {str(e)}")
            return None


class IntegrationCredential(BaseModel):
    """Encrypted API token envelope, stored alongside its integration."""

    __tablename__ = "integration_credentials"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), unique=True, nullable=False, default=lambda: uuid.uuid4().hex)
    envelope = db.Column(db.Text, nullable=False)
    rotated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        # Never render the envelope
        return f"<IntegrationCredential {self.key}>"

    @staticmethod
    def find_by_key(key):
        if not key:
            return None
        return IntegrationCredential.query.filter_by(key=key).first()
