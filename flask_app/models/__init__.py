# flask_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .integration import Integration, IntegrationCredential, IntegrationStatus
from .person import Note, Person, PersonType, SyncedEntityMixin
from .sync import (
    Checkpoint,
    ExternalIdMap,
    ImportDuplicate,
    ImportMetadata,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
)

__all__ = [
    "db",
    "BaseModel",
    "Integration",
    "IntegrationCredential",
    "IntegrationStatus",
    # Synced entities
    "Person",
    "PersonType",
    "Note",
    "SyncedEntityMixin",
    # Sync engine
    "Checkpoint",
    "ExternalIdMap",
    "ImportDuplicate",
    "ImportMetadata",
    "MigrationError",
    "MigrationErrorType",
    "MigrationRun",
    "MigrationRunStatus",
    "MigrationRunType",
]
