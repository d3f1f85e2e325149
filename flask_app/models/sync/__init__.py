"""
Sync engine SQLAlchemy models.

Migration runs, per-entity errors, duplicate links and the external id map,
plus the typed views over their JSON columns.
"""

from .metadata import Checkpoint, ImportMetadata
from .schema import (
    ExternalIdMap,
    ImportDuplicate,
    MigrationError,
    MigrationErrorType,
    MigrationRun,
    MigrationRunStatus,
    MigrationRunType,
)

__all__ = [
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
