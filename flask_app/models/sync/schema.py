"""
SQLAlchemy models for the synchronization engine.

Runs, their per-entity failures, auto-linked duplicates, and the external id
map that keeps upserts idempotent across pages and runs.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db
from .metadata import Checkpoint


class MigrationRunStatus(str, enum.Enum):
    """Lifecycle states for a migration run."""

    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationRunStatus.CANCELLED, MigrationRunStatus.COMPLETED)


class MigrationRunType(str, enum.Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class MigrationErrorType(str, enum.Enum):
    """Failure taxonomy recorded against individual entities or pages."""

    VALIDATION = "VALIDATION"
    TRANSFORM = "TRANSFORM"
    INSERT = "INSERT"
    API = "API"
    RATE_LIMIT = "RATE_LIMIT"
    CREDENTIALS = "CREDENTIALS"


class MigrationRun(BaseModel):
    """One synchronization attempt against one integration."""

    __tablename__ = "migration_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    integration_id: Mapped[int] = mapped_column(
        ForeignKey("integrations.id"),
        nullable=False,
        index=True,
    )
    run_type: Mapped[MigrationRunType] = mapped_column(
        Enum(MigrationRunType, name="migration_run_type_enum"),
        nullable=False,
        default=MigrationRunType.FULL,
    )
    entity_types: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    status: Mapped[MigrationRunStatus] = mapped_column(
        Enum(MigrationRunStatus, name="migration_run_status_enum"),
        nullable=False,
        default=MigrationRunStatus.RUNNING,
        index=True,
    )
    total_entities: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    processed_entities: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_records: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    checkpoint_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Next page to fetch: {phase, page}.",
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    integration = relationship("Integration", back_populates="runs")
    errors = relationship(
        "MigrationError",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="dynamic",
    )
    duplicates = relationship(
        "ImportDuplicate",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="dynamic",
    )

    __table_args__ = (Index("idx_migration_runs_integration_status", "integration_id", "status"),)

    @property
    def checkpoint(self) -> Checkpoint | None:
        return Checkpoint.from_json(self.checkpoint_json)

    @checkpoint.setter
    def checkpoint(self, value: Checkpoint | None) -> None:
        self.checkpoint_json = value.to_json() if value is not None else None

    @property
    def ordered_entity_types(self) -> tuple[str, ...]:
        return tuple(str(item) for item in (self.entity_types or ()))


class MigrationError(BaseModel):
    """Append-only record of one failed entity (or page) within a run."""

    __tablename__ = "migration_errors"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("migration_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    error_type: Mapped[MigrationErrorType] = mapped_column(
        Enum(MigrationErrorType, name="migration_error_type_enum"),
        nullable=False,
    )
    error_message: Mapped[str] = mapped_column(db.Text, nullable=False)
    error_details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    retried_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    run = relationship("MigrationRun", back_populates="errors")

    __table_args__ = (
        Index("idx_migration_errors_run_entity", "run_id", "entity_type"),
        Index("idx_migration_errors_run_type", "run_id", "error_type"),
    )

    def mark_resolved(self, *, resolved_at: datetime | None = None) -> None:
        self.resolved = True
        self.resolved_at = resolved_at or datetime.now(timezone.utc)


class ImportDuplicate(BaseModel):
    """Auto-linked association between an external record and an existing local one."""

    __tablename__ = "import_duplicates"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("migration_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source: Mapped[str] = mapped_column(db.String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    existing_local_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    match_reason: Mapped[str] = mapped_column(db.String(50), nullable=False)
    matching_field: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    matching_value: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    confidence_score: Mapped[int] = mapped_column(db.Integer, nullable=False, default=100)
    resolved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    run = relationship("MigrationRun", back_populates="duplicates")

    __table_args__ = (
        UniqueConstraint("source", "entity_type", "external_id", name="uq_import_duplicates_external"),
        Index("idx_import_duplicates_local", "entity_type", "existing_local_id"),
    )


class ExternalIdMap(BaseModel):
    """Maps external IDs to local entities to support idempotent upserts."""

    __tablename__ = "external_id_map"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    external_system: Mapped[str] = mapped_column(db.String(100), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("migration_runs.id"), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint(
            "entity_type",
            "external_system",
            "external_id",
            name="uq_external_id_map_entity",
        ),
        Index("idx_external_id_map_local", "entity_type", "external_system", "entity_id"),
    )

    def mark_seen(self, *, run_id: int | None = None, seen_at: datetime | None = None) -> None:
        """Update bookkeeping for an external identifier that was observed again."""
        self.last_seen_at = seen_at or datetime.now(timezone.utc)
        if run_id is not None:
            self.run_id = run_id
