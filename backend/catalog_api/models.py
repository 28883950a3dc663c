"""Database models for the Catalog Mirror.

Two unrelated databases share these declarations: the service's job history
database (``JobRecord``/``JobLogRecord``) and the snapshot file itself
(``SnapshotMetaRecord``/``SnapshotItemRecord``). Callers pass explicit table
lists to ``create_all`` so neither database receives the other's tables.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


class JobRecord(SQLModel, table=True):
    """Background job metadata persisted for refresh history."""

    __tablename__ = "catalog_jobs"

    id: str = Field(primary_key=True, index=True)
    type: str = Field(index=True)
    status: str = Field(default="queued", index=True)
    progress: float = Field(default=0.0)
    worker_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    started_at: datetime | None = Field(default=None, index=True)
    finished_at: datetime | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class JobLogRecord(SQLModel, table=True):
    """Structured log event associated with a refresh job."""

    __tablename__ = "catalog_job_logs"

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    level: str = Field(default="info", index=True)
    message: str
    context: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class SnapshotMetaRecord(SQLModel, table=True):
    """Header row of a snapshot file."""

    __tablename__ = "snapshot_meta"

    id: int = Field(default=1, primary_key=True)
    schema_version: int
    generated_at: str | None = Field(default=None)
    record_count: int
    content_digest: str | None = Field(default=None)


class SnapshotItemRecord(SQLModel, table=True):
    """Catalog row stored in a snapshot file.

    Columns are deliberately permissive; rows are validated when the file is
    read, not when it is written by a third party.
    """

    __tablename__ = "items"

    asset_id: int = Field(primary_key=True)
    product_id: int | None = Field(default=None)
    name: str | None = Field(default=None)
    description: str | None = Field(default=None)
    product_type: str | None = Field(default=None)
    asset_type_id: int | None = Field(default=None)
    created: str | None = Field(default=None)
    updated: str | None = Field(default=None)
    price_in_robux: int | None = Field(default=None)
    is_for_sale: bool | None = Field(default=None)
    is_limited: bool | None = Field(default=None)
    is_limited_unique: bool | None = Field(default=None)
    sales: int | None = Field(default=None)
    collectibles_detail: str | None = Field(default=None)


JOB_TABLES = [JobRecord.__table__, JobLogRecord.__table__]
SNAPSHOT_TABLES = [SnapshotMetaRecord.__table__, SnapshotItemRecord.__table__]
