"""Pydantic models exposed by the Catalog Mirror API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


QueryStatus = Literal["ok", "not_ready"]
LifecycleStateName = Literal["not_present", "downloading", "validating", "ready", "failed"]
SalesSource = Literal["overlay", "snapshot"]


class CatalogRecord(BaseModel):
    """A single catalog item as carried by a snapshot."""

    model_config = ConfigDict(frozen=True)

    asset_id: int = Field(ge=0, description="Unique, immutable item identifier.")
    product_id: int | None = Field(default=None, ge=0)
    name: str = Field(min_length=1)
    description: str | None = None
    product_type: str | None = None
    asset_type_id: int | None = Field(default=None, ge=0)
    created: datetime | None = None
    updated: datetime | None = None
    price_in_robux: int | None = Field(default=None, ge=0)
    is_for_sale: bool = False
    is_limited: bool = False
    is_limited_unique: bool = False
    sales_snapshot: int = Field(default=0, ge=0, description="Sales count embedded in the snapshot.")
    collectibles_detail: str | None = Field(
        default=None, description="Opaque collectibles payload passed through unchanged."
    )

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("created", "updated", mode="before")
    @classmethod
    def _blank_timestamp(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CatalogItemModel(CatalogRecord):
    """Catalog record merged with its effective sales value."""

    sales: int = Field(ge=0, description="Live sales when fresh, otherwise the snapshot value.")
    sales_source: SalesSource


class SnapshotStatusModel(BaseModel):
    """Lifecycle status of the local snapshot."""

    state: LifecycleStateName
    exists: bool = Field(description="Whether the canonical snapshot file is present.")
    downloading: bool = Field(description="Whether a refresh is in flight.")
    error: str | None = Field(default=None, description="Message of the last failure.")
    error_kind: str | None = Field(default=None, description="Machine-readable failure kind.")
    path: str
    generation: int | None = Field(default=None, description="Active snapshot generation.")
    record_count: int | None = None
    schema_version: int | None = None
    loaded_at: datetime | None = None
    bytes_downloaded: int = 0
    bytes_total: int | None = None
    job_id: str | None = Field(default=None, description="Job tracking the latest refresh.")
    started_at: datetime | None = None
    finished_at: datetime | None = None


class HealthStatus(BaseModel):
    """Service health payload."""

    status: Literal["ok"] = Field(default="ok")
    version: str = Field(default="0.1.0", description="Semantic version of the API service.")
    snapshot_state: LifecycleStateName


class LookupResponse(BaseModel):
    status: QueryStatus
    generation: int | None = None
    item: CatalogItemModel | None = None


class SearchResponse(BaseModel):
    status: QueryStatus
    generation: int | None = None
    query: str
    limit: int
    items: list[CatalogItemModel] = Field(default_factory=list)


class CountResponse(BaseModel):
    status: QueryStatus
    generation: int | None = None
    count: int = 0


class ItemsPageResponse(BaseModel):
    status: QueryStatus
    generation: int | None = None
    offset: int
    limit: int
    total: int = 0
    items: list[CatalogItemModel] = Field(default_factory=list)


class SalesResponse(BaseModel):
    status: QueryStatus
    asset_id: int
    sales: int | None = None
    sales_source: SalesSource | None = None


class BatchSalesRequest(BaseModel):
    """Payload accepted by the batch sales endpoint."""

    asset_ids: list[int] = Field(default_factory=list, description="Asset identifiers to resolve.")


class BatchSalesResponse(BaseModel):
    """Effective sales per asset id."""

    status: QueryStatus
    generation: int | None = None
    sales: dict[int, int] = Field(default_factory=dict)
    missing_ids: list[int] = Field(
        default_factory=list, description="Requested ids that are not in the snapshot."
    )
    failed_ids: list[int] = Field(
        default_factory=list,
        description="Ids whose live sales refresh failed; snapshot values were used.",
    )


class JobModel(BaseModel):
    """Represents a recorded refresh job."""

    id: str
    type: str
    status: Literal["queued", "running", "completed", "failed", "cancelled"]
    progress: float = Field(ge=0, le=1)
    worker_id: str | None = Field(
        default=None, description="Identifier for the worker processing the job."
    )
    payload: dict[str, Any] | None = Field(
        default=None, description="Optional JSON payload describing the job."
    )
    created_at: datetime = Field(
        description="Timestamp when the job record was created."
    )
    updated_at: datetime = Field(
        description="Timestamp when the job record was last updated."
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    duration_seconds: float | None = Field(
        default=None,
        description="Execution duration calculated from started and finished timestamps.",
    )


class JobLogCreate(BaseModel):
    """Payload used to append a new job log entry."""

    level: Literal["debug", "info", "warning", "error"] = Field(
        default="info", description="Severity level of the log entry."
    )
    message: str = Field(..., description="Human-readable log message.")
    context: dict[str, Any] | None = Field(
        default=None,
        description="Optional structured context payload for the log entry.",
    )


class JobLogModel(JobLogCreate):
    """Represents a persisted job log entry."""

    id: int
    job_id: str
    created_at: datetime
