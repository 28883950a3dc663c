"""Runtime configuration for the Catalog Mirror API."""
from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils.paths import default_snapshot_path


class CatalogSettings(BaseSettings):
    """Environment-aware settings for the catalog mirror service."""

    snapshot_manifest_url: str = Field(
        "http://localhost:5056/snapshot/manifest.json",
        description="URL of the manifest describing the current snapshot blob.",
    )
    snapshot_path: str = Field(
        default_factory=default_snapshot_path,
        description="Canonical filesystem path of the installed snapshot file.",
    )
    snapshot_temp_dir: str | None = Field(
        default=None,
        description="Directory for in-flight downloads. Defaults to the snapshot directory.",
    )
    http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-request connect/read timeout for remote sources."
    )
    download_timeout_seconds: float = Field(
        default=900.0, gt=0, description="Overall deadline for a single snapshot download."
    )
    download_chunk_size: int = Field(
        default=1 << 20, gt=0, description="Streaming chunk size in bytes."
    )
    load_snapshot_on_startup: bool = Field(
        default=True, description="Load an already-installed snapshot when the service starts."
    )
    search_default_limit: int = Field(default=50, ge=1)
    search_max_limit: int = Field(default=500, ge=1)
    sales_api_url: str = Field(
        "http://localhost:5056",
        description="Base URL for the live sales feed.",
    )
    sales_ttl_seconds: float = Field(
        default=300.0, gt=0, description="Age after which a live sales value is ignored."
    )
    sales_refresh_interval_seconds: float = Field(
        default=60.0, gt=0, description="Period of the background sales refresh task."
    )
    sales_refresh_enabled: bool = Field(
        default=True, description="Run the background sales refresh task."
    )
    sales_overlay_max_entries: int = Field(
        default=10_000, ge=1, description="Maximum number of tracked live sales entries."
    )
    sales_batch_max_size: int = Field(
        default=100, ge=1, description="Maximum ids per sales fetch and per on-demand refresh."
    )
    sales_on_demand_refresh: bool = Field(
        default=True, description="Allow batch sales lookups to fetch missing ids."
    )
    database_url: str = Field(
        default="sqlite:///./data/catalog_jobs.db",
        description="Connection URL for the job history database.",
    )
    database_echo: bool = Field(
        default=False, description="Enable SQL echo for debugging queries."
    )
    log_level: str = Field(default="INFO", description="Root log level for the service.")

    model_config = SettingsConfigDict(
        env_prefix="CATALOG_MIRROR_",
        env_file=".env",
        env_file_encoding="utf-8",
    )
