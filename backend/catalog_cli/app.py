"""Command line interface for the Catalog Mirror API."""
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import List, Optional

import httpx
import typer
from pydantic import ValidationError

from backend.catalog_api.schemas import CatalogRecord
from backend.catalog_api.stores.snapshot_file import SCHEMA_VERSION, write_snapshot

from .client import create_client


DEFAULT_API_BASE = "http://localhost:8000"

app = typer.Typer(help="Interact with the Catalog Mirror backend service.")
snapshot_app = typer.Typer(help="Inspect, refresh and build catalog snapshots.")
app.add_typer(snapshot_app, name="snapshot")
catalog_app = typer.Typer(help="Query the active catalog snapshot.")
app.add_typer(catalog_app, name="catalog")
jobs_app = typer.Typer(help="Inspect snapshot refresh jobs.")
app.add_typer(jobs_app, name="jobs")


JOB_STATUS_CHOICES = {"queued", "running", "completed", "failed", "cancelled"}


def _api_base_option() -> typer.Option:
    return typer.Option(
        DEFAULT_API_BASE,
        "--api-base",
        help="Base URL for the Catalog Mirror API service.",
        show_default=True,
        envvar="CATALOG_MIRROR_API_BASE",
    )


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _echo_response(response: httpx.Response, *, not_found: str | None = None) -> None:
    if not_found is not None and response.status_code == 404:
        typer.echo(not_found, err=True)
        raise typer.Exit(code=1)
    response.raise_for_status()
    _echo_json(response.json())


@app.command()
def health(api_base: str = _api_base_option()) -> None:
    """Call the /health endpoint and pretty-print the response."""

    with create_client(api_base) as client:
        _echo_response(client.get("/health"))


@snapshot_app.command("status")
def snapshot_status(api_base: str = _api_base_option()) -> None:
    """Show the snapshot lifecycle state."""

    with create_client(api_base) as client:
        _echo_response(client.get("/snapshot/status"))


@snapshot_app.command("download")
def snapshot_download(
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Poll until the refresh finishes and exit non-zero if it failed.",
        show_default=True,
    ),
    poll_interval: float = typer.Option(0.5, min=0.0, help="Seconds between status polls."),
    timeout: float = typer.Option(900.0, min=0.0, help="Give up waiting after this many seconds."),
    api_base: str = _api_base_option(),
) -> None:
    """Start a snapshot refresh."""

    with create_client(api_base) as client:
        response = client.post("/snapshot/download")
        response.raise_for_status()
        status = response.json()
        if wait:
            deadline = time.monotonic() + timeout
            while status.get("downloading"):
                if time.monotonic() > deadline:
                    _echo_json(status)
                    typer.echo("Timed out waiting for snapshot refresh", err=True)
                    raise typer.Exit(code=1)
                time.sleep(poll_interval)
                response = client.get("/snapshot/status")
                response.raise_for_status()
                status = response.json()
        _echo_json(status)
        if wait and status.get("state") == "failed":
            raise typer.Exit(code=1)


@snapshot_app.command("cancel")
def snapshot_cancel(api_base: str = _api_base_option()) -> None:
    """Cancel the in-flight snapshot refresh, if any."""

    with create_client(api_base) as client:
        _echo_response(client.post("/snapshot/cancel"))


@snapshot_app.command("build")
def snapshot_build(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of catalog records."),
    output: Path = typer.Argument(..., dir_okay=False, help="Snapshot file to write."),
    schema_version: int = typer.Option(SCHEMA_VERSION, help="Schema version stamped into the file."),
    url: Optional[str] = typer.Option(None, help="Blob URL advertised in the printed manifest."),
) -> None:
    """Write a snapshot file locally and print its manifest."""

    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        typer.echo(f"Invalid JSON input: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if not isinstance(payload, list):
        typer.echo("Input must be a JSON array of records", err=True)
        raise typer.Exit(code=1)

    try:
        records = [CatalogRecord.model_validate(entry) for entry in payload]
        info = write_snapshot(output, records, schema_version=schema_version)
    except (ValidationError, ValueError) as exc:
        typer.echo(f"Cannot build snapshot: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    _echo_json(info.manifest(url))


@catalog_app.command("search")
def catalog_search(
    keyword: str = typer.Argument(..., help="Keyword matched against item names."),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum number of results."),
    api_base: str = _api_base_option(),
) -> None:
    """Search the catalog by name."""

    params: dict[str, object] = {"q": keyword}
    if limit is not None:
        params["limit"] = limit
    with create_client(api_base) as client:
        _echo_response(client.get("/catalog/search", params=params))


@catalog_app.command("show")
def catalog_show(
    asset_id: int = typer.Argument(..., help="Asset identifier."),
    api_base: str = _api_base_option(),
) -> None:
    """Show a single catalog item."""

    with create_client(api_base) as client:
        _echo_response(client.get(f"/catalog/items/{asset_id}"), not_found=f"Item {asset_id} not found")


@catalog_app.command("sales")
def catalog_sales(
    asset_ids: List[int] = typer.Argument(..., help="One or more asset identifiers."),
    api_base: str = _api_base_option(),
) -> None:
    """Show effective sales; several ids are resolved in one batch."""

    with create_client(api_base) as client:
        if len(asset_ids) == 1:
            asset_id = asset_ids[0]
            response = client.get(f"/catalog/items/{asset_id}/sales")
            _echo_response(response, not_found=f"Item {asset_id} not found")
            return
        _echo_response(client.post("/catalog/sales", json={"asset_ids": asset_ids}))


@catalog_app.command("count")
def catalog_count(api_base: str = _api_base_option()) -> None:
    with create_client(api_base) as client:
        _echo_response(client.get("/catalog/count"))


@catalog_app.command("items")
def catalog_items(
    offset: int = typer.Option(0, min=0, help="Number of items to skip."),
    limit: Optional[int] = typer.Option(None, min=1, help="Page size."),
    api_base: str = _api_base_option(),
) -> None:
    """Page through catalog items in asset id order."""

    params: dict[str, object] = {"offset": offset}
    if limit is not None:
        params["limit"] = limit
    with create_client(api_base) as client:
        _echo_response(client.get("/catalog/items", params=params))


@jobs_app.command("list")
def list_jobs(
    limit: int = typer.Option(20, min=1, max=100, help="Maximum number of jobs to return."),
    status: Optional[List[str]] = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by job status. Repeat to include multiple statuses.",
    ),
    job_type: Optional[str] = typer.Option(None, "--type", help="Filter by job type."),
    api_base: str = _api_base_option(),
) -> None:
    """List recent refresh jobs."""

    params: list[tuple[str, str | int]] = [("limit", limit)]
    for value in status or []:
        normalized = value.lower()
        if normalized not in JOB_STATUS_CHOICES:
            typer.echo(
                f"Invalid status '{value}'. Choose from: {', '.join(sorted(JOB_STATUS_CHOICES))}",
                err=True,
            )
            raise typer.Exit(code=1)
        params.append(("status", normalized))
    if job_type:
        params.append(("type", job_type))

    with create_client(api_base) as client:
        _echo_response(client.get("/jobs", params=params))


@jobs_app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job identifier."),
    api_base: str = _api_base_option(),
) -> None:
    """Display metadata for a single job."""

    with create_client(api_base) as client:
        _echo_response(client.get(f"/jobs/{job_id}"), not_found=f"Job {job_id} not found")


@jobs_app.command("logs")
def job_logs(
    job_id: str = typer.Argument(..., help="Job identifier."),
    limit: int = typer.Option(100, min=1, max=500, help="Maximum number of log events."),
    api_base: str = _api_base_option(),
) -> None:
    """Print log events recorded for a job."""

    with create_client(api_base) as client:
        _echo_response(
            client.get(f"/jobs/{job_id}/logs", params={"limit": limit}),
            not_found=f"Job {job_id} not found",
        )
