"""Reader and writer for the versioned snapshot file.

A snapshot is a single SQLite database holding a ``snapshot_meta`` header row
and an ``items`` table. The header carries the schema version, the number of
rows and a digest over the canonical row encoding so a truncated or tampered
file is rejected before it is ever served.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import DatabaseError
from sqlmodel import Session, SQLModel, create_engine, select

from ..models import SNAPSHOT_TABLES, SnapshotItemRecord, SnapshotMetaRecord
from ..schemas import CatalogRecord
from ..utils.paths import fsync_directory

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({1})


class LoadError(RuntimeError):
    """Raised when a snapshot file cannot be turned into a usable snapshot."""

    kind = "load"


class SnapshotCorruptError(LoadError):
    """Raised when the file is not a well-formed snapshot."""

    kind = "corrupt"


class SchemaMismatchError(LoadError):
    """Raised when the snapshot declares an unsupported schema version."""

    kind = "schema_mismatch"

    def __init__(self, version: int) -> None:
        super().__init__(f"Unsupported snapshot schema version {version}")
        self.version = version


class SnapshotIoError(LoadError):
    """Raised when the snapshot file cannot be read."""

    kind = "io"


@dataclass(slots=True)
class SnapshotContents:
    """Validated payload read from a snapshot file."""

    path: Path
    schema_version: int
    generated_at: datetime | None
    records: list[CatalogRecord]
    rejected: int


@dataclass(slots=True, frozen=True)
class SnapshotFileInfo:
    """Description of a freshly written snapshot file."""

    path: Path
    sha256: str
    size: int
    record_count: int
    schema_version: int

    def manifest(self, url: str | None = None) -> dict[str, object]:
        """Return the manifest payload advertising this file."""

        return {
            "url": url or self.path.name,
            "sha256": self.sha256,
            "size": self.size,
            "schema_version": self.schema_version,
            "record_count": self.record_count,
        }


def file_sha256(path: Path) -> str:
    """Compute the SHA-256 digest for the provided file."""

    hasher = hashlib.sha256()
    with path.open("rb") as stream:
        for chunk in iter(lambda: stream.read(1 << 20), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _row_values(row: SnapshotItemRecord) -> list[object]:
    return [
        row.asset_id,
        row.product_id,
        row.name,
        row.description,
        row.product_type,
        row.asset_type_id,
        row.created,
        row.updated,
        row.price_in_robux,
        None if row.is_for_sale is None else bool(row.is_for_sale),
        None if row.is_limited is None else bool(row.is_limited),
        None if row.is_limited_unique is None else bool(row.is_limited_unique),
        row.sales,
        row.collectibles_detail,
    ]


def _content_digest(rows: Iterable[SnapshotItemRecord]) -> str:
    """Digest rows in asset id order using a canonical JSON line encoding."""

    hasher = hashlib.sha256()
    for row in rows:
        line = json.dumps(_row_values(row), separators=(",", ":"), ensure_ascii=False)
        hasher.update(line.encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _record_to_row(record: CatalogRecord) -> SnapshotItemRecord:
    return SnapshotItemRecord(
        asset_id=record.asset_id,
        product_id=record.product_id,
        name=record.name,
        description=record.description,
        product_type=record.product_type,
        asset_type_id=record.asset_type_id,
        created=_isoformat(record.created),
        updated=_isoformat(record.updated),
        price_in_robux=record.price_in_robux,
        is_for_sale=record.is_for_sale,
        is_limited=record.is_limited,
        is_limited_unique=record.is_limited_unique,
        sales=record.sales_snapshot,
        collectibles_detail=record.collectibles_detail,
    )


def _row_to_record(row: SnapshotItemRecord) -> CatalogRecord:
    """Validate a raw row, applying the same defaults the catalog feed implies."""

    return CatalogRecord(
        asset_id=row.asset_id,
        product_id=row.product_id,
        name=row.name or "",
        description=row.description,
        product_type=row.product_type,
        asset_type_id=row.asset_type_id,
        created=row.created,
        updated=row.updated,
        price_in_robux=row.price_in_robux,
        is_for_sale=bool(row.is_for_sale),
        is_limited=bool(row.is_limited),
        is_limited_unique=bool(row.is_limited_unique),
        sales_snapshot=row.sales or 0,
        collectibles_detail=row.collectibles_detail,
    )


def _parse_generated_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _readonly_url(path: Path) -> str:
    return f"sqlite:///file:{path.resolve().as_posix()}?mode=ro&uri=true"


def write_snapshot(
    path: str | Path,
    records: Iterable[CatalogRecord],
    *,
    schema_version: int = SCHEMA_VERSION,
    generated_at: datetime | None = None,
) -> SnapshotFileInfo:
    """Write ``records`` as a snapshot file at ``path``.

    The file is built next to ``path`` and renamed into place, so an existing
    snapshot at ``path`` is replaced wholesale or not at all.
    """

    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)

    ordered: list[CatalogRecord] = sorted(records, key=lambda record: record.asset_id)
    for previous, current in zip(ordered, ordered[1:]):
        if previous.asset_id == current.asset_id:
            raise ValueError(f"Duplicate asset id {current.asset_id} in snapshot records")

    rows = [_record_to_row(record) for record in ordered]
    digest = _content_digest(rows)
    stamp = generated_at or datetime.now(timezone.utc)

    fd, temp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".build")
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        engine = create_engine(f"sqlite:///{temp_path.as_posix()}")
        try:
            SQLModel.metadata.create_all(engine, tables=SNAPSHOT_TABLES)
            with Session(engine) as session:
                session.add(
                    SnapshotMetaRecord(
                        id=1,
                        schema_version=schema_version,
                        generated_at=stamp.isoformat(),
                        record_count=len(rows),
                        content_digest=digest,
                    )
                )
                session.add_all(rows)
                session.commit()
        finally:
            engine.dispose()

        info = SnapshotFileInfo(
            path=target,
            sha256=file_sha256(temp_path),
            size=temp_path.stat().st_size,
            record_count=len(rows),
            schema_version=schema_version,
        )
        os.replace(temp_path, target)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    fsync_directory(target.parent)
    logger.info("Wrote snapshot with %d records to %s", info.record_count, target)
    return info


def read_snapshot(path: str | Path) -> SnapshotContents:
    """Read, verify and validate the snapshot stored at ``path``.

    Malformed rows (missing name, negative counters, unparsable timestamps) are
    skipped and counted in ``rejected``; structural problems raise a
    :class:`LoadError` subclass.
    """

    source = Path(path).expanduser()
    if not source.is_file():
        raise SnapshotIoError(f"Snapshot file not found: {source}")
    if not os.access(source, os.R_OK):
        raise SnapshotIoError(f"Snapshot file is not readable: {source}")

    engine = create_engine(_readonly_url(source))
    try:
        with Session(engine) as session:
            version = session.exec(
                select(SnapshotMetaRecord.schema_version).where(SnapshotMetaRecord.id == 1)
            ).first()
            if version is None:
                raise SnapshotCorruptError(f"Snapshot header missing in {source}")
            if version not in SUPPORTED_SCHEMA_VERSIONS:
                raise SchemaMismatchError(version)

            meta = session.get(SnapshotMetaRecord, 1)
            rows: Sequence[SnapshotItemRecord] = session.exec(
                select(SnapshotItemRecord).order_by(SnapshotItemRecord.asset_id)
            ).all()

            if meta.record_count != len(rows):
                raise SnapshotCorruptError(
                    f"Snapshot declares {meta.record_count} records but contains {len(rows)}"
                )
            if meta.content_digest and meta.content_digest != _content_digest(rows):
                raise SnapshotCorruptError("Snapshot content digest mismatch")

            records: list[CatalogRecord] = []
            rejected = 0
            for row in rows:
                try:
                    records.append(_row_to_record(row))
                except ValidationError as exc:
                    rejected += 1
                    logger.debug("Rejected snapshot row %s: %s", row.asset_id, exc)
            generated_at = _parse_generated_at(meta.generated_at)
    except LoadError:
        raise
    except DatabaseError as exc:
        raise SnapshotCorruptError(f"Snapshot file is not a valid database: {exc}") from exc
    except OSError as exc:
        raise SnapshotIoError(f"Failed to read snapshot: {exc}") from exc
    finally:
        engine.dispose()

    if rejected:
        logger.warning("Rejected %d malformed rows while reading %s", rejected, source)
    return SnapshotContents(
        path=source,
        schema_version=version,
        generated_at=generated_at,
        records=records,
        rejected=rejected,
    )
