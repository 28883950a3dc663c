"""Snapshot download, verification and atomic installation."""
from __future__ import annotations

import errno
import hashlib
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ContextManager, Iterator, Protocol
from urllib.parse import urljoin

import httpx

from ..stores.snapshot_file import SchemaMismatchError
from ..utils.paths import ensure_parent_directory, fsync_directory

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".part"
MAX_REDIRECTS = 10

ProgressCallback = Callable[[int, "int | None"], None]


class DownloadError(RuntimeError):
    """Raised when a snapshot cannot be fetched and verified."""

    kind = "download"


class NetworkError(DownloadError):
    """Raised when the snapshot source cannot be reached or answers badly."""

    kind = "network"


class ChecksumMismatchError(DownloadError):
    """Raised when the downloaded bytes do not match the advertised digest."""

    kind = "checksum_mismatch"


class DownloadTimeoutError(DownloadError):
    """Raised when the source stalls or the overall deadline passes."""

    kind = "timeout"


class DiskFullError(DownloadError):
    """Raised when the temp scope runs out of space."""

    kind = "disk_full"


class SnapshotWriteError(DownloadError):
    """Raised for filesystem failures other than running out of space."""

    kind = "io"


class DownloadCancelledError(DownloadError):
    """Raised when an in-flight download is abandoned."""

    kind = "cancelled"


@dataclass(slots=True, frozen=True)
class SnapshotManifest:
    """Remote description of the current snapshot blob."""

    url: str
    sha256: str
    schema_version: int
    size: int | None = None


@dataclass(slots=True, frozen=True)
class DownloadedSnapshot:
    """A verified snapshot sitting in the temp scope, not yet installed."""

    temp_path: Path
    manifest: SnapshotManifest
    sha256: str
    size: int


class SnapshotSource(Protocol):
    """Remote origin of snapshot blobs."""

    def fetch_manifest(self) -> SnapshotManifest:
        ...

    def open_stream(self, manifest: SnapshotManifest) -> ContextManager[Iterator[bytes]]:
        ...


class HttpSnapshotSource:
    """Fetch the manifest and blob over HTTP, following release redirects."""

    def __init__(
        self,
        manifest_url: str,
        *,
        timeout: float = 30.0,
        chunk_size: int = 1 << 20,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._manifest_url = manifest_url
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self._timeout,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            transport=self._transport,
        )

    def fetch_manifest(self) -> SnapshotManifest:
        try:
            with self._client() as client:
                response = client.get(self._manifest_url)
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise DownloadTimeoutError(f"Timed out fetching manifest: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"Manifest request failed with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to fetch manifest: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError("Manifest is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise NetworkError("Manifest must be a JSON object")

        try:
            size = payload.get("size")
            return SnapshotManifest(
                url=urljoin(self._manifest_url, str(payload["url"])),
                sha256=str(payload["sha256"]).strip().lower(),
                schema_version=int(payload["schema_version"]),
                size=int(size) if size is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise NetworkError(f"Manifest is missing required fields: {exc}") from exc

    @contextmanager
    def open_stream(self, manifest: SnapshotManifest) -> Iterator[Iterator[bytes]]:
        try:
            with self._client() as client:
                with client.stream("GET", manifest.url) as response:
                    response.raise_for_status()
                    yield response.iter_bytes(self._chunk_size)
        except httpx.TimeoutException as exc:
            raise DownloadTimeoutError(f"Timed out downloading snapshot: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"HTTP {exc.response.status_code}: failed to download snapshot"
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Failed to download snapshot: {exc}") from exc


def _translate_os_error(exc: OSError) -> DownloadError:
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return DiskFullError(f"No space left for snapshot download: {exc}")
    return SnapshotWriteError(f"Failed to write snapshot download: {exc}")


class SnapshotDownloader:
    """Stream a snapshot into the temp scope and install it with one rename.

    Nothing is ever written to ``final_path`` except by :meth:`install`, which
    is a single ``os.replace`` of an already verified file.
    """

    def __init__(
        self,
        source: SnapshotSource,
        final_path: str | Path,
        *,
        temp_dir: str | Path | None = None,
        timeout: float | None = None,
        supported_schema_versions: frozenset[int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._supported_schema_versions = supported_schema_versions
        self._final_path = ensure_parent_directory(final_path)
        self._temp_dir = Path(temp_dir).expanduser() if temp_dir else self._final_path.parent
        self._timeout = timeout
        self._clock = clock

    @property
    def final_path(self) -> Path:
        return self._final_path

    @property
    def temp_dir(self) -> Path:
        return self._temp_dir

    @property
    def source(self) -> SnapshotSource:
        return self._source

    def _temp_prefix(self) -> str:
        return f".{self._final_path.name}."

    def fetch(
        self,
        *,
        cancel_event: threading.Event | None = None,
        progress: ProgressCallback | None = None,
    ) -> DownloadedSnapshot:
        """Download and verify the current snapshot into a temp file."""

        manifest = self._source.fetch_manifest()
        if (
            self._supported_schema_versions is not None
            and manifest.schema_version not in self._supported_schema_versions
        ):
            raise SchemaMismatchError(manifest.schema_version)
        logger.info("Downloading snapshot from %s", manifest.url)

        try:
            self._temp_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=self._temp_dir, prefix=self._temp_prefix(), suffix=TEMP_SUFFIX
            )
        except OSError as exc:
            raise _translate_os_error(exc) from exc

        temp_path = Path(temp_name)
        hasher = hashlib.sha256()
        written = 0
        deadline = self._clock() + self._timeout if self._timeout else None
        try:
            with os.fdopen(fd, "wb") as output:
                with self._source.open_stream(manifest) as chunks:
                    for chunk in chunks:
                        if cancel_event is not None and cancel_event.is_set():
                            raise DownloadCancelledError("Snapshot download cancelled")
                        if deadline is not None and self._clock() > deadline:
                            raise DownloadTimeoutError(
                                f"Snapshot download exceeded {self._timeout:.0f}s"
                            )
                        if not chunk:
                            continue
                        output.write(chunk)
                        hasher.update(chunk)
                        written += len(chunk)
                        if progress is not None:
                            progress(written, manifest.size)
                output.flush()
                os.fsync(output.fileno())

            if cancel_event is not None and cancel_event.is_set():
                raise DownloadCancelledError("Snapshot download cancelled")
            if manifest.size is not None and written != manifest.size:
                raise ChecksumMismatchError(
                    f"Expected {manifest.size} bytes but received {written}"
                )
            digest = hasher.hexdigest()
            if digest != manifest.sha256.lower():
                raise ChecksumMismatchError(
                    f"Checksum mismatch: expected {manifest.sha256}, got {digest}"
                )
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise _translate_os_error(exc) from exc
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.info("Verified snapshot download (%d bytes, sha256=%s)", written, digest)
        return DownloadedSnapshot(temp_path=temp_path, manifest=manifest, sha256=digest, size=written)

    def install(self, downloaded: DownloadedSnapshot) -> Path:
        """Atomically move a verified download over the canonical path."""

        try:
            os.replace(downloaded.temp_path, self._final_path)
        except OSError as exc:
            downloaded.temp_path.unlink(missing_ok=True)
            raise _translate_os_error(exc) from exc
        fsync_directory(self._final_path.parent)
        logger.info("Installed snapshot at %s", self._final_path)
        return self._final_path

    def discard(self, downloaded: DownloadedSnapshot) -> None:
        """Remove a download that will not be installed."""

        downloaded.temp_path.unlink(missing_ok=True)

    def cleanup_stale_temps(self) -> int:
        """Delete partial downloads left behind by an interrupted run."""

        if not self._temp_dir.is_dir():
            return 0
        removed = 0
        for candidate in self._temp_dir.glob(f"{self._temp_prefix()}*{TEMP_SUFFIX}"):
            try:
                candidate.unlink()
                removed += 1
            except OSError as exc:
                logger.warning("Could not remove stale download %s: %s", candidate, exc)
        if removed:
            logger.info("Removed %d stale snapshot download(s)", removed)
        return removed
