"""Snapshot lifecycle state machine and its background refresh task."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from ..schemas import SnapshotStatusModel
from ..stores.job_log_store import JobLogStore
from ..stores.job_store import JobStore
from ..stores.record_store import LoadError, RecordStore, SnapshotCorruptError
from .downloader import DownloadCancelledError, DownloadedSnapshot, DownloadError, SnapshotDownloader

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """States of the local snapshot."""

    NOT_PRESENT = "not_present"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    READY = "ready"
    FAILED = "failed"


IN_FLIGHT = frozenset({LifecycleState.DOWNLOADING, LifecycleState.VALIDATING})


class LifecycleController:
    """Drive downloads and generation swaps; the only control surface for callers.

    Transitions happen on a single background thread per refresh. Callers poll
    :meth:`status`; nothing here blocks on the network. A failed refresh moves
    the controller to ``failed`` but never touches the active snapshot.
    """

    def __init__(
        self,
        store: RecordStore,
        downloader: SnapshotDownloader,
        *,
        job_store: JobStore | None = None,
        log_store: JobLogStore | None = None,
    ) -> None:
        self._store = store
        self._downloader = downloader
        self._job_store = job_store
        self._log_store = log_store

        self._lock = threading.Lock()
        self._state = LifecycleState.NOT_PRESENT
        self._error: str | None = None
        self._error_kind: str | None = None
        self._thread: threading.Thread | None = None
        self._cancel: threading.Event | None = None
        self._bytes_downloaded = 0
        self._bytes_total: int | None = None
        self._job_id: str | None = None
        self._started_at: datetime | None = None
        self._finished_at: datetime | None = None

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    @property
    def downloader(self) -> SnapshotDownloader:
        return self._downloader

    # ------------------------------------------------------------------
    # Control

    def initialize(self) -> SnapshotStatusModel:
        """Adopt an already-installed snapshot file, if there is one."""

        with self._lock:
            if self._state in IN_FLIGHT:
                return self._status_locked()

        self._downloader.cleanup_stale_temps()
        if self._store.ready:
            self._set_state(LifecycleState.READY)
            return self.status()

        final_path = self._downloader.final_path
        if not final_path.is_file():
            self._set_state(LifecycleState.NOT_PRESENT)
            return self.status()

        try:
            self._store.load(final_path)
        except LoadError as exc:
            logger.warning("Installed snapshot at %s is unusable: %s", final_path, exc)
            self._set_state(LifecycleState.FAILED, error=str(exc), error_kind=exc.kind)
        else:
            self._set_state(LifecycleState.READY)
        return self.status()

    def start(self) -> SnapshotStatusModel:
        """Begin a download unless one is already in flight."""

        with self._lock:
            if self._state in IN_FLIGHT:
                return self._status_locked()
            self._state = LifecycleState.DOWNLOADING
            self._error = None
            self._error_kind = None
            self._bytes_downloaded = 0
            self._bytes_total = None
            self._started_at = datetime.now(timezone.utc)
            self._finished_at = None
            self._job_id = None
            cancel = threading.Event()
            self._cancel = cancel

        job_id = self._open_job()
        thread = threading.Thread(
            target=self._run,
            args=(cancel, job_id),
            name="snapshot-refresh",
            daemon=True,
        )
        with self._lock:
            self._job_id = job_id
            self._thread = thread
            started = self._status_locked()
        logger.info("Snapshot refresh started")
        thread.start()
        return started

    def cancel(self) -> SnapshotStatusModel:
        """Abandon the in-flight download, leaving the active snapshot alone."""

        with self._lock:
            if self._state in IN_FLIGHT and self._cancel is not None:
                self._cancel.set()
                logger.info("Snapshot refresh cancellation requested")
            return self._status_locked()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the current refresh thread; returns ``True`` once it is done."""

        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        self.cancel()
        self.join(timeout)

    # ------------------------------------------------------------------
    # Status

    def status(self) -> SnapshotStatusModel:
        """Return the current status without waiting on any refresh."""

        with self._lock:
            return self._status_locked()

    def _status_locked(self) -> SnapshotStatusModel:
        info = self._store.active_info()
        try:
            exists = self._downloader.final_path.is_file()
        except OSError:
            exists = False
        return SnapshotStatusModel(
            state=self._state.value,
            exists=exists,
            downloading=self._state in IN_FLIGHT,
            error=self._error,
            error_kind=self._error_kind,
            path=str(self._downloader.final_path),
            generation=info.generation if info else None,
            record_count=info.record_count if info else None,
            schema_version=info.schema_version if info else None,
            loaded_at=info.loaded_at if info else None,
            bytes_downloaded=self._bytes_downloaded,
            bytes_total=self._bytes_total,
            job_id=self._job_id,
            started_at=self._started_at,
            finished_at=self._finished_at,
        )

    def _set_state(
        self,
        state: LifecycleState,
        *,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> None:
        with self._lock:
            previous = self._state
            self._state = state
            self._error = error
            self._error_kind = error_kind
            if state not in IN_FLIGHT and previous in IN_FLIGHT:
                self._finished_at = datetime.now(timezone.utc)
        if previous is not state:
            logger.info("Snapshot state %s -> %s", previous.value, state.value)

    def _on_progress(self, written: int, total: int | None) -> None:
        with self._lock:
            self._bytes_downloaded = written
            self._bytes_total = total

    # ------------------------------------------------------------------
    # Background refresh

    def _run(self, cancel: threading.Event, job_id: str | None) -> None:
        downloaded: DownloadedSnapshot | None = None
        try:
            self._record(job_id, "running")
            downloaded = self._downloader.fetch(cancel_event=cancel, progress=self._on_progress)
            self._set_state(LifecycleState.VALIDATING)
            self._record(job_id, "progress", 0.8, message="Download verified; validating snapshot")

            snapshot = self._store.read(downloaded.temp_path)
            if snapshot.schema_version != downloaded.manifest.schema_version:
                raise SnapshotCorruptError(
                    f"Snapshot declares schema version {snapshot.schema_version} "
                    f"but the manifest advertised {downloaded.manifest.schema_version}"
                )
            if cancel.is_set():
                raise DownloadCancelledError("Snapshot download cancelled")

            final_path = self._downloader.install(downloaded)
            downloaded = None
            snapshot.path = str(final_path)
            self._store.activate(snapshot)
            self._set_state(LifecycleState.READY)
            self._record(
                job_id,
                "completed",
                message=f"Snapshot generation {snapshot.generation} is live",
                generation=snapshot.generation,
                record_count=len(snapshot),
                rejected=snapshot.rejected,
            )
        except (DownloadError, LoadError) as exc:
            logger.warning("Snapshot refresh failed (%s): %s", exc.kind, exc)
            self._set_state(LifecycleState.FAILED, error=str(exc), error_kind=exc.kind)
            self._record(job_id, "cancelled" if exc.kind == "cancelled" else "failed", message=str(exc), kind=exc.kind)
        except Exception as exc:  # pragma: no cover - unexpected failures
            logger.exception("Unexpected error during snapshot refresh")
            self._set_state(LifecycleState.FAILED, error=str(exc), error_kind="internal")
            self._record(job_id, "failed", message=str(exc), kind="internal")
        finally:
            if downloaded is not None:
                self._downloader.discard(downloaded)

    # ------------------------------------------------------------------
    # Job history

    def _open_job(self) -> str | None:
        if self._job_store is None:
            return None
        try:
            job = self._job_store.open(str(self._downloader.final_path))
        except SQLAlchemyError as exc:
            logger.warning("Could not record snapshot refresh job: %s", exc)
            return None
        if self._log_store is not None:
            self._safe_log(job.id, "info", "Snapshot refresh enqueued")
        return job.id

    def _record(
        self,
        job_id: str | None,
        event: str,
        progress: float | None = None,
        *,
        message: str | None = None,
        **context: object,
    ) -> None:
        if job_id is None or self._job_store is None:
            return
        try:
            if event == "running":
                self._job_store.mark_running(job_id, worker_id=threading.current_thread().name)
            elif event == "progress":
                self._job_store.mark_running(job_id, progress=progress or 0.0)
            elif event in ("completed", "cancelled"):
                self._job_store.finish(job_id, event, message=message)
            else:
                self._job_store.finish(job_id, "failed", message=message or "failed")
        except (SQLAlchemyError, RuntimeError) as exc:
            logger.warning("Could not update job %s: %s", job_id, exc)
            return

        level = {"failed": "error", "cancelled": "warning"}.get(event, "info")
        self._safe_log(job_id, level, message or f"Snapshot refresh {event}", **context)

    def _safe_log(self, job_id: str, level: str, message: str, **context: object) -> None:
        if self._log_store is None:
            return
        try:
            self._log_store.log(job_id, level, message, **context)
        except SQLAlchemyError as exc:
            logger.warning("Could not append log for job %s: %s", job_id, exc)
