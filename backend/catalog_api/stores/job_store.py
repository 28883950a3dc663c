"""Database-backed history of snapshot refresh jobs."""
from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Literal
from uuid import uuid4

from sqlmodel import Session, select

from ..models import JobRecord
from ..schemas import JobModel

SNAPSHOT_DOWNLOAD_JOB = "snapshot_download"

FinalStatus = Literal["completed", "failed", "cancelled"]


class JobStore:
    """One row per snapshot refresh, moved forward by the lifecycle thread."""

    def __init__(self, engine) -> None:
        self._engine = engine
        self._lock = Lock()

    def open(self, target_path: str) -> JobModel:
        """Record a queued refresh that will install into ``target_path``."""

        record = JobRecord(
            id=uuid4().hex,
            type=SNAPSHOT_DOWNLOAD_JOB,
            payload={"path": target_path},
        )
        with self._lock, Session(self._engine) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_model(record)

    def list(
        self,
        *,
        limit: int = 50,
        statuses: list[str] | None = None,
        job_type: str | None = None,
    ) -> list[JobModel]:
        """Newest jobs first, optionally filtered by status and type."""

        statement = select(JobRecord).order_by(JobRecord.created_at.desc()).limit(limit)
        wanted = {status.lower() for status in statuses or () if status}
        if wanted:
            statement = statement.where(JobRecord.status.in_(sorted(wanted)))
        if job_type:
            statement = statement.where(JobRecord.type == job_type)
        with Session(self._engine) as session:
            return [_to_model(record) for record in session.exec(statement)]

    def get(self, job_id: str) -> JobModel | None:
        with Session(self._engine) as session:
            record = session.get(JobRecord, job_id)
            return _to_model(record) if record else None

    def mark_running(
        self, job_id: str, *, progress: float = 0.0, worker_id: str | None = None
    ) -> JobModel:
        """Move a job to ``running``, or record further progress on it."""

        def apply(record: JobRecord, now: datetime) -> None:
            record.status = "running"
            record.progress = min(max(progress, 0.0), 1.0)
            record.started_at = record.started_at or now
            if worker_id is not None:
                record.worker_id = worker_id

        return self._apply(job_id, apply)

    def finish(self, job_id: str, status: FinalStatus, *, message: str | None = None) -> JobModel:
        """Close a job. ``message`` is kept as the error for failed or cancelled runs."""

        def apply(record: JobRecord, now: datetime) -> None:
            record.status = status
            record.finished_at = now
            if status == "completed":
                record.progress = 1.0
            elif message is not None:
                record.error_message = message

        return self._apply(job_id, apply)

    def _apply(self, job_id: str, change) -> JobModel:
        with self._lock, Session(self._engine) as session:
            record = session.get(JobRecord, job_id)
            if record is None:
                raise RuntimeError(f"Job {job_id} not found")
            now = datetime.utcnow()
            change(record, now)
            record.updated_at = now
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_model(record)


def _to_model(record: JobRecord) -> JobModel:
    duration = None
    if record.started_at and record.finished_at:
        duration = (record.finished_at - record.started_at).total_seconds()
    return JobModel(**record.model_dump(), duration_seconds=duration)
