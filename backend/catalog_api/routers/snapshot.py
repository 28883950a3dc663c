"""Snapshot lifecycle endpoints."""
from fastapi import APIRouter, Depends

from ..dependencies import get_query_facade
from ..schemas import SnapshotStatusModel
from ..services.query import QueryFacade

router = APIRouter(prefix="/snapshot", tags=["snapshot"])


@router.get("/status", response_model=SnapshotStatusModel)
def snapshot_status(facade: QueryFacade = Depends(get_query_facade)) -> SnapshotStatusModel:
    """Return the lifecycle state without waiting on any download."""

    return facade.status()


@router.post("/download", response_model=SnapshotStatusModel, status_code=202)
def start_download(facade: QueryFacade = Depends(get_query_facade)) -> SnapshotStatusModel:
    """Start a snapshot refresh; repeated calls while in flight are no-ops."""

    return facade.start_download()


@router.post("/cancel", response_model=SnapshotStatusModel)
def cancel_download(facade: QueryFacade = Depends(get_query_facade)) -> SnapshotStatusModel:
    return facade.cancel_download()
