"""Health endpoints."""
from fastapi import APIRouter, Depends

from ..dependencies import get_lifecycle
from ..schemas import HealthStatus
from ..services.lifecycle import LifecycleController

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthStatus)
def get_health(lifecycle: LifecycleController = Depends(get_lifecycle)) -> HealthStatus:
    """Return service heartbeat information."""

    return HealthStatus(snapshot_state=lifecycle.state.value)
