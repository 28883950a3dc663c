"""FastAPI dependencies for the Catalog Mirror API."""
from fastapi import Depends, Request

from .services.lifecycle import LifecycleController
from .services.query import QueryFacade
from .state import AppState
from .stores.job_log_store import JobLogStore
from .stores.job_store import JobStore


def get_app_state(request: Request) -> AppState:
    """Resolve the shared application state from the FastAPI request."""
    return request.app.state.app_state


def get_query_facade(app_state: AppState = Depends(get_app_state)) -> QueryFacade:
    """Return the catalog query facade."""
    return app_state.query


def get_lifecycle(app_state: AppState = Depends(get_app_state)) -> LifecycleController:
    return app_state.lifecycle


def get_job_store(app_state: AppState = Depends(get_app_state)) -> JobStore:
    return app_state.job_store


def get_job_log_store(app_state: AppState = Depends(get_app_state)) -> JobLogStore:
    return app_state.job_log_store
