"""Catalog query endpoints.

Queries made before any snapshot is loaded answer ``200`` with
``status="not_ready"`` rather than an error code.
"""
from fastapi import APIRouter, Depends, HTTPException, Query

from ..dependencies import get_query_facade
from ..schemas import (
    BatchSalesRequest,
    BatchSalesResponse,
    CountResponse,
    ItemsPageResponse,
    LookupResponse,
    SalesResponse,
    SearchResponse,
)
from ..services.query import QueryFacade

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/count", response_model=CountResponse)
def count_items(facade: QueryFacade = Depends(get_query_facade)) -> CountResponse:
    return facade.count()


@router.get("/search", response_model=SearchResponse)
def search_items(
    q: str = Query(default="", description="Keyword matched against item names."),
    limit: int | None = Query(default=None, ge=1),
    facade: QueryFacade = Depends(get_query_facade),
) -> SearchResponse:
    """Search item names, prefix matches first, then by sales."""

    return facade.search(q, limit)


@router.get("/items", response_model=ItemsPageResponse)
def list_items(
    offset: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1),
    facade: QueryFacade = Depends(get_query_facade),
) -> ItemsPageResponse:
    return facade.list_items(offset, limit)


@router.get("/items/{asset_id}", response_model=LookupResponse)
def get_item(asset_id: int, facade: QueryFacade = Depends(get_query_facade)) -> LookupResponse:
    """Return a single item, raising if the active snapshot lacks it."""

    result = facade.lookup(asset_id)
    if result.status == "ok" and result.item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return result


@router.get("/items/{asset_id}/sales", response_model=SalesResponse)
def get_item_sales(asset_id: int, facade: QueryFacade = Depends(get_query_facade)) -> SalesResponse:
    result = facade.sales(asset_id)
    if result.status == "ok" and result.sales is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return result


@router.post("/sales", response_model=BatchSalesResponse)
def batch_sales(
    request: BatchSalesRequest,
    facade: QueryFacade = Depends(get_query_facade),
) -> BatchSalesResponse:
    """Resolve effective sales for many ids, refreshing missing live values."""

    return facade.batch_sales(request.asset_ids)
