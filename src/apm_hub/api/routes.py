from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..models import SearchParams, SearchResults
from ..search.aggregator import Aggregator
from ..search.registry import BackendRegistry

router = APIRouter()


def get_aggregator(request: Request) -> Aggregator:
    return request.app.state.aggregator


def get_registry(request: Request) -> BackendRegistry:
    return request.app.state.registry


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.post("/search", response_model=SearchResults, response_model_by_alias=True)
async def search(params: SearchParams, aggregator: Aggregator = Depends(get_aggregator)):
    """Search every matching backend and return the merged results.

    Backend failures do not fail the request; they show up in `backends`.
    """
    return await aggregator.search(params)


@router.get("/backends")
async def list_backends(registry: BackendRegistry = Depends(get_registry)):
    backends = [{"id": b.backend_id, "kind": b.kind} for b in registry.snapshot()]
    return {"count": len(backends), "generation": registry.generation, "backends": backends}
