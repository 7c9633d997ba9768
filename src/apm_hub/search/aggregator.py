from __future__ import annotations

import asyncio
import enum
import logging
import time

from apm_hub.models import BackendStatus, SearchParams, SearchResults
from apm_hub.search_backends.base import SearchBackend

from .registry import BackendRegistry

logger = logging.getLogger(__name__)


class AggregationState(enum.Enum):
    ACCUMULATING = "accumulating"
    # an additive route matched; its backend's results are final
    FINALIZED = "finalized"


class Aggregator:
    """Fan a search out over the configured backends and merge their results.

    Backends are visited sequentially in configuration order so merged results
    keep a deterministic order. A backend whose routes do not match is skipped;
    a backend that fails or exceeds `timeout` seconds contributes nothing and
    the request carries on. When the matching route is additive the backend is
    authoritative: everything accumulated so far is replaced by its result and
    no further backend runs.
    """

    def __init__(self, registry: BackendRegistry, timeout: float | None = None):
        self.registry = registry
        self.timeout = timeout

    async def _run_backend(self, backend: SearchBackend, params: SearchParams) -> SearchResults:
        call = asyncio.to_thread(backend.search, params)
        if self.timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self.timeout)

    async def search(self, params: SearchParams) -> SearchResults:
        params = params.resolve()
        started = time.perf_counter()

        acc = SearchResults()
        statuses: list[BackendStatus] = []
        state = AggregationState.ACCUMULATING

        for backend in self.registry.snapshot():
            matched, additive = backend.match_route(params)
            if not matched:
                logger.debug("[%s] no route matched, skipping", backend.backend_id)
                continue

            status = BackendStatus(backend=backend.backend_id, kind=backend.kind, additive=additive)
            backend_started = time.perf_counter()
            try:
                result = await self._run_backend(backend, params)
            except TimeoutError:
                status.error = f"timed out after {self.timeout}s"
                logger.warning("[%s] (%s) search timed out after %ss", backend.backend_id, backend.kind, self.timeout)
                continue
            except Exception as e:
                status.error = str(e) or type(e).__name__
                logger.error("[%s] (%s) search failed: %s", backend.backend_id, backend.kind, e)
                continue
            finally:
                status.elapsed_ms = round((time.perf_counter() - backend_started) * 1000, 3)
                statuses.append(status)

            status.total = result.total
            if additive:
                acc = result
                state = AggregationState.FINALIZED
                break
            acc = acc.merge(result)

        acc = acc.model_copy(update={"backends": statuses})
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "search type=%r id=%r labels=%s query=%r start=%r end=%r: "
            "%d result(s) from %d backend(s) (%s) in %.1fms",
            params.type,
            params.id,
            params.labels,
            params.query,
            params.start,
            params.end,
            len(acc.results),
            len(statuses),
            state.value,
            elapsed_ms,
        )
        return acc
