import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from apm_hub.config import Settings
from apm_hub.log_setup import setup_logging
from apm_hub.models import SearchParams
from apm_hub.search.aggregator import Aggregator
from apm_hub.search.registry import BackendRegistry
from apm_hub.search_backends.factory import load_backends, load_config_files

logger = logging.getLogger(__name__)

# ----- Initialization: settings, registry, aggregator ------------------------

settings = Settings()

# Backends are loaded in the lifespan, the registry starts empty
registry = BackendRegistry()
aggregator = Aggregator(registry, timeout=settings.get_backend_timeout())

# ----- Server lifespan: load backends on startup -----------------------------

@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Server-level lifespan. Runs once when the MCP server starts."""
    config_files = settings.get_config_files()
    if config_files:
        logger.info("Loading backends from %s", config_files)
        registry.replace(load_backends(load_config_files(config_files), settings))
    else:
        logger.warning("No config files configured (APM_HUB_CONFIG_FILES), serving no backends")

    yield

# ----- FastMCP app and tools ------------------------------------------------

mcp = FastMCP(name="apm-hub", lifespan=app_lifespan)

# attach state container for tools to access
mcp.state = SimpleNamespace()
mcp.state.settings = settings
mcp.state.registry = registry
mcp.state.aggregator = aggregator


@mcp.tool()
async def search_logs(
    type: str = "",
    id: str = "",
    labels: dict[str, str] | None = None,
    query: str = "",
    start: str = "",
    end: str = "",
    limit: int = 0,
    page: str = "",
    limit_per_item: int = 0,
    limit_bytes: int = 0,
    limit_bytes_per_item: int = 0,
    ctx: Context | None = None,
) -> dict[str, Any]:
    """Search logs across every configured backend whose routes match.

    start/end take an RFC3339 timestamp or an age such as "1h" or "2d"
    (default start: 1h ago). type/id/labels drive routing, e.g.
    type="KubernetesPod", id="default/my-pod". limit_bytes and
    limit_bytes_per_item cap the bytes read per Kubernetes container.
    """
    params = SearchParams(
        type=type,
        id=id,
        labels=labels or {},
        query=query,
        start=start,
        end=end,
        limit=max(0, int(limit or 0)),
        page=page,
        limit_per_item=max(0, int(limit_per_item or 0)),
        limit_bytes=max(0, int(limit_bytes or 0)),
        limit_bytes_per_item=max(0, int(limit_bytes_per_item or 0)),
    )
    results = await mcp.state.aggregator.search(params)
    return results.model_dump(by_alias=True, exclude_none=True)


@mcp.tool()
async def list_backends(ctx: Context | None = None) -> dict[str, Any]:
    """List the active log backends (id and kind), in routing order."""
    backends = [{"id": b.backend_id, "kind": b.kind} for b in mcp.state.registry.snapshot()]
    return {"count": len(backends), "backends": backends}


def main() -> None:
    setup_logging(settings.log_level)
    mcp.run()


if __name__ == "__main__":
    main()
