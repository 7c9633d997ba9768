from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import Settings
from ..log_setup import setup_logging
from ..search.aggregator import Aggregator
from ..search.registry import BackendRegistry
from ..search_backends.factory import load_backends, load_config_files
from .routes import router

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, registry: BackendRegistry | None = None) -> FastAPI:
    """Build the HTTP application.

    Backends listed in the configured files are loaded on startup and swapped
    into the registry; without config files the given registry is served as is.
    """
    settings = settings or Settings()
    registry = registry if registry is not None else BackendRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        config_files = settings.get_config_files()
        if config_files:
            configs = load_config_files(config_files)
            registry.replace(load_backends(configs, settings))
        else:
            logger.warning("no config files configured (APM_HUB_CONFIG_FILES)")
        yield

    app = FastAPI(title="apm-hub", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.aggregator = Aggregator(registry, timeout=settings.get_backend_timeout())
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    settings = Settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    main()
