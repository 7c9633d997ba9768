"""Build search backends from configuration.

Configuration files are YAML documents with a top-level `backends` list. Each
entry is validated on its own: a malformed entry, an invalid backend or an
unreachable one is logged and left out, the remaining backends still load.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from apm_hub.config import ConfigurationError, Settings
from apm_hub.models import (
    BackendConfig,
    CloudWatchBackendConfig,
    ElasticsearchBackendConfig,
    FileBackendConfig,
    KubernetesBackendConfig,
    OpenSearchBackendConfig,
    backend_config_adapter,
)

from .base import BackendConfigError, SearchBackend

logger = logging.getLogger(__name__)


def read_config_file(path: str | Path) -> list[dict[str, Any]]:
    """Return the raw backend entries of one configuration file."""
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigurationError(f"error reading the config file {p}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"error parsing the config file {p}: {e}") from e

    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config file {p} must contain a mapping")
    backends = data.get("backends") or []
    if not isinstance(backends, list):
        raise ConfigurationError(f"'backends' in {p} must be a list")
    return backends


def parse_backend_configs(entries: Iterable[Any], source: str = "") -> list[BackendConfig]:
    configs: list[BackendConfig] = []
    for i, entry in enumerate(entries):
        try:
            configs.append(backend_config_adapter.validate_python(entry))
        except ValidationError as e:
            logger.error("invalid backend #%d in %s: %s", i, source or "config", e)
    return configs


def load_config_files(paths: Iterable[str | Path]) -> list[BackendConfig]:
    """Parse every configuration file, in order. Unreadable files are skipped."""
    configs: list[BackendConfig] = []
    for path in paths:
        try:
            entries = read_config_file(path)
        except ConfigurationError as e:
            logger.error("%s", e)
            continue
        configs.extend(parse_backend_configs(entries, source=str(path)))
    return configs


def build_backend(
    config: BackendConfig,
    settings: Settings,
    backend_id: str | None = None,
) -> SearchBackend:
    """Construct the adapter for one configuration entry.

    Raises BackendConfigError when the entry is invalid or, with pinging
    enabled, when the backend does not answer.
    """
    timeout = settings.get_backend_timeout()
    if isinstance(config, FileBackendConfig):
        from .files import FileSearchBackend

        return FileSearchBackend(config, backend_id=backend_id)
    if isinstance(config, ElasticsearchBackendConfig):
        from .elasticsearch import ElasticsearchSearchBackend

        es = ElasticsearchSearchBackend(config, backend_id=backend_id, timeout=timeout)
        if settings.ping_backends:
            es.ping()
        return es
    if isinstance(config, OpenSearchBackendConfig):
        from .opensearch import OpenSearchSearchBackend

        os_backend = OpenSearchSearchBackend(config, backend_id=backend_id, timeout=timeout)
        if settings.ping_backends:
            os_backend.ping()
        return os_backend
    if isinstance(config, CloudWatchBackendConfig):
        from .cloudwatch import CloudWatchSearchBackend

        return CloudWatchSearchBackend(
            config,
            backend_id=backend_id,
            poll_interval=settings.cloudwatch_poll_interval_seconds,
            max_attempts=settings.cloudwatch_max_poll_attempts,
            timeout=timeout,
        )
    if isinstance(config, KubernetesBackendConfig):
        from .kubernetes import KubernetesSearchBackend

        return KubernetesSearchBackend(config, backend_id=backend_id, request_timeout=timeout)
    raise BackendConfigError(f"unsupported backend config: {type(config).__name__}")


def load_backends(configs: Iterable[BackendConfig], settings: Settings) -> list[SearchBackend]:
    """Instantiate backends in configuration order, excluding the ones that fail."""
    backends: list[SearchBackend] = []
    for position, config in enumerate(configs):
        backend_id = config.name or f"{config.type}-{position}"
        try:
            backends.append(build_backend(config, settings, backend_id=backend_id))
        except BackendConfigError as e:
            logger.error("excluding backend %s: %s", backend_id, e)
        except Exception:
            logger.exception("excluding backend %s: unexpected error while building it", backend_id)
    logger.info("loaded %d backend(s): %s", len(backends), [b.backend_id for b in backends])
    return backends
