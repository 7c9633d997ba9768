from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from elasticsearch import ApiError, Elasticsearch, TransportError

from apm_hub.models import ElasticsearchBackendConfig

from .base import BackendConfigError, BackendSearchError
from .index_search import IndexSearchBackend

logger = logging.getLogger(__name__)


def client_options(config: ElasticsearchBackendConfig, timeout: float | None = None) -> dict[str, Any]:
    """Keyword arguments for the Elasticsearch client built from a backend config.

    Exactly one of `address` or `cloudID` must be set. An `apiKey` wins over
    username/password.
    """
    if config.address and config.cloud_id:
        raise BackendConfigError("provide either an address or a cloudID")
    if not config.address and not config.cloud_id:
        raise BackendConfigError("provide at least an address or a cloudID")

    options: dict[str, Any] = {}
    if config.cloud_id:
        options["cloud_id"] = config.cloud_id
    else:
        options["hosts"] = [config.address.rstrip("/")]
    if config.api_key is not None:
        options["api_key"] = config.api_key.get_secret_value()
    elif config.username:
        password = config.password.get_secret_value() if config.password else ""
        options["basic_auth"] = (config.username, password)
    # TLS options only apply to https nodes
    if config.cloud_id or config.address.startswith("https"):
        options["verify_certs"] = config.verify_certs
    if timeout is not None:
        options["request_timeout"] = timeout
    return options


class ElasticsearchSearchBackend(IndexSearchBackend):
    """Elasticsearch backend built on the official elasticsearch client.

    A pre-built client can be injected; otherwise one is created from the
    configured address or Elastic Cloud ID and credentials.
    """

    kind = "elasticsearch"

    def __init__(
        self,
        config: ElasticsearchBackendConfig,
        backend_id: str | None = None,
        timeout: float | None = 30,
        client: Any | None = None,
    ) -> None:
        super().__init__(config, backend_id=backend_id)
        options = client_options(config, timeout)
        if client is None:
            try:
                client = Elasticsearch(**options)
            except ValueError as e:
                raise BackendConfigError(f"[elasticsearch] invalid client configuration: {e}") from e
        self.timeout = timeout
        self.client = client

    def ping(self) -> None:
        """Raise BackendConfigError unless the cluster answers."""
        try:
            ok = self.client.ping()
        except (ApiError, TransportError) as e:
            raise BackendConfigError(f"[elasticsearch] error pinging: {e}") from e
        if not ok:
            raise BackendConfigError("[elasticsearch] ping failed")

    def _execute(self, body: dict[str, Any], size: int) -> Mapping[str, Any]:
        try:
            resp = self.client.search(index=self.index, body={**body, "size": size})
        except (ApiError, TransportError) as e:
            raise BackendSearchError(f"error searching index {self.index}: {e}") from e
        # ObjectApiResponse wraps the decoded body
        return getattr(resp, "body", resp)
