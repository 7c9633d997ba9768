from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from opensearchpy import OpenSearch, OpenSearchException, RequestsHttpConnection

from apm_hub.models import OpenSearchBackendConfig

from .base import BackendConfigError, BackendSearchError
from .index_search import IndexSearchBackend

logger = logging.getLogger(__name__)


class OpenSearchSearchBackend(IndexSearchBackend):
    """OpenSearch backend built on opensearch-py.

    A pre-built client can be injected (tests, shared connection pools);
    otherwise one is created from the configured address and credentials.
    """

    kind = "opensearch"

    def __init__(
        self,
        config: OpenSearchBackendConfig,
        backend_id: str | None = None,
        timeout: float | None = None,
        client: Any | None = None,
    ) -> None:
        super().__init__(config, backend_id=backend_id)
        if client is None:
            if not config.address:
                raise BackendConfigError("address is required for OpenSearch")
            password = config.password.get_secret_value() if config.password else ""
            client = OpenSearch(
                config.address,
                http_auth=(config.username, password) if config.username else None,
                use_ssl=config.address.startswith("https"),
                verify_certs=config.verify_certs,
                connection_class=RequestsHttpConnection,
                ssl_show_warn=False,
                timeout=timeout,
            )
        self.client = client

    def ping(self) -> None:
        try:
            ok = self.client.ping()
        except OpenSearchException as e:
            raise BackendConfigError(f"[opensearch] error pinging: {e}") from e
        if not ok:
            raise BackendConfigError("[opensearch] ping failed")

    def _execute(self, body: dict[str, Any], size: int) -> Mapping[str, Any]:
        try:
            return self.client.search(index=self.index, body=body, size=size)
        except OpenSearchException as e:
            raise BackendSearchError(f"error searching index {self.index}: {e}") from e
