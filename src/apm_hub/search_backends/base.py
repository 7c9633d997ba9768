from __future__ import annotations

from typing import Protocol, runtime_checkable

from apm_hub.models import SearchParams, SearchResults


class BackendConfigError(ValueError):
    """A backend configuration is structurally invalid or the backend is unreachable at load."""


class BackendSearchError(RuntimeError):
    """A backend failed to answer a single search request."""


@runtime_checkable
class SearchBackend(Protocol):
    """Protocol for pluggable log backends.

    Implementations are constructed once per configuration entry and must raise
    BackendConfigError from their constructor when the entry cannot work. The
    aggregator only ever talks to this interface.

    backend_id identifies the configured instance in logs and per-backend
    statuses; kind is one of file, elasticsearch, opensearch, cloudwatch,
    kubernetes.
    """

    backend_id: str
    kind: str

    def match_route(self, params: SearchParams) -> tuple[bool, bool]:
        """Return (matched, additive) for this backend's configured routes."""
        ...

    def search(self, params: SearchParams) -> SearchResults:
        """Execute the query against the concrete source.

        Results carry the backend's static labels merged with source-derived
        labels (source-derived win). Implementations may raise any exception on
        failure; the aggregator treats it as a per-backend error.
        """
        ...
