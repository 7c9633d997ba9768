from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from apm_hub.models import (
    ElasticsearchBackendConfig,
    ElasticsearchFields,
    OpenSearchBackendConfig,
    SearchParams,
    SearchResult,
    SearchResults,
)
from apm_hub.search.routing import match_backend
from apm_hub.utils.labels import flatten, merge_labels, stringify

from .base import BackendConfigError, BackendSearchError, SearchBackend

logger = logging.getLogger(__name__)

_template_env = Environment(undefined=StrictUndefined, autoescape=False)


def labels_from_source(
    source: Mapping[str, Any],
    message_field: str,
    timestamp_field: str,
    exclusions: Sequence[str] = (),
) -> dict[str, str]:
    """Flatten a hit's _source into string labels.

    The message field, the timestamp field and explicitly excluded fields are
    left out; nested objects become dot-path keys.
    """
    remaining = {
        k: v
        for k, v in source.items()
        if k != message_field and k != timestamp_field and k not in exclusions
    }
    return {k: stringify(v) for k, v in flatten(remaining).items()}


def results_from_hits(
    hits: Sequence[Mapping[str, Any]],
    limit: int,
    fields: ElasticsearchFields,
    static_labels: Mapping[str, str] | None = None,
) -> list[SearchResult]:
    """Map search hits to results, dropping the sentinel row beyond `limit`."""
    rows = hits[:limit] if limit > 0 else hits
    results: list[SearchResult] = []
    for row in rows:
        source = row.get("_source") or {}
        if fields.message not in source:
            logger.debug("message field [%s] not found in hit %s", fields.message, row.get("_id"))
            continue
        timestamp = source.get(fields.timestamp)
        labels = labels_from_source(source, fields.message, fields.timestamp, fields.exclusions)
        results.append(
            SearchResult(
                id=row.get("_id"),
                time=timestamp if isinstance(timestamp, str) else None,
                message=stringify(source[fields.message]),
                labels=merge_labels(static_labels, labels),
            )
        )
    return results


def next_page(hits: Sequence[Mapping[str, Any]], limit: int) -> str:
    """Return the continuation token for a sentinel-row query.

    limit + 1 rows are requested; receiving more than `limit` rows means another
    page exists. The token is the JSON encoded sort values of the last row that
    is actually returned, ready to be used as search_after.
    """
    if not hits or limit <= 0 or len(hits) <= limit:
        return ""
    sort = hits[limit - 1].get("sort")
    if sort is None:
        return ""
    return stringify(sort)


def total_from_hits(hits_info: Mapping[str, Any]) -> int:
    total = hits_info.get("total", 0)
    if isinstance(total, Mapping):
        return int(total.get("value", 0))
    return int(total or 0)


class IndexSearchBackend(SearchBackend):
    """Common behavior of Elasticsearch and OpenSearch backends.

    Subclasses provide `_execute(body, size)` returning the decoded search
    response. The query is a Jinja2 template rendered against the resolved
    search params; the rendered text must be a JSON document.
    """

    kind = "index"

    def __init__(
        self,
        config: ElasticsearchBackendConfig | OpenSearchBackendConfig,
        backend_id: str | None = None,
    ):
        if not config.index:
            raise BackendConfigError(f"[{self.kind}] index is empty")
        if not config.query:
            raise BackendConfigError(f"[{self.kind}] query template is empty")
        try:
            self.template = _template_env.from_string(config.query)
        except TemplateError as e:
            raise BackendConfigError(f"[{self.kind}] error parsing query template: {e}") from e

        self.config = config
        self.index = config.index
        self.fields = config.fields
        self.backend_id = backend_id or config.name or self.kind

    def match_route(self, params: SearchParams) -> tuple[bool, bool]:
        return match_backend(self.config.routes, params)

    def render_query(self, params: SearchParams) -> dict[str, Any]:
        try:
            rendered = self.template.render(**params.template_context())
        except TemplateError as e:
            raise BackendSearchError(f"error executing query template: {e}") from e
        logger.debug("[%s] query: %s", self.backend_id, rendered)
        try:
            body = json.loads(rendered)
        except json.JSONDecodeError as e:
            raise BackendSearchError(f"rendered query is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise BackendSearchError("rendered query must be a JSON object")
        return body

    def _execute(self, body: dict[str, Any], size: int) -> Mapping[str, Any]:
        raise NotImplementedError

    def search(self, params: SearchParams) -> SearchResults:
        body = self.render_query(params)
        # one sentinel row to detect a further page
        response = self._execute(body, params.limit + 1)
        hits_info = response.get("hits")
        if not isinstance(hits_info, Mapping):
            raise BackendSearchError("malformed search response: missing hits")
        hits = hits_info.get("hits") or []
        return SearchResults(
            total=total_from_hits(hits_info),
            results=results_from_hits(hits, params.limit, self.fields, self.config.labels),
            next_page=next_page(hits, params.limit),
        )
