from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from apm_hub.models import CloudWatchBackendConfig, SearchParams, SearchResult, SearchResults
from apm_hub.search.routing import match_backend
from apm_hub.utils.labels import merge_labels
from apm_hub.utils.timeparse import cloudwatch_to_rfc3339

from .base import BackendConfigError, BackendSearchError, SearchBackend

logger = logging.getLogger(__name__)

# GetQueryResults statuses that end polling with an error
TERMINAL_ERROR_STATUSES = {
    "Failed": "query failed",
    "Timeout": "query timed out",
    "Cancelled": "query cancelled",
}


class CloudWatchSearchBackend(SearchBackend):
    """CloudWatch Logs backend using Logs Insights queries.

    A query is submitted with StartQuery and GetQueryResults is polled until the
    query completes. Polling sleeps `poll_interval` seconds between attempts and
    gives up, stopping the query, after `max_attempts` polls or once `timeout`
    seconds have passed since the search started.

    Insights returns `@timestamp` as '2006-01-02 15:04:05.000' in UTC; it is
    converted to RFC3339. `@ptr` becomes the result id, `@message` the message,
    and any other non-'@' field is attached as a label.
    """

    kind = "cloudwatch"

    def __init__(
        self,
        config: CloudWatchBackendConfig,
        backend_id: str | None = None,
        client: Any | None = None,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not config.log_group:
            raise BackendConfigError("[cloudwatch] logGroup is empty")
        if not config.query:
            raise BackendConfigError("[cloudwatch] query is empty")
        if client is None:
            try:
                client = boto3.client(
                    "logs",
                    region_name=config.region,
                    endpoint_url=config.endpoint,
                    aws_access_key_id=config.access_key,
                    aws_secret_access_key=(
                        config.secret_key.get_secret_value() if config.secret_key else None
                    ),
                    config=BotoConfig(connect_timeout=timeout, read_timeout=timeout) if timeout else None,
                )
            except BotoCoreError as e:
                raise BackendConfigError(f"[cloudwatch] error creating client: {e}") from e

        self.client = client
        self.config = config
        self.poll_interval = poll_interval
        self.max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self.timeout = timeout
        self._clock = clock
        self.backend_id = backend_id or config.name or self.kind

    def match_route(self, params: SearchParams) -> tuple[bool, bool]:
        return match_backend(self.config.routes, params)

    def _start_query(self, params: SearchParams) -> str:
        start = params.get_start()
        end = params.get_end() or datetime.now(UTC)  # end time is required
        request: dict[str, Any] = {
            "logGroupName": self.config.log_group,
            "queryString": self.config.query,
            "endTime": int(end.timestamp()),
            "startTime": int(start.timestamp()) if start else 0,
        }
        if params.limit > 0:
            request["limit"] = params.limit
        try:
            resp = self.client.start_query(**request)
        except (BotoCoreError, ClientError) as e:
            raise BackendSearchError(f"error starting insights query: {e}") from e
        return resp["queryId"]

    def _wait_for_results(self, query_id: str, deadline: float | None = None) -> Mapping[str, Any]:
        reason = f"after {self.max_attempts} attempts"
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.client.get_query_results(queryId=query_id)
            except (BotoCoreError, ClientError) as e:
                raise BackendSearchError(f"error getting insights query results: {e}") from e

            status = resp.get("status")
            if status == "Complete":
                return resp
            if status in TERMINAL_ERROR_STATUSES:
                raise BackendSearchError(TERMINAL_ERROR_STATUSES[status])
            # Scheduled / Running / Unknown
            if attempt == self.max_attempts:
                break
            if deadline is not None and self._clock() + self.poll_interval > deadline:
                reason = f"within {self.timeout}s"
                break
            self._sleep(self.poll_interval)

        self._stop_query(query_id)
        raise BackendSearchError(f"query {query_id} did not complete {reason}")

    def _stop_query(self, query_id: str) -> None:
        try:
            self.client.stop_query(queryId=query_id)
        except (BotoCoreError, ClientError) as e:
            logger.warning("[%s] failed to stop query %s: %s", self.backend_id, query_id, e)

    def _result_from_fields(self, fields: Sequence[Mapping[str, Any]]) -> SearchResult:
        result = SearchResult()
        derived: dict[str, str] = {}
        for item in fields:
            name = item.get("field") or ""
            value = item.get("value") or ""
            if name == "@message":
                result.message = value
            elif name == "@timestamp":
                result.time = cloudwatch_to_rfc3339(value)
            elif name == "@ptr":
                # logRecordPointer for retrieving the complete event
                result.id = value
            elif not name.startswith("@"):
                derived[name] = value
        result.labels = merge_labels(self.config.labels, derived)
        return result

    def search(self, params: SearchParams) -> SearchResults:
        deadline = self._clock() + self.timeout if self.timeout is not None else None
        query_id = self._start_query(params)
        resp = self._wait_for_results(query_id, deadline)
        rows = resp.get("results") or []
        stats = resp.get("statistics") or {}
        return SearchResults(
            total=int(stats.get("recordsMatched", len(rows))),
            results=[self._result_from_fields(fields) for fields in rows],
        )
