from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SecretStr, TypeAdapter

from apm_hub.utils.timeparse import parse_time, to_rfc3339

DEFAULT_START = "1h"
DEFAULT_LIMIT = 50
DEFAULT_LIMIT_PER_ITEM = 100
DEFAULT_LIMIT_BYTES_PER_ITEM = 100 * 1024

DEFAULT_CLOUDWATCH_QUERY = "fields @timestamp, @message, @ptr | sort @timestamp desc"


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in python; both accepted on input
    model_config = ConfigDict(populate_by_name=True)


# ----- Query model -----------------------------------------------------------


class SearchParams(_WireModel):
    """One normalized search request.

    `start`/`end` accept an RFC3339 timestamp or an age such as "1h", "2d".
    The resolved instants are memoized per raw value so every backend that
    reads them during a request sees the exact same instant.
    """

    limit: int = Field(0, ge=0, description="Maximum number of results to return")
    limit_bytes: int = Field(0, ge=0, alias="limitBytes")
    page: str = Field("", description="Continuation token returned by a previous call")
    labels: dict[str, str] = Field(default_factory=dict)
    query: str = Field("", description="Native query passed through to backends that support one")
    start: str = ""
    end: str = ""
    type: str = Field("", description="Kind of log source, e.g. KubernetesPod")
    id: str = Field("", description="Identifier within type, may be namespace/name")
    limit_per_item: int = Field(0, ge=0, alias="limitPerItem")
    limit_bytes_per_item: int = Field(0, ge=0, alias="limitBytesPerItem")

    _start_cache: tuple[str, datetime | None] | None = PrivateAttr(default=None)
    _end_cache: tuple[str, datetime | None] | None = PrivateAttr(default=None)

    def resolve(self) -> SearchParams:
        """Return a copy with unset fields defaulted. Idempotent."""
        updates: dict[str, Any] = {}
        if not self.start:
            updates["start"] = DEFAULT_START
        if self.limit <= 0:
            updates["limit"] = DEFAULT_LIMIT
        if self.limit_per_item <= 0:
            updates["limit_per_item"] = DEFAULT_LIMIT_PER_ITEM
        if self.limit_bytes_per_item <= 0:
            updates["limit_bytes_per_item"] = DEFAULT_LIMIT_BYTES_PER_ITEM
        if not updates:
            return self
        return self.model_copy(update=updates)

    def get_start(self) -> datetime | None:
        if self._start_cache is None or self._start_cache[0] != self.start:
            self._start_cache = (self.start, parse_time(self.start))
        return self._start_cache[1]

    def get_end(self) -> datetime | None:
        if self._end_cache is None or self._end_cache[0] != self.end:
            self._end_cache = (self.end, parse_time(self.end))
        return self._end_cache[1]

    def template_context(self) -> dict[str, Any]:
        """Variables available to backend query templates."""
        start = self.get_start()
        end = self.get_end()
        ctx = self.model_dump()
        ctx["start_time"] = to_rfc3339(start) if start else ""
        ctx["end_time"] = to_rfc3339(end) if end else ""
        ctx["params"] = self
        return ctx


class SearchResult(_WireModel):
    # opaque pointer/offset provided by the underlying system
    id: str | None = None
    # RFC3339
    time: str | None = Field(None, alias="timestamp")
    message: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class BackendStatus(_WireModel):
    """Outcome of one matched backend for a single request."""

    backend: str
    kind: str
    additive: bool = False
    total: int = 0
    error: str | None = None
    elapsed_ms: float = Field(0.0, alias="elapsedMs")


class SearchResults(_WireModel):
    total: int = 0
    results: list[SearchResult] = Field(default_factory=list)
    next_page: str = Field("", alias="nextPage")
    backends: list[BackendStatus] = Field(default_factory=list)

    def merge(self, other: SearchResults) -> SearchResults:
        """Append other's results, sum totals and take other's next page token."""
        return SearchResults(
            total=self.total + other.total,
            results=[*self.results, *other.results],
            next_page=other.next_page,
            backends=[*self.backends, *other.backends],
        )


# ----- Routing ---------------------------------------------------------------


class SearchRoute(_WireModel):
    """Matching rule attached to a backend.

    Empty fields are wildcards. `labels` maps a label key to a comma separated
    list of accepted values; '*' accepts anything and '!x' accepts anything but x.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: str = ""
    id_prefix: str = Field("", alias="idPrefix")
    labels: dict[str, str] = Field(default_factory=dict)
    is_additive: bool = Field(False, alias="isAdditive")


# ----- Backend configuration -------------------------------------------------


class CommonBackendConfig(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str | None = None
    # no routes means the backend never matches
    routes: list[SearchRoute] = Field(default_factory=list)
    # attached to every result produced by the backend
    labels: dict[str, str] = Field(default_factory=dict)


class FileBackendConfig(CommonBackendConfig):
    type: Literal["file"] = "file"
    paths: list[str] = Field(default_factory=list, description="glob patterns")


class ElasticsearchFields(_WireModel):
    message: str = "message"
    timestamp: str = "@timestamp"
    exclusions: list[str] = Field(default_factory=list)


class ElasticsearchBackendConfig(CommonBackendConfig):
    type: Literal["elasticsearch"] = "elasticsearch"
    address: str = ""
    cloud_id: str = Field("", alias="cloudID")
    api_key: SecretStr | None = Field(None, alias="apiKey")
    username: str = ""
    password: SecretStr | None = None
    index: str = ""
    query: str = ""
    fields: ElasticsearchFields = Field(default_factory=ElasticsearchFields)
    verify_certs: bool = Field(True, alias="verifyCerts")


class OpenSearchBackendConfig(CommonBackendConfig):
    type: Literal["opensearch"] = "opensearch"
    address: str = ""
    username: str = ""
    password: SecretStr | None = None
    index: str = ""
    query: str = ""
    fields: ElasticsearchFields = Field(default_factory=ElasticsearchFields)
    verify_certs: bool = Field(True, alias="verifyCerts")


class CloudWatchBackendConfig(CommonBackendConfig):
    type: Literal["cloudwatch"] = "cloudwatch"
    log_group: str = Field("", alias="logGroup")
    query: str = DEFAULT_CLOUDWATCH_QUERY
    region: str | None = None
    endpoint: str | None = None
    access_key: str | None = Field(None, alias="accessKey")
    secret_key: SecretStr | None = Field(None, alias="secretKey")


class KubernetesBackendConfig(CommonBackendConfig):
    type: Literal["kubernetes"] = "kubernetes"
    # empty kubeconfig means in-cluster config, then the default kubeconfig
    kubeconfig: str | None = None
    context: str | None = None


BackendConfig = Annotated[
    Union[
        FileBackendConfig,
        ElasticsearchBackendConfig,
        OpenSearchBackendConfig,
        CloudWatchBackendConfig,
        KubernetesBackendConfig,
    ],
    Field(discriminator="type"),
]

backend_config_adapter: TypeAdapter[BackendConfig] = TypeAdapter(BackendConfig)
