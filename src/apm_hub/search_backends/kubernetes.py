from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import UTC, datetime
from typing import Any

import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from apm_hub.models import KubernetesBackendConfig, SearchParams, SearchResult, SearchResults
from apm_hub.search.routing import match_backend
from apm_hub.utils.labels import label_selector, merge_labels
from apm_hub.utils.timeparse import split_leading_timestamp

from .base import BackendConfigError, BackendSearchError, SearchBackend

logger = logging.getLogger(__name__)

POD = "kubernetespod"
NODE = "kubernetesnode"
DEPLOYMENT = "kubernetesdeployment"
SERVICE = "kubernetesservice"


def parse_target(params: SearchParams) -> tuple[str, str, dict[str, str]]:
    """Return (namespace, name, selector_labels) for a query.

    An id of the form 'namespace/name' carries its own namespace. Otherwise the
    namespace comes from the 'namespace' label, which is then removed from the
    labels used as a selector so the query does not filter on itself.
    """
    labels = dict(params.labels)
    ident = params.id or ""
    if "/" in ident:
        namespace, name = ident.split("/", 1)
        return namespace, name, labels
    namespace = labels.pop("namespace", "")
    return namespace, ident, labels


def log_line_to_result(line: str) -> SearchResult:
    """Split a kubelet '<RFC3339> <message>' line; unparseable lines keep an empty time."""
    timestamp, message = split_leading_timestamp(line)
    return SearchResult(time=timestamp or None, message=message)


class KubernetesSearchBackend(SearchBackend):
    """Kubernetes pod log backend.

    The query type selects how pods are found (substring match on the lowercased
    type): KubernetesPod by name, KubernetesNode by node, KubernetesDeployment and
    KubernetesService via their pod selectors. Logs of every container and init
    container are fetched with tail/byte limits from the per-item limits.
    """

    kind = "kubernetes"

    def __init__(
        self,
        config: KubernetesBackendConfig,
        backend_id: str | None = None,
        core_api: Any | None = None,
        apps_api: Any | None = None,
        request_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if core_api is None or apps_api is None:
            api_client = self._load_api_client(config)
            core_api = core_api or k8s_client.CoreV1Api(api_client)
            apps_api = apps_api or k8s_client.AppsV1Api(api_client)
        self.core_api = core_api
        self.apps_api = apps_api
        self.request_timeout = request_timeout
        self._clock = clock
        self.config = config
        self.backend_id = backend_id or config.name or self.kind

    @staticmethod
    def _load_api_client(config: KubernetesBackendConfig) -> Any:
        try:
            if config.kubeconfig:
                return k8s_config.new_client_from_config(
                    config_file=config.kubeconfig, context=config.context
                )
            try:
                k8s_config.load_incluster_config()
                return k8s_client.ApiClient()
            except ConfigException:
                return k8s_config.new_client_from_config(context=config.context)
        except (ConfigException, OSError, yaml.YAMLError, TypeError, KeyError, ValueError) as e:
            raise BackendConfigError(f"[kubernetes] error loading kubeconfig: {e}") from e

    def match_route(self, params: SearchParams) -> tuple[bool, bool]:
        return match_backend(self.config.routes, params)

    # --- pod discovery --------------------------------------------------------
    def _query_options(self, labels: dict[str, str]) -> dict[str, Any]:
        options: dict[str, Any] = {"label_selector": label_selector(labels)}
        if self.request_timeout is not None:
            options["_request_timeout"] = self.request_timeout
        return options

    def _list_pods(self, namespace: str, **kwargs: Any) -> list[Any]:
        if namespace:
            return self.core_api.list_namespaced_pod(namespace, **kwargs).items
        return self.core_api.list_pod_for_all_namespaces(**kwargs).items

    def _pods_by_name(self, namespace: str, name: str, labels: dict[str, str]) -> list[Any]:
        kwargs = self._query_options(labels)
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        return self._list_pods(namespace, **kwargs)

    def _pods_for_node(self, name: str, labels: dict[str, str]) -> list[Any]:
        kwargs = self._query_options(labels)
        if name:
            kwargs["field_selector"] = f"spec.nodeName={name}"
        return self._list_pods("", **kwargs)

    def _pods_for_selectors(self, owners: Iterable[tuple[str, str, dict[str, str] | None]]) -> list[Any]:
        pods: list[Any] = []
        for owner_name, owner_namespace, selector in owners:
            if not selector:
                continue
            try:
                pods.extend(self._list_pods(owner_namespace, **self._query_options(selector)))
            except ApiException as e:
                logger.error("error fetching pods for %s/%s: %s", owner_namespace, owner_name, e)
        return pods

    def _pods_for_deployment(self, namespace: str, name: str, labels: dict[str, str]) -> list[Any]:
        kwargs = self._query_options(labels)
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if namespace:
            deployments = self.apps_api.list_namespaced_deployment(namespace, **kwargs).items
        else:
            deployments = self.apps_api.list_deployment_for_all_namespaces(**kwargs).items
        return self._pods_for_selectors(
            (d.metadata.name, d.metadata.namespace, d.spec.template.metadata.labels)
            for d in deployments
        )

    def _pods_for_service(self, namespace: str, name: str, labels: dict[str, str]) -> list[Any]:
        kwargs = self._query_options(labels)
        if name:
            kwargs["field_selector"] = f"metadata.name={name}"
        if namespace:
            services = self.core_api.list_namespaced_service(namespace, **kwargs).items
        else:
            services = self.core_api.list_service_for_all_namespaces(**kwargs).items
        return self._pods_for_selectors(
            (s.metadata.name, s.metadata.namespace, s.spec.selector) for s in services
        )

    # --- logs -----------------------------------------------------------------
    def _log_options(self, params: SearchParams) -> dict[str, Any]:
        options: dict[str, Any] = {"timestamps": True, "follow": False}
        tail = params.limit_per_item or params.limit
        if tail > 0:
            options["tail_lines"] = tail
        limit_bytes = params.limit_bytes_per_item or params.limit_bytes
        if limit_bytes > 0:
            options["limit_bytes"] = limit_bytes
        start = params.get_start()
        if start is not None:
            options["since_seconds"] = max(1, int((datetime.now(UTC) - start).total_seconds()))
        if self.request_timeout is not None:
            options["_request_timeout"] = self.request_timeout
        return options

    def _container_logs(
        self, pod: Any, params: SearchParams, deadline: float | None = None
    ) -> Iterator[tuple[str, list[SearchResult]]]:
        containers = list(pod.spec.containers or []) + list(pod.spec.init_containers or [])
        options = self._log_options(params)
        for container in containers:
            if deadline is not None and self._clock() > deadline:
                raise BackendSearchError(f"reading pod logs exceeded {self.request_timeout}s")
            try:
                raw = self.core_api.read_namespaced_pod_log(
                    pod.metadata.name, pod.metadata.namespace, container=container.name, **options
                )
            except ApiException as e:
                logger.debug("failed to read logs of %s/%s: %s", pod.metadata.name, container.name, e)
                continue
            lines = [log_line_to_result(line) for line in (raw or "").splitlines() if line]
            yield container.name, lines

    def search(self, params: SearchParams) -> SearchResults:
        deadline = self._clock() + self.request_timeout if self.request_timeout is not None else None
        namespace, name, labels = parse_target(params)
        kind = (params.type or "").lower()
        extra: dict[str, str] = {}
        try:
            if POD in kind:
                pods = self._pods_by_name(namespace, name, labels)
            elif NODE in kind:
                pods = self._pods_for_node(name, labels)
            elif DEPLOYMENT in kind:
                pods = self._pods_for_deployment(namespace, name, labels)
                extra = {"deployment": name}
            elif SERVICE in kind:
                pods = self._pods_for_service(namespace, name, labels)
                extra = {"service": name}
            else:
                logger.debug("[%s] unsupported type %r", self.backend_id, params.type)
                return SearchResults()
        except ApiException as e:
            raise BackendSearchError(f"error fetching the pods for {params.type} {params.id!r}: {e}") from e

        results: list[SearchResult] = []
        for pod in pods:
            for container_name, lines in self._container_logs(pod, params, deadline):
                derived = merge_labels(
                    {
                        "pod": pod.metadata.name,
                        "containerName": container_name,
                        "nodeName": pod.spec.node_name or "",
                        "namespace": pod.metadata.namespace,
                    },
                    extra,
                )
                for line in lines:
                    line.id = pod.metadata.name
                    line.labels = merge_labels(self.config.labels, derived)
                    results.append(line)
        return SearchResults(total=len(results), results=results)
