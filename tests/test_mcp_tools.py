import asyncio

import pytest

from apm_hub import main
from apm_hub.models import SearchResult, SearchResults, SearchRoute
from apm_hub.search.routing import match_backend


class DummyBackend:
    kind = "dummy"

    def __init__(self, backend_id, routes, messages=()):
        self.backend_id = backend_id
        self.routes = routes
        self.messages = list(messages)
        self.calls = []

    def match_route(self, params):
        return match_backend(self.routes, params)

    def search(self, params):
        self.calls.append(params)
        return SearchResults(total=len(self.messages), results=[SearchResult(message=m) for m in self.messages])


@pytest.fixture
def backends():
    pod = DummyBackend("pods", [SearchRoute(type="KubernetesPod", labels={"app": "web"})], messages=["pod line"])
    files = DummyBackend("files", [SearchRoute(type="File")], messages=["file line"])
    main.registry.replace([pod, files])
    yield pod, files
    main.registry.replace([])


def test_search_logs_tool(backends):
    pod, files = backends
    res = asyncio.run(main.search_logs(type="KubernetesPod", id="default/web-1", labels={"app": "web"}, limit=5))

    assert isinstance(res, dict)
    assert res["total"] == 1
    assert res["results"] == [{"message": "pod line", "labels": {}}]
    assert res["nextPage"] == ""
    assert [s["backend"] for s in res["backends"]] == ["pods"]
    assert pod.calls[0].limit == 5
    assert pod.calls[0].limit_per_item == 100
    assert files.calls == []


def test_search_logs_without_match(backends):
    res = asyncio.run(main.search_logs(type="CloudWatch"))
    assert res["total"] == 0
    assert res["results"] == []


def test_list_backends_tool(backends):
    res = asyncio.run(main.list_backends())
    assert res == {"count": 2, "backends": [{"id": "pods", "kind": "dummy"}, {"id": "files", "kind": "dummy"}]}


def test_search_logs_passes_byte_limits(backends):
    pod, _ = backends
    asyncio.run(
        main.search_logs(
            type="KubernetesPod",
            labels={"app": "web"},
            limit_bytes=2048,
            limit_bytes_per_item=512,
        )
    )
    (params,) = pod.calls
    assert params.limit_bytes == 2048
    assert params.limit_bytes_per_item == 512
