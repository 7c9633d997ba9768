from datetime import UTC, datetime

import pytest
from botocore.exceptions import ClientError

from apm_hub.models import CloudWatchBackendConfig, SearchParams, SearchRoute
from apm_hub.search_backends.base import BackendConfigError, BackendSearchError
from apm_hub.search_backends.cloudwatch import CloudWatchSearchBackend


def _row(message, timestamp="2023-01-02 03:04:05.678", ptr="ptr-1", **extra):
    fields = [
        {"field": "@timestamp", "value": timestamp},
        {"field": "@message", "value": message},
        {"field": "@ptr", "value": ptr},
    ]
    fields.extend({"field": k, "value": v} for k, v in extra.items())
    return fields


class DummyLogsClient:
    def __init__(self, statuses, rows=(), records_matched=None, start_error=None):
        self.statuses = list(statuses)
        self.rows = list(rows)
        self.records_matched = records_matched
        self.start_error = start_error
        self.start_requests = []
        self.polls = 0
        self.stopped = []

    def start_query(self, **kwargs):
        if self.start_error is not None:
            raise self.start_error
        self.start_requests.append(kwargs)
        return {"queryId": "q-1"}

    def get_query_results(self, queryId):
        status = self.statuses[min(self.polls, len(self.statuses) - 1)]
        self.polls += 1
        resp = {"status": status, "results": self.rows if status == "Complete" else []}
        if self.records_matched is not None:
            resp["statistics"] = {"recordsMatched": float(self.records_matched)}
        return resp

    def stop_query(self, queryId):
        self.stopped.append(queryId)
        return {"success": True}


def _backend(client, **kwargs):
    config = CloudWatchBackendConfig(
        log_group="/aws/lambda/app",
        labels={"source": "cloudwatch"},
        routes=[SearchRoute(type="CloudWatch")],
    )
    sleeps = []
    kwargs.setdefault("sleep", sleeps.append)
    return CloudWatchSearchBackend(config, backend_id="cw", client=client, **kwargs), sleeps


def test_polls_until_complete():
    client = DummyLogsClient(
        ["Scheduled", "Running", "Complete"],
        rows=[_row("hello", requestId="abc"), _row("world", ptr="ptr-2")],
        records_matched=42,
    )
    backend, sleeps = _backend(client, poll_interval=0.5)

    res = backend.search(SearchParams(limit=10, start="2023-01-01T00:00:00Z", end="2023-01-02T00:00:00Z"))

    assert client.polls == 3
    assert sleeps == [0.5, 0.5]
    assert res.total == 42
    first, second = res.results
    assert first.message == "hello"
    assert first.time == "2023-01-02T03:04:05Z"
    assert first.id == "ptr-1"
    assert first.labels == {"source": "cloudwatch", "requestId": "abc"}
    assert second.id == "ptr-2"


def test_start_query_request():
    client = DummyLogsClient(["Complete"])
    backend, _ = _backend(client)

    backend.search(SearchParams(limit=25, start="2023-01-01T00:00:00Z", end="2023-01-01T01:00:00Z"))

    (request,) = client.start_requests
    assert request["logGroupName"] == "/aws/lambda/app"
    assert request["startTime"] == int(datetime(2023, 1, 1, tzinfo=UTC).timestamp())
    assert request["endTime"] == int(datetime(2023, 1, 1, 1, tzinfo=UTC).timestamp())
    assert request["limit"] == 25
    assert "fields @timestamp" in request["queryString"]


def test_end_defaults_to_now():
    client = DummyLogsClient(["Complete"])
    backend, _ = _backend(client)
    before = int(datetime.now(UTC).timestamp())

    backend.search(SearchParams(start="1h"))

    (request,) = client.start_requests
    assert request["endTime"] >= before
    assert request["endTime"] - request["startTime"] in (3600, 3601)
    assert "limit" not in request


def test_total_falls_back_to_row_count():
    client = DummyLogsClient(["Complete"], rows=[_row("a"), _row("b")])
    backend, _ = _backend(client)
    assert backend.search(SearchParams()).total == 2


@pytest.mark.parametrize("status", ["Failed", "Timeout", "Cancelled"])
def test_terminal_statuses_fail(status):
    client = DummyLogsClient(["Running", status])
    backend, _ = _backend(client)
    with pytest.raises(BackendSearchError):
        backend.search(SearchParams())
    assert client.stopped == []


def test_gives_up_and_stops_query():
    client = DummyLogsClient(["Running"])
    backend, sleeps = _backend(client, max_attempts=3)

    with pytest.raises(BackendSearchError):
        backend.search(SearchParams())

    assert client.polls == 3
    assert len(sleeps) == 2
    assert client.stopped == ["q-1"]


def test_start_query_error():
    error = ClientError({"Error": {"Code": "ResourceNotFoundException", "Message": "no group"}}, "StartQuery")
    backend, _ = _backend(DummyLogsClient(["Complete"], start_error=error))
    with pytest.raises(BackendSearchError):
        backend.search(SearchParams())


def test_unparseable_timestamp_is_empty():
    client = DummyLogsClient(["Complete"], rows=[_row("x", timestamp="yesterday")])
    backend, _ = _backend(client)
    (result,) = backend.search(SearchParams()).results
    assert result.time == ""


def test_requires_log_group():
    with pytest.raises(BackendConfigError):
        CloudWatchSearchBackend(CloudWatchBackendConfig(), client=DummyLogsClient(["Complete"]))


def test_route_matching():
    backend, _ = _backend(DummyLogsClient(["Complete"]))
    assert backend.match_route(SearchParams(type="cloudwatch")) == (True, False)
    assert backend.match_route(SearchParams(type="KubernetesPod")) == (False, False)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_polling_stops_at_deadline():
    clock = FakeClock()
    client = DummyLogsClient(["Running"])
    backend, _ = _backend(client, poll_interval=1.0, timeout=2.5, sleep=clock.sleep, clock=clock)

    with pytest.raises(BackendSearchError, match="within 2.5s"):
        backend.search(SearchParams())

    assert client.polls == 3
    assert clock.now == 2.0
    assert client.stopped == ["q-1"]


def test_completes_before_deadline():
    clock = FakeClock()
    client = DummyLogsClient(["Running", "Complete"], rows=[_row("done")])
    backend, _ = _backend(client, poll_interval=1.0, timeout=2.5, sleep=clock.sleep, clock=clock)

    res = backend.search(SearchParams())

    assert [r.message for r in res.results] == ["done"]
    assert client.stopped == []
