import asyncio
from pathlib import Path

import pytest

from apm_hub.models import FileBackendConfig, SearchParams, SearchRoute
from apm_hub.search.aggregator import Aggregator
from apm_hub.search.registry import BackendRegistry
from apm_hub.search_backends.base import BackendConfigError
from apm_hub.search_backends.files import FileSearchBackend
from apm_hub.utils.timeparse import parse_rfc3339

SAMPLES = Path(__file__).resolve().parents[1] / "samples"


def _write(path: Path, lines):
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return path


def test_lines_round_trip(tmp_path):
    log = _write(tmp_path / "app.log", ["first line", "second line", "", "fourth line"])
    backend = FileSearchBackend(FileBackendConfig(paths=[str(log)]))

    res = backend.search(SearchParams().resolve())

    assert [r.message for r in res.results] == log.read_text().splitlines()
    assert res.total == 4
    assert res.next_page == ""


def test_results_carry_path_label_and_mtime(tmp_path):
    log = _write(tmp_path / "app.log", ["hello"])
    config = FileBackendConfig(paths=[str(log)], labels={"env": "test", "path": "overridden"})
    backend = FileSearchBackend(config, backend_id="files")

    (result,) = backend.search(SearchParams()).results

    assert result.labels == {"env": "test", "path": str(log)}
    assert result.id == f"{log}:1"
    assert parse_rfc3339(result.time) is not None
    assert int(parse_rfc3339(result.time).timestamp()) == int(log.stat().st_mtime)


def test_glob_patterns_relative_to_base_dir(tmp_path):
    _write(tmp_path / "b.log", ["b1"])
    _write(tmp_path / "a.log", ["a1", "a2"])
    _write(tmp_path / "skip.txt", ["nope"])
    backend = FileSearchBackend(FileBackendConfig(paths=["*.log"]), base_dir=tmp_path)

    res = backend.search(SearchParams())

    assert [r.message for r in res.results] == ["a1", "a2", "b1"]


def test_overlapping_patterns_read_files_once(tmp_path):
    _write(tmp_path / "a.log", ["a1"])
    backend = FileSearchBackend(FileBackendConfig(paths=["*.log", "a.log"]), base_dir=tmp_path)

    assert backend.search(SearchParams()).total == 1


def test_query_filters_lines(tmp_path):
    _write(tmp_path / "app.log", ["GET / 200", "GET /missing 404", "POST /login 302"])
    backend = FileSearchBackend(FileBackendConfig(paths=["app.log"]), base_dir=tmp_path)

    res = backend.search(SearchParams(query="404"))

    assert [r.message for r in res.results] == ["GET /missing 404"]
    assert res.results[0].id.endswith("app.log:2")


def test_no_matching_files(tmp_path):
    backend = FileSearchBackend(FileBackendConfig(paths=["missing-*.log"]), base_dir=tmp_path)
    res = backend.search(SearchParams())
    assert res.total == 0
    assert res.results == []


def test_requires_paths():
    with pytest.raises(BackendConfigError):
        FileSearchBackend(FileBackendConfig(paths=[]))
    with pytest.raises(BackendConfigError):
        FileSearchBackend(FileBackendConfig(paths=["  "]))


def test_route_matching_uses_config_routes(tmp_path):
    config = FileBackendConfig(
        paths=["*.log"],
        routes=[SearchRoute(labels={"name": "acmehost", "type": "Nginx"})],
    )
    backend = FileSearchBackend(config, base_dir=tmp_path)

    assert backend.match_route(SearchParams(labels={"name": "acmehost", "type": "Nginx"})) == (True, False)
    assert backend.match_route(SearchParams(labels={"name": "other", "type": "Nginx"})) == (False, False)


def test_sample_nginx_logs_through_aggregator():
    acme = FileSearchBackend(
        FileBackendConfig(
            name="nginx-acmehost",
            paths=["nginx-access.log"],
            labels={"type": "Nginx"},
            routes=[SearchRoute(labels={"name": "acmehost", "type": "Nginx"})],
        ),
        base_dir=SAMPLES,
    )
    everything = FileSearchBackend(
        FileBackendConfig(
            name="nginx-all",
            paths=["nginx-*.log"],
            labels={"type": "Nginx"},
            routes=[SearchRoute(labels={"name": "all", "type": "Nginx"})],
        ),
        base_dir=SAMPLES,
    )
    agg = Aggregator(BackendRegistry([acme, everything]))

    res = asyncio.run(agg.search(SearchParams(labels={"name": "acmehost", "type": "Nginx"})))
    expected = (SAMPLES / "nginx-access.log").read_text().splitlines()
    assert [r.message for r in res.results] == expected
    assert all(r.labels["path"].endswith("nginx-access.log") for r in res.results)

    res = asyncio.run(agg.search(SearchParams(labels={"name": "all", "type": "Nginx"})))
    expected = (SAMPLES / "nginx-access.log").read_text().splitlines() + (
        SAMPLES / "nginx-error.log"
    ).read_text().splitlines()
    assert [r.message for r in res.results] == expected
    assert res.total == len(expected)
