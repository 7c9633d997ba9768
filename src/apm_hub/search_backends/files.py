from __future__ import annotations

import glob
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from apm_hub.models import FileBackendConfig, SearchParams, SearchResult, SearchResults
from apm_hub.search.routing import match_backend
from apm_hub.utils.labels import merge_labels
from apm_hub.utils.timeparse import to_rfc3339

from .base import BackendConfigError, SearchBackend

logger = logging.getLogger(__name__)


class FileSearchBackend(SearchBackend):
    """
    File-backed log backend.

    Args:
        config: file backend configuration. `paths` are glob patterns; relative
            patterns are resolved against base_dir (default: current directory).
        backend_id: identifier used in logs and statuses.
        base_dir: directory relative patterns are anchored to.
    Behavior:
        - search yields one result per line of every matched file, in pattern
          order then file name order then line order.
        - files carry no per-line timestamp, so every line gets the file's
          modification time.
        - each result is labelled with the file path.
        - the backend has no native query language; a non-empty `query` keeps
          only lines containing it.
    """

    kind = "file"

    def __init__(
        self,
        config: FileBackendConfig,
        backend_id: str | None = None,
        base_dir: str | Path | None = None,
    ):
        patterns = [p for p in config.paths if p and p.strip()]
        if not patterns:
            raise BackendConfigError("file backend requires at least one path")

        base = Path(base_dir) if base_dir is not None else Path.cwd()
        self.patterns: list[str] = [
            p if Path(p).is_absolute() else str(base / p) for p in patterns
        ]
        self.config = config
        self.backend_id = backend_id or config.name or "file"

    def match_route(self, params: SearchParams) -> tuple[bool, bool]:
        return match_backend(self.config.routes, params)

    def _iter_files(self) -> Iterator[Path]:
        seen: set[str] = set()
        for pattern in self.patterns:
            for name in sorted(glob.glob(pattern, recursive=True)):
                p = Path(name)
                if name in seen or not p.is_file():
                    continue
                seen.add(name)
                yield p

    def _read_lines(self, path: Path, query: str) -> Iterator[SearchResult]:
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
        timestamp = to_rfc3339(mtime)
        labels = merge_labels(self.config.labels, {"path": str(path)})
        with path.open("r", encoding="utf-8", errors="replace", newline="") as fh:
            for lineno, line in enumerate(fh, start=1):
                message = line.rstrip("\r\n")
                if query and query not in message:
                    continue
                yield SearchResult(
                    id=f"{path}:{lineno}",
                    time=timestamp,
                    message=message,
                    labels=dict(labels),
                )

    def search(self, params: SearchParams) -> SearchResults:
        results: list[SearchResult] = []
        for path in self._iter_files():
            try:
                results.extend(self._read_lines(path, params.query))
            except OSError as e:
                raise OSError(f"error reading file {path}: {e}") from e
        return SearchResults(total=len(results), results=results)
