from __future__ import annotations

import threading
from collections.abc import Iterable

from apm_hub.search_backends.base import SearchBackend


class BackendRegistry:
    """Holds the active backends as an immutable snapshot.

    Requests read `snapshot()` once and iterate it; a reload builds a new list
    and swaps it in whole, so in-flight requests never see a partial update.
    """

    def __init__(self, backends: Iterable[SearchBackend] = ()):
        self._backends: tuple[SearchBackend, ...] = tuple(backends)
        self._generation = 0
        self._lock = threading.Lock()

    def snapshot(self) -> tuple[SearchBackend, ...]:
        return self._backends

    @property
    def generation(self) -> int:
        return self._generation

    def replace(self, backends: Iterable[SearchBackend]) -> int:
        new = tuple(backends)
        with self._lock:
            self._backends = new
            self._generation += 1
            return self._generation

    def __len__(self) -> int:
        return len(self._backends)
