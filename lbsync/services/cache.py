"""Bounded container -> application memory for destroyed-container events."""
from __future__ import annotations

import threading
from typing import Optional

from cachetools import LRUCache

from lbsync.models.schemas import Application


class ContainerCache:
    """
    Least-recently-used map of container ids to the application they ran.

    Once a container is destroyed the orchestration API can no longer say
    which application it belonged to; this remembers the last ``maxsize``
    containers seen by reconciliation. A miss is not an error.
    """

    def __init__(self, maxsize: int = 200):
        self._lock = threading.Lock()
        self._cache: LRUCache[str, Application] = LRUCache(maxsize=maxsize)

    def remember(self, container_id: str, application: Application) -> None:
        with self._lock:
            self._cache[container_id] = application

    def pop(self, container_id: str) -> Optional[Application]:
        """Return and forget the application last seen running the container."""
        with self._lock:
            return self._cache.pop(container_id, None)

    def __contains__(self, container_id: object) -> bool:
        with self._lock:
            return container_id in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
