from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from .models import FileDiff, is_working_tree

LOG = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100


@dataclass(frozen=True)
class DiffCacheKey:
    repo_root: str
    base_sha: str
    head_sha: str
    file_path: str
    ignore_whitespace: bool = False

    @property
    def cacheable(self) -> bool:
        # The working tree moves under us; its diffs are always recomputed.
        return not is_working_tree(self.head_sha)


class DiffCache:
    """Bounded least-recently-used map from DiffCacheKey to FileDiff.

    Safe to share between worker threads; the compute callback of
    get_or_compute runs outside the lock.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: OrderedDict[DiffCacheKey, FileDiff] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: DiffCacheKey) -> FileDiff | None:
        if not key.cacheable:
            return None
        with self._lock:
            diff = self._entries.get(key)
            if diff is None:
                return None
            self._entries.move_to_end(key)
            return diff

    def put(self, key: DiffCacheKey, diff: FileDiff) -> None:
        if not key.cacheable:
            return
        with self._lock:
            self._entries[key] = diff
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                LOG.debug("Evicted diff for %s", evicted.file_path)

    def get_or_compute(self, key: DiffCacheKey, compute: Callable[[], FileDiff]) -> FileDiff:
        cached = self.get(key)
        with self._lock:
            if cached is not None:
                self.hits += 1
                return cached
            self.misses += 1
        diff = compute()
        self.put(key, diff)
        return diff

    def invalidate(self, repo_root: str) -> int:
        with self._lock:
            stale = [key for key in self._entries if key.repo_root == repo_root]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
