from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from .errors import DiffComputationFailed, GitOperationFailed
from .models import FileDiff

LOG = logging.getLogger(__name__)


class FetchToken:
    def __init__(self, path: str) -> None:
        self.path = path
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(frozen=True)
class FetchResult:
    path: str
    diff: FileDiff | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DiffFetcher:
    """Computes diffs off the event loop; only the latest request is delivered.

    Starting a fetch cancels the token of the previous one. A fetch whose
    token was cancelled before its result arrived resolves to None.
    """

    def __init__(self, compute: Callable[[str], FileDiff]) -> None:
        self._compute = compute
        self._current: FetchToken | None = None

    def begin(self, path: str) -> FetchToken:
        if self._current is not None:
            self._current.cancel()
        self._current = FetchToken(path)
        return self._current

    def cancel(self) -> None:
        if self._current is not None:
            self._current.cancel()
            self._current = None

    async def fetch(self, path: str) -> FetchResult | None:
        token = self.begin(path)
        try:
            diff = await asyncio.to_thread(self._compute, path)
            result = FetchResult(path=path, diff=diff)
        except (DiffComputationFailed, GitOperationFailed) as error:
            LOG.warning("Failed to compute diff for %s: %s", path, error)
            result = FetchResult(path=path, error=str(error))
        if token.cancelled:
            LOG.debug("Discarding stale diff for %s", path)
            return None
        if self._current is token:
            self._current = None
        return result
