from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

LOG = logging.getLogger(__name__)

DEFAULT_SAVE_DELAY = 0.5

AsyncAction = Callable[[], Awaitable[None]]


class CoalescingRunner:
    """Run an async action with at most one run in flight and one queued.

    Requests made while a run is in progress collapse into a single pending
    flag; when the run finishes a pending request starts exactly one more
    run. An exception from the action is logged and does not stop later
    requests.
    """

    def __init__(self, action: AsyncAction, *, name: str = "task") -> None:
        self._action = action
        self._name = name
        self._task: asyncio.Task[None] | None = None
        self._pending = False
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> bool:
        return self._pending

    def request(self) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            self._pending = True
            return self._task
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self) -> None:
        while True:
            self._pending = False
            self.runs += 1
            try:
                await self._action()
            except Exception:
                LOG.exception("%s failed", self._name)
            if not self._pending:
                return

    async def wait(self) -> None:
        if self._task is not None and not self._task.done():
            await self._task


class SaveScheduler:
    """Debounced save for one session.

    ``schedule()`` restarts the debounce timer; when it fires the save is
    requested through a CoalescingRunner so writes never overlap.
    """

    def __init__(self, save: AsyncAction, delay: float = DEFAULT_SAVE_DELAY) -> None:
        self.delay = delay
        self._runner = CoalescingRunner(save, name="save")
        self._timer: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def writes(self) -> int:
        return self._runner.runs

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    @property
    def running(self) -> bool:
        return self._runner.running

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self) -> None:
        if self._closed:
            LOG.warning("Ignoring save request on a closed scheduler")
            return
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._runner.request()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> None:
        self._cancel_timer()
        await self._runner.request()

    async def wait(self) -> None:
        await self._runner.wait()

    async def close(self) -> None:
        self._cancel_timer()
        self._closed = True
        await self._runner.wait()
