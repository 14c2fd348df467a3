"""Timers used by the workspace: coalescing debouncer and wait-until-present polling."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer:
    """
    Run ``action`` once ``delay`` seconds after the last ``schedule()`` call.

    Requests coalesce: any number of schedules inside the window produce one
    run. Runs never overlap; a request that fires while a run is in flight is
    executed once more after it finishes.
    """

    def __init__(self, delay: float, action: Callable[[], Awaitable[None]], name: str = "debounce"):
        self.delay = delay
        self.action = action
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._rerun = False

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def running(self) -> bool:
        return self._running

    def schedule(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self._running:
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        self._running = True
        try:
            while True:
                self._rerun = False
                try:
                    await self.action()
                except Exception:
                    logger.exception("%s: scheduled run failed", self.name)
                if not self._rerun:
                    break
        finally:
            self._running = False

    async def flush(self) -> None:
        """Run a pending request now and wait for every in-flight run to finish."""
        if self._handle is not None:
            self.cancel()
            if self._running:
                self._rerun = True
            else:
                self._task = asyncio.get_running_loop().create_task(self._run())
        await self.wait()

    async def wait(self) -> None:
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)


async def wait_until(probe: Callable[[], Optional[T]], attempts: int = 10, interval: float = 0.15) -> Optional[T]:
    """Poll ``probe`` until it returns something, giving up after ``attempts`` retries."""
    for attempt in range(attempts + 1):
        found = probe()
        if found is not None:
            return found
        if attempt < attempts:
            await asyncio.sleep(interval)
    return None
