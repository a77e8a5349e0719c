"""Trailing debounce for asyncio callbacks.

Every `trigger()` resets the timer; the callback runs once the settle window
has elapsed with no further triggers. A callback that is already running is
never interrupted by a new trigger, only by `cancel()`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from devloop.cli.dev.logging import DevLogComponent, get_logger

logger = get_logger(DevLogComponent.PIPELINE)


class TrailingDebouncer:
    """Coalesce bursts of triggers into one trailing callback invocation."""

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str = "debounce",
    ) -> None:
        self.delay: float = delay
        self.name: str = name
        self._callback: Callable[[], Awaitable[None]] = callback
        self._timer: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self.fire_count: int = 0

    @property
    def pending(self) -> bool:
        """True while a timer is waiting to fire."""
        return self._timer is not None and not self._timer.done()

    @property
    def busy(self) -> bool:
        """True while a timer is waiting or a callback is running."""
        return self.pending or bool(self._inflight)

    def trigger(self, delay: float | None = None) -> None:
        """(Re)start the settle window."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        wait = self.delay if delay is None else delay
        self._timer = asyncio.get_running_loop().create_task(
            self._wait_then_fire(wait), name=f"{self.name}-timer"
        )

    async def _wait_then_fire(self, wait: float) -> None:
        await asyncio.sleep(wait)
        # Past this point a trigger only schedules a new timer.
        self.fire_count += 1
        task = asyncio.get_running_loop().create_task(
            self._run_callback(), name=f"{self.name}-callback"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_callback(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.name} callback failed: {e}")

    def cancel(self) -> None:
        """Drop any pending timer and cancel running callbacks."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        for task in list(self._inflight):
            task.cancel()

    async def drain(self) -> None:
        """Wait until no timer is pending and no callback is running."""
        while self.busy:
            tasks = [t for t in (self._timer, *self._inflight) if t is not None]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        self.cancel()
        tasks = [t for t in (self._timer, *self._inflight) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
