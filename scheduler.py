"""
Debounced write scheduler: one trailing timer per key.

Rapid local mutations (typing, dragging) each call ``schedule`` with the
same key; only the last one fires, after the key has been quiet for the
given delay. Keys are arbitrary hashables, so ``("position", node_id)`` and
``("content", node_id)`` give each node two independent timer slots.

Time goes through an injectable clock so the controller, importer and
history recorder can be driven deterministically in tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Hashable, Optional

logger = logging.getLogger(__name__)

WriteFn = Callable[[], Awaitable[None]]
ErrorHandler = Callable[[Hashable, BaseException], None]


class AsyncioClock:
    """Wall-clock time on the running asyncio loop."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()


class DebouncedWriteScheduler:
    """
    Per-key trailing debounce for remote writes.

    Guarantees:
      - rescheduling a key cancels its sleeping timer (last write wins)
      - at most one write per key runs at a time; a timer that fires while
        the key's previous write is still running waits for it
      - failed writes are reported, never retried
      - after ``cancel_all`` nothing new is scheduled or fired
    """

    def __init__(
        self,
        clock: Optional[AsyncioClock] = None,
        on_error: Optional[ErrorHandler] = None,
    ):
        self.clock = clock or AsyncioClock()
        self._on_error = on_error
        self._timers: dict[Hashable, asyncio.Task] = {}
        self._inflight: dict[Hashable, asyncio.Task] = {}
        self._closed = False

    @property
    def pending(self) -> set[Hashable]:
        """Keys whose timer is still sleeping."""
        return set(self._timers)

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, key: Hashable, fn: WriteFn, delay: float) -> bool:
        if self._closed:
            logger.debug(f"Scheduler closed, dropping write for {key}")
            return False
        self.cancel(key)
        self._timers[key] = asyncio.ensure_future(self._fire(key, fn, delay))
        return True

    def cancel(self, key: Hashable) -> bool:
        task = self._timers.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        self._closed = True
        for key in list(self._timers):
            self.cancel(key)

    async def drain(self) -> None:
        """Wait until no write is in flight."""
        while self._inflight:
            await asyncio.wait(list(self._inflight.values()))

    async def _fire(self, key: Hashable, fn: WriteFn, delay: float) -> None:
        await self.clock.sleep(delay)

        me = asyncio.current_task()
        if self._timers.get(key) is me:
            del self._timers[key]

        previous = self._inflight.get(key)
        self._inflight[key] = me
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            if self._closed:
                return
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Debounced write for {key} failed: {exc}")
            if self._on_error is not None:
                self._on_error(key, exc)
        finally:
            if self._inflight.get(key) is me:
                del self._inflight[key]
