"""
debounce.py — coalesce bursts of change events into one callback.

The admin statistics socket refetches the whole aggregate on change. With a
Debouncer in front, a burst of row changes costs one refetch, run `delay`
seconds after the last event of the burst.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self._firing: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """True while a callback is scheduled but has not started."""
        return (
            self._task is not None
            and not self._task.done()
            and self._task is not self._firing
        )

    def trigger(self) -> None:
        """
        (Re)start the delay. A callback that is already running is left to
        finish; the new trigger schedules another one after it.
        """
        if self.pending:
            self._task.cancel()
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        self._firing = asyncio.current_task()
        try:
            await self._callback()
        except Exception:
            logger.exception("Debounced callback failed")
        finally:
            if self._firing is asyncio.current_task():
                self._firing = None
