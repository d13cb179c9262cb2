"""Tick sources for the publishing scheduler."""

import asyncio


class IntervalTicker:
    """Fixed-interval ticker.

    ``wait()`` sleeps for ``interval_seconds`` unless ``wake()`` is called
    first, which lets a stop request end the sleep immediately.
    """

    def __init__(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._wakeup = asyncio.Event()

    async def wait(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass  # normal end of interval
        finally:
            self._wakeup.clear()

    def wake(self) -> None:
        self._wakeup.set()


__all__ = [
    "IntervalTicker",
]
