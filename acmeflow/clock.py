import asyncio
import time


class Clock:
    """Source of time for all retry and polling loops.

    Loops read the time with :meth:`monotonic` and wait with :meth:`sleep` so that tests can
    substitute a clock that advances instantly.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class FakeClock(Clock):
    """Clock whose time only advances when it is slept on.

    Sleeping still yields to the event loop once, so that concurrent tasks and cancellation
    behave as they would with real sleeps.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)
