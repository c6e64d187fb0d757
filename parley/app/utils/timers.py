"""Asyncio timers used by the session: a periodic tick and a cancellable one-shot deadline.

Both run as tasks on the bus loop and only ever call back into an async callable,
which in practice publishes an event so the real work happens in the serialized
control context.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[None]]


class PeriodicTimer:
    """Calls ``callback`` every ``interval`` seconds until stopped.

    A failing callback is logged and the timer keeps running.
    """

    def __init__(self, interval: float, callback: AsyncCallback, name: str = "periodic", sleep: SleepFunc = asyncio.sleep) -> None:
        if interval <= 0:
            raise ValueError(f"Timer interval must be positive, got {interval}")
        self.interval = interval
        self.name = name
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.fire_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"timer-{self.name}")
        logger.debug(f"Periodic timer '{self.name}' started ({self.interval}s)")

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            self.fire_count += 1
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Periodic timer '{self.name}' callback failed: {e}", exc_info=True)

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug(f"Periodic timer '{self.name}' stopped after {self.fire_count} ticks")
        self._task = None


class OneShotTimer:
    """Calls ``callback`` once after ``delay`` seconds unless cancelled first."""

    def __init__(self, delay: float, callback: AsyncCallback, name: str = "one-shot", sleep: SleepFunc = asyncio.sleep) -> None:
        self.delay = delay
        self.name = name
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.fired = False

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self) -> None:
        self.cancel()
        self.fired = False
        self._task = asyncio.create_task(self._run(), name=f"timer-{self.name}")
        logger.debug(f"One-shot timer '{self.name}' armed ({self.delay}s)")

    async def _run(self) -> None:
        await self._sleep(self.delay)
        self.fired = True
        try:
            await self._callback()
        except Exception as e:
            logger.error(f"One-shot timer '{self.name}' callback failed: {e}", exc_info=True)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug(f"One-shot timer '{self.name}' cancelled")
        self._task = None
