"""
Periodic background loops.

Each loop owns one asyncio task that sleeps on a shutdown event and spawns
a tick when the interval elapses. A tick that fires while the previous tick
of the same loop is still running is skipped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from app.utils.background import spawn_background

logger = logging.getLogger(__name__)

Interval = Union[float, Callable[[], Awaitable[float]]]


class PeriodicLoop:
    """One named job run on a fixed or dynamically resolved interval."""

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[None]],
        interval: Interval,
        initial_delay: Optional[float] = None
    ):
        self.name = name
        self.job = job
        self.interval = interval
        self.initial_delay = initial_delay

        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

    @property
    def started(self) -> bool:
        return self._task is not None

    async def _resolve_interval(self) -> float:
        if callable(self.interval):
            return await self.interval()
        return self.interval

    def trigger(self) -> Optional[asyncio.Task]:
        """Start a tick unless one is already running."""
        if self.running:
            logger.debug(f"Skipping {self.name} tick, previous run still in progress")
            return None
        self.running = True
        return spawn_background(self._run_tick(), name=f"{self.name}-tick", registry=self._ticks)

    async def _run_tick(self) -> None:
        try:
            await self.job()
        except Exception as e:
            logger.error(f"Error in {self.name} loop: {e}")
        finally:
            self.running = False

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; True when shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self) -> None:
        logger.info(f"Started {self.name} loop")
        if self.initial_delay is not None:
            if await self._wait(self.initial_delay):
                return
            self.trigger()

        while not self._shutdown_event.is_set():
            try:
                seconds = await self._resolve_interval()
            except Exception as e:
                logger.error(f"Could not resolve {self.name} interval: {e}")
                seconds = 60
            if await self._wait(seconds):
                break
            self.trigger()

        logger.info(f"{self.name} loop stopped")

    def start(self) -> None:
        if self._task is not None:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")

    async def stop(self) -> None:
        self._shutdown_event.set()
        tasks = [task for task in [self._task, *self._ticks] if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._ticks.clear()
        self.running = False


class BackgroundScheduler:
    """Starts and stops a set of periodic loops together."""

    def __init__(self, loops: Optional[List[PeriodicLoop]] = None):
        self.loops: Dict[str, PeriodicLoop] = {}
        for loop in loops or []:
            self.add(loop)

    def add(self, loop: PeriodicLoop) -> None:
        self.loops[loop.name] = loop

    @property
    def started(self) -> bool:
        return any(loop.started for loop in self.loops.values())

    def start(self) -> None:
        """Start all loops; calling it again while running is a no-op."""
        if self.started:
            return
        logger.info("Starting background scheduler")
        for loop in self.loops.values():
            loop.start()
        logger.info(f"Background scheduler started with {len(self.loops)} loops")

    async def stop(self) -> None:
        """Cancel all loops and reset their running flags."""
        if not self.started:
            return
        logger.info("Stopping background scheduler")
        for loop in self.loops.values():
            await loop.stop()
        logger.info("Background scheduler stopped")
