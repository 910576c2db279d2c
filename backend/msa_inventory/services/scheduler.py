# backend/msa_inventory/services/scheduler.py
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from msa_inventory.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SweepJob = Callable[[datetime], Awaitable[int]]
Sleeper = Callable[[float], Awaitable[None]]


class PeriodicJob:
    """
    Runs ``job(now)`` every ``interval`` seconds on a cancellable task.

    The clock and the sleep coroutine are injected so tests can drive the
    loop with synthetic time. A failing run is logged and the loop carries on.
    """

    def __init__(self, name: str, job: SweepJob, interval: float,
                 clock: Optional[Clock] = None, sleep: Optional[Sleeper] = None,
                 run_immediately: bool = True):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.job = job
        self.interval = interval
        self.clock = clock or SystemClock()
        self._sleep = sleep or asyncio.sleep
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.last_result: Optional[int] = None
        self.last_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Optional[int]:
        now = self.clock.now()
        logger.info(f"Running {self.name} job...")
        try:
            result = await self.job(now)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = e
            logger.error(f"Error in {self.name} job: {str(e)}", exc_info=True)
            return None
        finally:
            self.runs += 1
        self.last_result = result
        self.last_error = None
        logger.info(f"{self.name} complete. {result} transaction(s) affected.")
        return result

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self._sleep(self.interval)
        while True:
            await self.run_once()
            await self._sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info(f"Scheduled {self.name} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped {self.name}")


class Scheduler:
    """Owns a set of periodic jobs so they start and stop together"""

    def __init__(self):
        self.jobs: List[PeriodicJob] = []

    def add(self, job: PeriodicJob) -> PeriodicJob:
        self.jobs.append(job)
        return job

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
