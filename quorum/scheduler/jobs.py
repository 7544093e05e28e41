"""Cron-driven periodic jobs backed by asyncio tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from pydantic import BaseModel

from ..contracts import utcnow
from ..utils.cron import next_run, validate_cron

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[object]]


class ScheduledJob(BaseModel):
    """Registration metadata for one job."""

    id: str
    agent_id: Optional[str] = None
    cron_expression: str
    enabled: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    last_error: Optional[str] = None


class PeriodicJob:
    """One independent timer.

    A tick runs to completion before the same job can tick again; different
    jobs run concurrently. Exceptions raised by the callback are logged and
    the tick is skipped. Stopping is cooperative: a tick already in flight
    finishes, and no later tick starts.
    """

    def __init__(
        self,
        job_id: str,
        cron_expression: str,
        callback: JobCallback,
        agent_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cron_expression = validate_cron(cron_expression)
        self.callback = callback
        self.clock = clock
        self.metadata = ScheduledJob(
            id=job_id, agent_id=agent_id, cron_expression=cron_expression
        )
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        # Stopped loops still finishing their last tick
        self._winding_down: Set[asyncio.Task] = set()
        self._tick_lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.metadata.id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.metadata.enabled = True
        self.metadata.next_run = next_run(self.cron_expression, self.clock())
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop), name=f"job:{self.id}")

    def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        if not self._task.done():
            self._winding_down.add(self._task)
            self._task.add_done_callback(self._winding_down.discard)
        self._task = None
        self._stop = None

    def pause(self) -> None:
        self.stop()
        self.metadata.enabled = False
        self.metadata.next_run = None

    async def wait_stopped(self) -> None:
        """Wait for ticks that were in flight when the job was stopped."""
        if self._winding_down:
            await asyncio.gather(*self._winding_down)

    async def _loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            now = self.clock()
            upcoming = next_run(self.cron_expression, now)
            self.metadata.next_run = upcoming
            try:
                await asyncio.wait_for(
                    stop.wait(), timeout=max((upcoming - now).total_seconds(), 0.0)
                )
            except asyncio.TimeoutError:
                await self.run_once()

    async def run_once(self) -> bool:
        """Run the callback once; return ``False`` if it raised."""
        async with self._tick_lock:
            self.metadata.last_run = self.clock()
            self.metadata.run_count += 1
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metadata.last_error = str(e)
                logger.exception(f"Job {self.id} failed; skipping this tick")
                return False
            self.metadata.last_error = None
            return True
