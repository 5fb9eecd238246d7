"""
Run control: cooperative pause / stop for long-running batch jobs.

One RunControl is handed down the call chain. Workers check it only between
items, so an in-flight completion call always finishes before a pause or stop
takes effect.
"""

import asyncio
import logging
from typing import Awaitable, Callable

log = logging.getLogger("generation.pipeline")


class RunControl:
    def __init__(
        self,
        poll_interval: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._paused = False
        self._stopped = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        if not self._stopped:
            self._paused = True
            log.info("[GEN] Run paused")

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            log.info("[GEN] Run resumed")

    def stop(self) -> None:
        # Stop also releases a paused worker so it can exit
        self._stopped = True
        self._paused = False
        log.info("[GEN] Stop requested")

    async def checkpoint(self) -> bool:
        """
        Block while paused. Returns False once a stop has been requested,
        True if the caller may carry on.
        """
        while self._paused and not self._stopped:
            await self._sleep(self.poll_interval)
        return not self._stopped
