"""Polling loop that fires persisted retry and escalation timers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .constants import DEFAULT_POLL_INTERVAL_SECONDS
from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


class TimerScheduler:
    """Periodically asks the engine to process due timers."""

    def __init__(
        self, engine: WorkflowEngine, poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    ) -> None:
        self._engine = engine
        self._poll_interval = poll_interval

    async def tick(self, now: Optional[datetime] = None) -> int:
        fired = await self._engine.process_due_timers(now)
        if fired:
            logger.info(f"Fired {fired} timer(s)")
        return fired

    async def run(self, lifespan: Optional[float] = None, recover: bool = True) -> None:
        """Poll until cancelled.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
            recover: Resume interrupted automated steps before polling.
        """
        if recover:
            resumed = await self._engine.recover()
            if resumed:
                logger.info(f"Recovered {resumed} interrupted step(s)")

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            try:
                await self.tick()
            except Exception:
                logger.exception("Timer processing failed")
            await asyncio.sleep(self._poll_interval)
