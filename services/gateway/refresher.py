"""Background task keeping the shared IG session ahead of its expiry."""

import asyncio
from typing import Awaitable, Callable, Optional

from core.logging import get_auth_logger_safe
from .orchestrator import RequestOrchestrator

logger = get_auth_logger_safe("services.gateway.refresher")


class SessionRefresher:
    """Runs ``orchestrator.ensure_session()`` on a fixed interval."""

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        interval_seconds: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.ticks = 0
        self.errors = 0

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="ig-session-refresher")
        logger.info("Session refresher started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session refresher stopped", ticks=self.ticks, errors=self.errors)

    async def _run(self) -> None:
        while self._running:
            try:
                await self.orchestrator.ensure_session()
                self.ticks += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.error("Background session refresh failed",
                             error_type=type(e).__name__, error=str(e))
            await self._sleep(self.interval_seconds)
