"""Background timer that keeps an authenticated session's tokens fresh.

The scheduler owns a single asyncio task. Each tick sleeps for the configured
interval and then awaits the session manager's refresh. A failed refresh has
already forced a logout, so the loop ends there instead of retrying.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from cerberus_auth.logging import get_logger

logger = get_logger(__name__)

RefreshCallable = Callable[[], Awaitable[Any]]


class RefreshScheduler:
    """Cancelable periodic trigger for ``SessionManager.refresh``."""

    def __init__(self, refresh: RefreshCallable, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._refresh = refresh
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Arm the timer. Must be called from a running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info("refresh_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the timer. Idempotent; safe to call from inside a tick."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # Called from within our own refresh; the loop exits on its own
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("refresh_scheduler_stopped", ticks=self.ticks)

    async def _run_loop(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval_seconds)
            if self._task is not me:
                break
            self.ticks += 1
            try:
                result = await self._refresh()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "refresh_scheduler_tick_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                break
            if not getattr(result, "ok", True):
                logger.warning(
                    "refresh_scheduler_tick_failed",
                    error_code=getattr(result, "error_code", None),
                    message=getattr(result, "message", None),
                )
                break
        if self._task is me:
            self._task = None
        logger.info("refresh_scheduler_exited", ticks=self.ticks)
