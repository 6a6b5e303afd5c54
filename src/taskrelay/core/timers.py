from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("taskrelay.timers")


class PeriodicTimer:
    """Runs ``tick()`` every ``interval`` seconds on the running event loop.

    ``start()`` on an active timer does nothing, so at most one loop per
    timer exists. A tick may stop its own timer.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None

    def start(self) -> bool:
        if self._task is not None:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"timer:{self.name}")
        logger.debug("Timer %s started (every %.3fs)", self.name, self.interval)
        return True

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        logger.debug("Timer %s stopped", self.name)
        if task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        me = asyncio.current_task()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Timer %s tick failed", self.name)
