import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RoundTimer:
    """A single cancellable countdown owned by a room.

    Starting the timer cancels whatever was running. A cancelled countdown never
    invokes its callback, and the callback is free to start the timer again.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, delay: float, callback: Callable[..., Awaitable[None]], *args):
        self.cancel()
        self._task = asyncio.create_task(self._run(delay, callback, args))

    def cancel(self):
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, delay: float, callback, args):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._task is asyncio.current_task():
            self._task = None
        try:
            await callback(*args)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Round timer callback failed")
