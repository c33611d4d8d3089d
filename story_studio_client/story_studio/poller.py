import asyncio, logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .models import GenerationTask

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative stop signal checked before every state-changing step."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleeps up to `seconds`, waking early on cancel. Returns True if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


class StatusPoller:
    """Polls a task's status until it reaches a terminal state.

    One request is issued immediately and then one every `interval_ms` after
    the previous response arrives, so two status calls for the same task are
    never in flight together. Transport errors propagate and end the loop.
    """

    def __init__(self, fetch_status: Callable[[str], Awaitable[GenerationTask]], interval_ms: int = 2000):
        self._fetch_status = fetch_status
        self.interval_ms = interval_ms

    async def poll(self, task_id: str, token: Optional[CancellationToken] = None) -> AsyncIterator[GenerationTask]:
        token = token or CancellationToken()
        logger.info(f"Polling task {task_id} every {self.interval_ms}ms")
        while not token.cancelled:
            task = await self._fetch_status(task_id)
            if token.cancelled:
                logger.info(f"Polling for task {task_id} cancelled, dropping status {task.status.value}")
                return
            logger.info(f"Task {task_id} status: {task.status.value} ({task.progress:.0f}%) {task.current_step}")
            yield task
            if task.is_terminal:
                return
            if await token.sleep(self.interval_ms / 1000.0):
                break
        logger.info(f"Polling for task {task_id} stopped")
