"""Registry of in-flight Worker invocations, for cancellation."""

import asyncio
import logging
from typing import Any, Awaitable, Optional
from uuid import UUID

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """
    Maps conversation id -> running Worker task.

    stop() cancels the task and remembers that the cancellation was
    user-requested, so the runner can record it instead of treating it as
    a shutdown.
    """

    def __init__(self):
        self._running: dict[UUID, asyncio.Task] = {}
        self._stop_requested: set[UUID] = set()

    async def run(self, conversation_id: UUID, call: Awaitable[Any]) -> Any:
        """Run a Worker call registered under the conversation."""
        if conversation_id in self._running:
            logger.warning(f"Conversation {conversation_id} already has a running worker")
        task = asyncio.ensure_future(call)
        self._running[conversation_id] = task
        try:
            return await task
        finally:
            if self._running.get(conversation_id) is task:
                del self._running[conversation_id]

    def stop(self, conversation_id: UUID) -> bool:
        """Cancel the in-flight call. Returns False if nothing was running."""
        task = self._running.get(conversation_id)
        if task is None or task.done():
            return False
        self._stop_requested.add(conversation_id)
        task.cancel()
        logger.info(f"Stop requested for conversation {conversation_id}")
        return True

    def consume_stop(self, conversation_id: UUID) -> bool:
        """True once if a stop was requested for the conversation."""
        if conversation_id in self._stop_requested:
            self._stop_requested.discard(conversation_id)
            return True
        return False

    def is_running(self, conversation_id: UUID) -> bool:
        task: Optional[asyncio.Task] = self._running.get(conversation_id)
        return task is not None and not task.done()

    @property
    def running(self) -> list[UUID]:
        return [cid for cid, task in self._running.items() if not task.done()]

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel everything still running."""
        tasks = [t for t in self._running.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)
        self._running.clear()
        self._stop_requested.clear()
