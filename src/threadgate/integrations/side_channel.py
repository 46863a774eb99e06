"""Best-effort side channel for fire-and-forget work."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Factory = Callable[[], Awaitable[Any]]


@dataclass
class SideChannelStats:
    """Side channel counters."""

    scheduled: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0


class BestEffortChannel:
    """
    Runs side effects (notifications, ref-status sync, cross-posts) in the
    background so they never block or fail the primary path.

    Failures are logged and counted. A job may ask for retries; each retry
    waits base_backoff * 2^(attempt-1) seconds.

    Usage:
        channel = BestEffortChannel()
        channel.fire("notify", lambda: notifier.send(chat_id, text))
        ...
        await channel.drain()
    """

    def __init__(self, name: str = "side-channel", base_backoff: float = 0.5):
        self.name = name
        self.base_backoff = base_backoff
        self._tasks: set[asyncio.Task] = set()
        self._stats = SideChannelStats()

    @property
    def stats(self) -> SideChannelStats:
        return SideChannelStats(
            scheduled=self._stats.scheduled,
            succeeded=self._stats.succeeded,
            failed=self._stats.failed,
            retried=self._stats.retried,
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def fire(self, job: str, factory: Factory, retries: int = 0) -> asyncio.Task:
        """Schedule a job. Never raises on job failure."""
        self._stats.scheduled += 1
        task = asyncio.create_task(self._run(job, factory, retries), name=f"{self.name}:{job}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: str, factory: Factory, retries: int) -> Optional[Any]:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await factory()
                self._stats.succeeded += 1
                return result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt > retries:
                    self._stats.failed += 1
                    logger.warning(
                        f"{self.name}: job {job} failed after {attempt} attempt(s): {e}",
                        exc_info=True,
                    )
                    return None
                self._stats.retried += 1
                delay = self.base_backoff * (2 ** (attempt - 1))
                logger.info(f"{self.name}: job {job} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight jobs, cancelling any still running at timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"{self.name}: cancelling {task.get_name()} at shutdown")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
