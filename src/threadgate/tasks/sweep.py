"""Action log retention sweep background task."""

import asyncio
import logging
import random
from datetime import timedelta
from typing import Optional

from threadgate.config import settings
from threadgate.db.base import get_session
from threadgate.utils.time import utc_now
from threadgate.webhooks.self_filter import SelfActionFilter

logger = logging.getLogger("threadgate.sweep")

_sweep_task: Optional[asyncio.Task] = None
_shutdown_event: Optional[asyncio.Event] = None


async def purge_action_log(retention_seconds: Optional[int] = None) -> int:
    """Delete action log entries older than the retention period."""
    retention = (
        settings.action_log_retention_seconds if retention_seconds is None else retention_seconds
    )
    cutoff = utc_now() - timedelta(seconds=retention)
    async with get_session() as session:
        return await SelfActionFilter(session).purge_older_than(cutoff)


async def action_sweep_loop():
    """
    Background loop that keeps the self-action log bounded.

    Only entries inside the suppression window matter; everything older
    than the retention period is deleted. The interval is jittered by
    ±20% so several instances do not sweep in lockstep.
    """
    base_interval = settings.action_sweep_interval_seconds
    logger.info(f"Action sweep loop started (base interval: {base_interval}s with ±20% jitter)")

    while not _shutdown_event.is_set():
        try:
            purged = await purge_action_log()
            if purged > 0:
                logger.info(f"Purged {purged} action log entries")
        except Exception as e:
            logger.error(f"Action sweep error: {e}", exc_info=True)

        jittered_interval = base_interval * random.uniform(0.8, 1.2)
        try:
            await asyncio.wait_for(_shutdown_event.wait(), timeout=jittered_interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Action sweep loop stopped")


async def start_action_sweep():
    """Start the action sweep background task."""
    global _sweep_task, _shutdown_event

    _shutdown_event = asyncio.Event()
    _sweep_task = asyncio.create_task(action_sweep_loop())


async def stop_action_sweep():
    """Stop the action sweep background task."""
    global _sweep_task, _shutdown_event

    if _shutdown_event:
        _shutdown_event.set()

    if _sweep_task:
        try:
            await asyncio.wait_for(_sweep_task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Action sweep task did not stop gracefully, cancelling")
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass

    _sweep_task = None
    _shutdown_event = None
