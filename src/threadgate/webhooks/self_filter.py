"""Self-action filter: suppress webhooks that echo our own writes."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.config import settings
from threadgate.db.repositories import ActionLogRepository
from threadgate.models import ActionKind, ActionLogEntry
from threadgate.utils.time import utc_now
from threadgate.webhooks.normalizer import NormalizedEvent
from threadgate.webhooks.payloads import (
    IssueCommentEvent,
    IssueEvent,
    PullRequestEvent,
    PushEvent,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

SHORT_SHA = 8


def action_keys(event: WebhookEvent) -> list[tuple[str, str, str]]:
    """
    (action_kind, repo, ref_id) keys the system would have logged before
    performing the write this event reports.

    Only mutation-completion events have keys; everything else returns [].
    """
    if isinstance(event, IssueEvent) and event.action == "opened":
        return [(ActionKind.CREATE_ISSUE.value, event.repo, str(event.issue.number))]

    if isinstance(event, IssueCommentEvent) and event.action == "created":
        return [(ActionKind.COMMENT_ISSUE.value, event.repo, str(event.issue.number))]

    if isinstance(event, PullRequestEvent) and event.action == "opened":
        return [(ActionKind.CREATE_PR.value, event.repo, str(event.pr_number))]

    if isinstance(event, PushEvent):
        return [
            (ActionKind.GIT_PUSH.value, event.repo, commit.id[:SHORT_SHA])
            for commit in event.commits
        ]

    return []


class SelfActionFilter:
    """
    Time-windowed lookup over the action log.

    Writers call record() before the external write so that a webhook racing
    back immediately afterwards is reliably suppressed.
    """

    def __init__(self, session: AsyncSession, window_seconds: Optional[int] = None):
        self.actions = ActionLogRepository(session)
        self.window = timedelta(
            seconds=window_seconds if window_seconds is not None else settings.self_action_window_seconds
        )

    async def record(
        self,
        action_kind: ActionKind | str,
        repo: str,
        ref_id: str | int,
        metadata: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> ActionLogEntry:
        """Log a self-performed action. Call before the external write."""
        kind = action_kind.value if isinstance(action_kind, ActionKind) else action_kind
        entry = await self.actions.record(kind, repo, str(ref_id), metadata, created_at=at)
        logger.debug(f"Recorded self action {kind} {repo}/{ref_id}")
        return entry

    async def is_self_generated(
        self,
        event: NormalizedEvent | WebhookEvent,
        now: Optional[datetime] = None,
    ) -> bool:
        """True if any of the event's action keys was logged within the window."""
        variant = event.event if isinstance(event, NormalizedEvent) else event
        keys = action_keys(variant)
        if not keys:
            return False

        now = now or utc_now()
        since = now - self.window
        for kind, repo, ref_id in keys:
            if await self.actions.exists_between(kind, repo, ref_id, since, now):
                logger.info(f"Suppressing self-generated {kind} for {repo}/{ref_id}")
                return True
        return False

    async def purge_older_than(self, cutoff: datetime) -> int:
        return await self.actions.purge_before(cutoff)
