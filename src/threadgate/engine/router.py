"""Webhook router: normalized delivery -> durable state -> automation."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadgate.config import DispatchRule
from threadgate.engine.bus import EventBus
from threadgate.engine.ci import CIOutcome, CIRemediationSupervisor
from threadgate.engine.errors import WorkerInvocationFailed
from threadgate.engine.notifications import NotificationService
from threadgate.engine.resolver import AutoCreatePolicy, ThreadResolver
from threadgate.engine.store import ThreadStore
from threadgate.engine.turns import TurnRunner
from threadgate.integrations.hosting import HostingClient
from threadgate.integrations.side_channel import BestEffortChannel
from threadgate.models import (
    EventChannel,
    EventDirection,
    MessageKind,
    RefStatus,
    Resolution,
)
from threadgate.webhooks.formatting import (
    format_event_message,
    mentions_bot,
    strip_mention,
    summarize_event,
)
from threadgate.webhooks.normalizer import NormalizedEvent, WebhookRef
from threadgate.webhooks.payloads import (
    IssueCommentEvent,
    IssueEvent,
    PullRequestEvent,
    PushEvent,
    ReviewCommentEvent,
)
from threadgate.webhooks.self_filter import SelfActionFilter

logger = logging.getLogger(__name__)

SKIP_IGNORED = "ignored event kind"
SKIP_SELF = "self-generated"
SKIP_UNROUTED = "no matching thread"


@dataclass
class RouteResult:
    """What the router did with one delivery."""

    event_kind: str
    skipped: Optional[str] = None
    conversation_id: Optional[UUID] = None
    thread_id: Optional[UUID] = None
    created: bool = False
    worker_invoked: bool = False
    auto_closed: bool = False
    tags: list[str] = field(default_factory=list)
    summary: Optional[str] = None
    ci: Optional[CIOutcome] = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": True}
        if self.skipped:
            body["skipped"] = self.skipped
        else:
            body["processed"] = self.event_kind
        if self.conversation_id is not None:
            body["conversation_id"] = str(self.conversation_id)
            body["thread_id"] = str(self.thread_id) if self.thread_id else None
            body["created"] = self.created
            body["worker_invoked"] = self.worker_invoked
            body["tags"] = self.tags
        if self.auto_closed:
            body["auto_closed"] = True
        if self.summary:
            body["summary"] = self.summary
        if self.ci is not None:
            body["ci"] = {
                "action": self.ci.action.value,
                "conclusion": self.ci.conclusion,
                "pr_number": self.ci.pr_number,
                "conversation_id": self.ci.conversation_id,
            }
        return body


def ref_status_for(event: NormalizedEvent) -> Optional[RefStatus]:
    """Ref status implied by the event, if it changes one."""
    variant = event.event
    if isinstance(variant, IssueEvent):
        if variant.action == "closed":
            return RefStatus.CLOSED
        if variant.action == "reopened":
            return RefStatus.OPEN
    if isinstance(variant, PullRequestEvent):
        if variant.action == "closed":
            return RefStatus.MERGED if variant.pull_request.merged else RefStatus.CLOSED
        if variant.action == "reopened":
            return RefStatus.OPEN
    return None


def closes_item(event: NormalizedEvent) -> bool:
    """Issue or PR closed (a merge arrives as a closed PR)."""
    if isinstance(event.event, (IssueEvent, PullRequestEvent)):
        return event.event.action == "closed"
    return False


class WebhookRouter:
    """
    One delivery, one session.

    Bookkeeping is committed before any Worker invocation; notifications
    and ref-status sync go to the side channel after that commit.
    """

    def __init__(
        self,
        store: ThreadStore,
        resolver: ThreadResolver,
        self_filter: SelfActionFilter,
        supervisor: CIRemediationSupervisor,
        turns: TurnRunner,
        notifications: NotificationService,
        side_channel: BestEffortChannel,
        session_factory: async_sessionmaker[AsyncSession],
        hosting: HostingClient,
        bot_login: str,
        rules_for_push: Callable[[str, str], list[DispatchRule]],
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.self_filter = self_filter
        self.supervisor = supervisor
        self.turns = turns
        self.notifications = notifications
        self.side_channel = side_channel
        self.session_factory = session_factory
        self.hosting = hosting
        self.bot_login = bot_login
        self.rules_for_push = rules_for_push
        self.bus = bus
        self.policy = AutoCreatePolicy(bot_login=bot_login)

    async def route(self, event: NormalizedEvent) -> RouteResult:
        if event.is_ignorable:
            logger.debug(f"Ignoring {event.event_kind} delivery")
            return RouteResult(event_kind=event.event_kind, skipped=SKIP_IGNORED)

        if await self.self_filter.is_self_generated(event):
            if not event.is_creation:
                return RouteResult(event_kind=event.event_kind, skipped=SKIP_SELF)
            # Track our own new issue/PR so later mentions have a thread to attach to
            result = await self._route_to_thread(event, automate=False)
            result.skipped = SKIP_SELF
            return result

        if self.bus is not None:
            await self.bus.publish(
                {
                    "type": "webhook_event",
                    "event": event.event_kind,
                    "action": event.action,
                    "repo": event.repo,
                }
            )

        if isinstance(event.event, PushEvent):
            self._dispatch_cross_repo(event.event)

        if event.is_ci:
            outcome = await self.supervisor.handle(event)
            await self.store.session.commit()
            return RouteResult(
                event_kind=event.event_kind,
                ci=outcome,
                conversation_id=UUID(outcome.conversation_id) if outcome.conversation_id else None,
            )

        return await self._route_to_thread(event, automate=True)

    async def _route_to_thread(self, event: NormalizedEvent, automate: bool) -> RouteResult:
        resolution = await self.resolver.find_or_create(event, self.policy)
        if resolution is None:
            logger.info(f"No thread for {event.event_kind} refs={list(event.refs)} tags={list(event.tags)}")
            if automate:
                self.notifications.notify_webhook(event)
            return RouteResult(
                event_kind=event.event_kind,
                skipped=SKIP_UNROUTED,
                summary=summarize_event(event.event),
            )

        conversation = resolution.conversation
        thread = resolution.thread or await self.store.ensure_thread(conversation)
        system_message = format_event_message(event.event)

        await self.store.append_event(
            thread_id=thread.thread_id,
            channel=EventChannel.WEBHOOK,
            direction=EventDirection.INBOUND,
            actor=self._actor(event),
            content=system_message,
            metadata={"event": event.event_kind, "action": event.action},
        )
        await self.store.session.commit()

        self._sync_ref_status(event)
        if automate:
            self.notifications.notify_webhook(event)

        result = RouteResult(
            event_kind=event.event_kind,
            conversation_id=conversation.conversation_id,
            thread_id=thread.thread_id,
            created=resolution.created,
            tags=list(event.tags),
        )

        if automate:
            result.worker_invoked = await self._handle_mention(event, resolution, thread.thread_id, system_message)

        if closes_item(event):
            current = await self.store.get_conversation(conversation.conversation_id)
            result.auto_closed = await self.store.auto_close(current, thread)
            if result.auto_closed:
                logger.info(f"Auto-stopped conversation {conversation.conversation_id}")
        await self.store.session.commit()

        logger.info(
            f"Routed {event.event_kind}/{event.action} to conversation {conversation.conversation_id}"
            f" ({resolution.matched_by})"
        )
        return result

    async def _handle_mention(
        self,
        event: NormalizedEvent,
        resolution: Resolution,
        thread_id: UUID,
        system_message: str,
    ) -> bool:
        variant = event.event
        if not isinstance(variant, (IssueCommentEvent, ReviewCommentEvent)):
            return False
        if variant.action != "created":
            return False
        author = variant.comment.user.login if variant.comment.user else ""
        if author == self.bot_login or not mentions_bot(variant.comment.body, self.bot_login):
            return False

        conversation_id = resolution.conversation.conversation_id
        channel = (
            EventChannel.GITEA_REVIEW if isinstance(variant, ReviewCommentEvent) else EventChannel.GITEA_COMMENT
        )
        logger.info(f"@{self.bot_login} mentioned by @{author} in conversation {conversation_id}")

        text = strip_mention(variant.comment.body, self.bot_login)
        await self.store.append_event(
            thread_id=thread_id,
            channel=channel,
            direction=EventDirection.INBOUND,
            actor=f"@{author}",
            content=f"[Comment from @{author}]\n{text}\n\nContext: {system_message}",
            metadata={"event": event.event_kind, "author": author},
        )

        try:
            outcome = await self.turns.run_with_enforcement(
                conversation_id,
                thread_id,
                channel=channel,
                triggered_by="mention",
            )
        except WorkerInvocationFailed as e:
            logger.error(f"Failed to process mention in {conversation_id}: {e.message}")
            await self.store.append_event(
                thread_id=thread_id,
                channel=EventChannel.SYSTEM,
                direction=EventDirection.OUTBOUND,
                actor="system",
                content=f"Failed to process mention: {e.message}",
                message_kind=MessageKind.ERROR,
            )
            await self.store.session.commit()
            self.notifications.notify(
                f"*Mention failed* in {event.repo}: {e.message}",
                job="mention:error",
            )
            return False
        return outcome.completed

    def _sync_ref_status(self, event: NormalizedEvent) -> None:
        status = ref_status_for(event)
        if status is None or not event.refs:
            return
        refs = list(event.refs)
        session_factory = self.session_factory

        async def sync() -> None:
            async with session_factory() as session:
                store = ThreadStore(session)
                for ref in refs:
                    await store.update_ref_status(ref.repo, ref.ref_kind, ref.number, status)
                await session.commit()

        self.side_channel.fire(f"ref-status:{_ref_label(refs[0])}", sync)

    def _dispatch_cross_repo(self, push: PushEvent) -> None:
        rules = self.rules_for_push(push.repo, push.ref)
        if not rules:
            return
        head_sha = push.commits[-1].id if push.commits else push.after
        for rule in rules:
            inputs = dict(rule.inputs)
            if head_sha:
                inputs["sha"] = head_sha
            logger.info(
                f"Dispatching {rule.target_repo}/{rule.workflow_file} "
                f"(triggered by {push.repo} push to {push.ref})"
            )
            self.side_channel.fire(
                f"dispatch:{rule.target_repo}/{rule.workflow_file}",
                lambda rule=rule, inputs=inputs: self.hosting.dispatch_workflow(
                    rule.target_owner, rule.target_repo, rule.workflow_file, inputs=inputs
                ),
            )

    def _actor(self, event: NormalizedEvent) -> str:
        variant = event.event
        if isinstance(variant, PushEvent) and not variant.sender_login and variant.pusher:
            return variant.pusher.login
        return getattr(variant, "sender_login", "") or "system"


def _ref_label(ref: WebhookRef) -> str:
    return f"{ref.ref_kind.value}:{ref.repo}#{ref.number}"
