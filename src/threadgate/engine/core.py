"""ThreadGate core engine - canonical operations."""

import logging
from typing import Any, Optional, TYPE_CHECKING
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.engine.ci import CIRemediationSupervisor
from threadgate.engine.enforcer import TaskEnforcer
from threadgate.engine.messages import ChatMessageHandler, MessageReply
from threadgate.engine.resolver import ThreadResolver
from threadgate.engine.router import RouteResult, WebhookRouter
from threadgate.engine.store import ThreadStore
from threadgate.engine.turns import TurnRunner
from threadgate.models import (
    ActionKind,
    ActionLogEntry,
    CompactMode,
    CompactRecommendation,
    CompactResult,
    Conversation,
    ConversationStatus,
    EventChannel,
    RefKind,
    Resolution,
    TaskContext,
    Thread,
    ThreadRef,
)
from threadgate.webhooks.normalizer import NormalizedEvent
from threadgate.webhooks.self_filter import SelfActionFilter

if TYPE_CHECKING:
    from threadgate.services import Services

logger = logging.getLogger(__name__)


class ThreadGateEngine:
    """
    Per-request facade wiring the engine components onto one session.

    Long-lived collaborators (registries, clients, side channel) come from
    the shared Services container.
    """

    def __init__(self, session: AsyncSession, services: "Services"):
        self.session = session
        self.services = services

        self.store = ThreadStore(session, bus=services.bus, summarizer=services.summarizer)
        self.resolver = ThreadResolver(self.store)
        self.self_filter = SelfActionFilter(session)
        self.enforcer = TaskEnforcer(session, services.inspector)
        self.turns = TurnRunner(
            store=self.store,
            worker=services.worker,
            registry=services.registry,
            bus=services.bus,
            enforcer=self.enforcer,
            bot_login=services.bot_login,
        )
        self.supervisor = CIRemediationSupervisor(
            store=self.store,
            resolver=self.resolver,
            hosting=services.hosting,
            tracker=services.tracker,
            turns=self.turns,
            notifications=services.notifications,
            bot_login=services.bot_login,
        )
        self.messages = ChatMessageHandler(
            store=self.store,
            turns=self.turns,
            enforcer=self.enforcer,
            registry=services.registry,
            notifications=services.notifications,
        )
        self.router = WebhookRouter(
            store=self.store,
            resolver=self.resolver,
            self_filter=self.self_filter,
            supervisor=self.supervisor,
            turns=self.turns,
            notifications=services.notifications,
            side_channel=services.side_channel,
            session_factory=services.session_factory,
            hosting=services.hosting,
            bot_login=services.bot_login,
            rules_for_push=services.rules_for_push,
            bus=services.bus,
        )

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def route_webhook(self, event: NormalizedEvent) -> RouteResult:
        return await self.router.route(event)

    # ========================================================================
    # Conversations
    # ========================================================================

    async def start_conversation(
        self,
        channel: str,
        topic: Optional[str] = None,
        tags: list[str] | None = None,
        repo: Optional[str] = None,
    ) -> tuple[Conversation, Thread]:
        return await self.messages.start_conversation(channel, topic, tags or [], repo)

    async def send_message(
        self,
        conversation_id: UUID,
        text: str,
        channel: EventChannel = EventChannel.WEB,
    ) -> MessageReply:
        return await self.messages.handle_message(conversation_id, text, channel=channel)

    def stop_worker(self, conversation_id: UUID) -> bool:
        return self.messages.stop(conversation_id)

    async def set_status(self, conversation_id: UUID, status: ConversationStatus) -> Conversation:
        if status == ConversationStatus.ARCHIVED:
            return await self.store.archive_conversation(conversation_id)
        return await self.store.transition_conversation(conversation_id, status)

    async def conversation_thread(self, conversation_id: UUID) -> Thread:
        conversation = await self.store.get_conversation(conversation_id)
        return await self.store.ensure_thread(conversation)

    # ========================================================================
    # Threads
    # ========================================================================

    async def fork_thread(
        self,
        thread_id: UUID,
        at_event_id: Optional[int] = None,
        compact: bool = False,
        topic: Optional[str] = None,
    ) -> Thread:
        return await self.store.fork(thread_id, at_event_id=at_event_id, compact=compact, topic=topic)

    async def compact_thread(
        self,
        thread_id: UUID,
        mode: CompactMode = CompactMode.IN_PLACE,
        keep_recent: Optional[int] = None,
    ) -> CompactResult:
        return await self.store.compact(thread_id, mode=mode, keep_recent=keep_recent)

    async def should_compact(self, thread_id: UUID, threshold: Optional[int] = None) -> CompactRecommendation:
        await self.store.get_thread(thread_id)
        return await self.store.should_compact(thread_id, threshold=threshold)

    async def add_ref(
        self,
        thread_id: UUID,
        ref_kind: RefKind,
        repo: str,
        number: Optional[int] = None,
        ref: Optional[str] = None,
        url: Optional[str] = None,
    ) -> ThreadRef:
        return await self.store.add_ref(thread_id, ref_kind, repo, number=number, url=url, ref=ref)

    async def remove_ref(self, thread_id: UUID, ref_id: UUID) -> bool:
        await self.store.get_thread(thread_id)
        return await self.store.remove_ref(thread_id, ref_id)

    async def lookup_ref(self, repo: str, ref_kind: RefKind, number: int) -> Resolution:
        return await self.resolver.resolve_ref(repo, ref_kind, number)

    async def thread_usage(self, thread_id: UUID) -> dict[str, int]:
        await self.store.get_thread(thread_id)
        return await self.store.usage_totals(thread_id)

    # ========================================================================
    # Tasks
    # ========================================================================

    async def start_task(self, conversation_id: UUID, repo: str, issue_number: int) -> TaskContext:
        await self.store.get_conversation(conversation_id)
        return await self.enforcer.start_task(conversation_id, repo, issue_number)

    async def task_status(self, conversation_id: UUID) -> TaskContext:
        await self.store.get_conversation(conversation_id)
        return await self.enforcer.get_task(conversation_id)

    async def mark_notified(
        self,
        conversation_id: UUID,
        repo: Optional[str] = None,
        issue_number: Optional[int] = None,
    ) -> TaskContext:
        return await self.enforcer.mark_notified(conversation_id, repo, issue_number)

    # ========================================================================
    # Self actions
    # ========================================================================

    async def record_action(
        self,
        action_kind: ActionKind,
        repo: str,
        ref_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ActionLogEntry:
        """Log a self-performed write; committed before returning."""
        entry = await self.self_filter.record(action_kind, repo, ref_id, metadata)
        await self.session.commit()
        return entry
