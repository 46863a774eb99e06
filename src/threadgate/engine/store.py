"""Thread/Conversation store - durable state and lifecycle transitions."""

import functools
import logging
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.config import settings
from threadgate.db.repositories import (
    ConversationRepository,
    ThreadEventRepository,
    ThreadRefRepository,
    ThreadRepository,
)
from threadgate.engine.bus import EventBus
from threadgate.engine.errors import (
    ConversationNotFound,
    InvalidStateTransition,
    NothingToCompact,
    PersistenceError,
    ThreadEventNotFound,
    ThreadNotFound,
)
from threadgate.engine.summarizer import BasicSummarizer, Summarizer
from threadgate.integrations.worker import WorkerMessage
from threadgate.models import (
    CompactMode,
    CompactRecommendation,
    CompactResult,
    Conversation,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    RefKind,
    RefStatus,
    Thread,
    ThreadDetail,
    ThreadEvent,
    ThreadRef,
)
from threadgate.utils.time import utc_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def persistent(operation: str):
    """Surface database failures as PersistenceError."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"{operation} failed: {e}")
                raise PersistenceError(operation, str(e)) from e

        return wrapper

    return decorator


def _status_values(status: ConversationStatus) -> dict[str, Any]:
    """Column values implied by entering a status."""
    now = utc_now()
    if status == ConversationStatus.STOPPED:
        return {"status": status, "closed_at": now}
    if status == ConversationStatus.ARCHIVED:
        return {"status": status, "archived_at": now}
    # active / paused: reopening clears the close marker
    return {"status": status, "closed_at": None}


class ThreadStore:
    """
    Owns Conversation, Thread, ThreadRef and ThreadEvent.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        bus: Optional[EventBus] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self.session = session
        self.bus = bus
        self.summarizer = summarizer or BasicSummarizer()
        self.conversations = ConversationRepository(session)
        self.threads = ThreadRepository(session)
        self.refs = ThreadRefRepository(session)
        self.events = ThreadEventRepository(session)

    # ========================================================================
    # Conversations
    # ========================================================================

    @persistent("create conversation")
    async def create_conversation(
        self,
        channel: str,
        topic: Optional[str] = None,
        status: ConversationStatus = ConversationStatus.ACTIVE,
        tags: Iterable[str] = (),
        repo: Optional[str] = None,
    ) -> Conversation:
        conversation = await self.conversations.create(
            channel=channel, topic=topic, status=status, tags=tags, repo=repo
        )
        logger.info(f"Created conversation {conversation.conversation_id} ({topic})")
        return conversation

    @persistent("get conversation")
    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    @persistent("list conversations")
    async def list_conversations(
        self,
        status: Optional[ConversationStatus] = None,
        archived: Optional[bool] = None,
        limit: int = 50,
    ) -> list[Conversation]:
        return await self.conversations.list(status=status, archived=archived, limit=limit)

    @persistent("add tags")
    async def add_tags(self, conversation_id: UUID, tags: Iterable[str]) -> Conversation:
        await self.get_conversation(conversation_id)
        await self.conversations.add_tags(conversation_id, tags)
        await self.conversations.touch(conversation_id)
        return await self.get_conversation(conversation_id)

    async def ensure_thread(self, conversation: Conversation) -> Thread:
        """Backing thread for a conversation, created on first need."""
        thread = await self.threads.get_by_conversation(conversation.conversation_id)
        if thread is not None:
            return thread
        return await self.create_thread(
            topic=conversation.topic,
            conversation_id=conversation.conversation_id,
            status=conversation.status,
        )

    # ========================================================================
    # Threads and refs
    # ========================================================================

    @persistent("create thread")
    async def create_thread(
        self,
        topic: Optional[str] = None,
        conversation_id: Optional[UUID] = None,
        status: ConversationStatus = ConversationStatus.PAUSED,
    ) -> Thread:
        return await self.threads.create(topic=topic, conversation_id=conversation_id, status=status)

    @persistent("get thread")
    async def get_thread(self, thread_id: UUID) -> Thread:
        thread = await self.threads.get(thread_id)
        if thread is None:
            raise ThreadNotFound(thread_id)
        return thread

    @persistent("get thread detail")
    async def get_thread_detail(self, thread_id: UUID) -> ThreadDetail:
        thread = await self.get_thread(thread_id)
        return ThreadDetail(
            thread=thread,
            refs=await self.refs.list_for_thread(thread_id),
            live_event_count=await self.events.count_live(thread_id),
        )

    @persistent("list threads")
    async def list_threads(
        self,
        status: Optional[ConversationStatus] = None,
        parent_thread_id: Optional[UUID] = None,
        limit: int = 50,
    ) -> list[Thread]:
        return await self.threads.list(status=status, parent_thread_id=parent_thread_id, limit=limit)

    @persistent("add ref")
    async def add_ref(
        self,
        thread_id: UUID,
        ref_kind: RefKind,
        repo: str,
        number: Optional[int] = None,
        url: Optional[str] = None,
        ref: Optional[str] = None,
        status: RefStatus = RefStatus.OPEN,
    ) -> ThreadRef:
        await self.get_thread(thread_id)
        return await self.refs.add(
            thread_id=thread_id,
            ref_kind=ref_kind,
            repo=repo,
            number=number,
            ref=ref,
            url=url,
            status=status,
        )

    @persistent("remove ref")
    async def remove_ref(self, thread_id: UUID, ref_id: UUID) -> bool:
        return await self.refs.remove(thread_id, ref_id)

    @persistent("update ref status")
    async def update_ref_status(
        self,
        repo: str,
        ref_kind: RefKind,
        number: int,
        status: RefStatus,
    ) -> int:
        """Update every ref carrying (repo, kind, number); returns rows touched."""
        count = await self.refs.update_status(repo, ref_kind, number, status)
        if count:
            logger.info(f"Ref {ref_kind.value} {repo}#{number} -> {status.value} ({count} rows)")
        return count

    # ========================================================================
    # Events
    # ========================================================================

    @persistent("append event")
    async def append_event(
        self,
        thread_id: UUID,
        channel: EventChannel,
        direction: EventDirection,
        actor: str,
        content: Any,
        message_kind: MessageKind = MessageKind.TEXT,
        metadata: Optional[dict[str, Any]] = None,
        usage: Optional[dict[str, Any]] = None,
    ) -> ThreadEvent:
        """Append to the timeline and touch the thread and its conversation."""
        thread = await self.get_thread(thread_id)
        event = await self.events.append(
            thread_id=thread_id,
            channel=channel,
            direction=direction,
            actor=actor,
            content=content,
            message_kind=message_kind,
            metadata=metadata,
            usage=usage,
        )
        await self.threads.touch(thread_id)
        if thread.conversation_id is not None:
            await self.conversations.touch(thread.conversation_id)

        if self.bus is not None:
            await self.bus.publish(
                {
                    "type": "thread_event",
                    "thread_id": str(thread_id),
                    "conversation_id": str(thread.conversation_id) if thread.conversation_id else None,
                    "event_id": event.event_id,
                    "channel": event.channel.value,
                    "direction": event.direction.value,
                    "message_kind": event.message_kind.value,
                }
            )
        return event

    @persistent("list events")
    async def list_events(
        self,
        thread_id: UUID,
        channel: Optional[EventChannel] = None,
        direction: Optional[EventDirection] = None,
        actor: Optional[str] = None,
        message_kind: Optional[MessageKind] = None,
        include_compacted: bool = False,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[ThreadEvent]:
        await self.get_thread(thread_id)
        return await self.events.list(
            thread_id,
            channel=channel,
            direction=direction,
            actor=actor,
            message_kind=message_kind,
            include_compacted=include_compacted,
            limit=limit,
            offset=offset,
        )

    @persistent("usage totals")
    async def usage_totals(self, thread_id: UUID) -> dict[str, int]:
        totals = {"input_tokens": 0, "output_tokens": 0}
        for usage in await self.events.usage_rows(thread_id):
            totals["input_tokens"] += int(usage.get("input_tokens") or usage.get("inputTokens") or 0)
            totals["output_tokens"] += int(usage.get("output_tokens") or usage.get("outputTokens") or 0)
        return totals

    # ========================================================================
    # Status transitions
    # ========================================================================

    @persistent("transition conversation")
    async def transition_conversation(
        self,
        conversation_id: UUID,
        status: ConversationStatus,
    ) -> Conversation:
        """
        Move a conversation (and its backing threads) to a new status.

        Raises:
            InvalidStateTransition: transition not allowed from current status
        """
        conversation = await self.get_conversation(conversation_id)
        if conversation.status == status:
            return conversation
        if not conversation.status.can_transition_to(status):
            raise InvalidStateTransition(conversation.status.value, status.value)

        updated = await self.conversations.update(conversation_id, **_status_values(status))

        thread = await self.threads.get_by_conversation(conversation_id)
        if thread is not None and thread.status != status and thread.status.can_transition_to(status):
            await self.threads.update(thread.thread_id, **_status_values(status))

        logger.info(f"Conversation {conversation_id}: {conversation.status.value} -> {status.value}")
        await self._publish_status(conversation_id, None, status)
        return updated

    @persistent("transition thread")
    async def transition_thread(self, thread_id: UUID, status: ConversationStatus) -> Thread:
        thread = await self.get_thread(thread_id)
        if thread.status == status:
            return thread
        if not thread.status.can_transition_to(status):
            raise InvalidStateTransition(thread.status.value, status.value)
        updated = await self.threads.update(thread_id, **_status_values(status))
        await self._publish_status(thread.conversation_id, thread_id, status)
        return updated

    @persistent("archive conversation")
    async def archive_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        if conversation.status == ConversationStatus.ARCHIVED:
            return conversation
        updated = await self.conversations.update(
            conversation_id, **_status_values(ConversationStatus.ARCHIVED)
        )
        thread = await self.threads.get_by_conversation(conversation_id)
        if thread is not None:
            await self.threads.update(thread.thread_id, **_status_values(ConversationStatus.ARCHIVED))
        await self._publish_status(conversation_id, None, ConversationStatus.ARCHIVED)
        return updated

    @persistent("unarchive conversation")
    async def unarchive_conversation(self, conversation_id: UUID) -> Conversation:
        """Clear the archive flag. The conversation comes back stopped."""
        conversation = await self.get_conversation(conversation_id)
        if conversation.status != ConversationStatus.ARCHIVED:
            return conversation
        values = {"status": ConversationStatus.STOPPED, "archived_at": None}
        updated = await self.conversations.update(conversation_id, **values)
        thread = await self.threads.get_by_conversation(conversation_id)
        if thread is not None and thread.status == ConversationStatus.ARCHIVED:
            await self.threads.update(thread.thread_id, **values)
        await self._publish_status(conversation_id, None, ConversationStatus.STOPPED)
        return updated

    @persistent("archive thread")
    async def archive_thread(self, thread_id: UUID) -> Thread:
        thread = await self.get_thread(thread_id)
        if thread.status == ConversationStatus.ARCHIVED:
            return thread
        return await self.threads.update(thread_id, **_status_values(ConversationStatus.ARCHIVED))

    @persistent("unarchive thread")
    async def unarchive_thread(self, thread_id: UUID) -> Thread:
        thread = await self.get_thread(thread_id)
        if thread.status != ConversationStatus.ARCHIVED:
            return thread
        return await self.threads.update(
            thread_id, status=ConversationStatus.STOPPED, archived_at=None
        )

    @persistent("set session handle")
    async def set_session_handle(
        self,
        session_handle: str,
        conversation_id: Optional[UUID] = None,
        thread_id: Optional[UUID] = None,
    ) -> None:
        """
        Store the Worker continuation handle.

        A paused conversation/thread becomes active; stopped and archived
        ones keep their status.
        """
        if conversation_id is not None:
            conversation = await self.get_conversation(conversation_id)
            values: dict[str, Any] = {"session_handle": session_handle}
            if conversation.status == ConversationStatus.PAUSED:
                values["status"] = ConversationStatus.ACTIVE
            await self.conversations.update(conversation_id, **values)

        if thread_id is not None:
            thread = await self.get_thread(thread_id)
            values = {"session_handle": session_handle}
            if thread.status == ConversationStatus.PAUSED:
                values["status"] = ConversationStatus.ACTIVE
            await self.threads.update(thread_id, **values)

    async def auto_close(self, conversation: Optional[Conversation], thread: Optional[Thread]) -> bool:
        """Stop a live conversation/thread whose external item closed."""
        closed = False
        if conversation is not None:
            current = await self.get_conversation(conversation.conversation_id)
            if current.status.is_live():
                await self.transition_conversation(current.conversation_id, ConversationStatus.STOPPED)
                closed = True
        if thread is not None:
            current_thread = await self.get_thread(thread.thread_id)
            if current_thread.status.is_live():
                await self.transition_thread(current_thread.thread_id, ConversationStatus.STOPPED)
                closed = True
        return closed

    async def _publish_status(
        self,
        conversation_id: Optional[UUID],
        thread_id: Optional[UUID],
        status: ConversationStatus,
    ) -> None:
        if self.bus is None:
            return
        await self.bus.publish(
            {
                "type": "status_changed",
                "conversation_id": str(conversation_id) if conversation_id else None,
                "thread_id": str(thread_id) if thread_id else None,
                "status": status.value,
            }
        )

    # ========================================================================
    # Fork and compaction
    # ========================================================================

    @persistent("fork thread")
    async def fork(
        self,
        source_thread_id: UUID,
        at_event_id: Optional[int] = None,
        compact: bool = False,
        topic: Optional[str] = None,
    ) -> Thread:
        """
        Create a new thread from a source thread's history.

        Copies every event with id <= at_event_id (default: all) verbatim, or
        a single summary event when compact. The new thread is paused, has no
        conversation and records its lineage. Refs are copied.

        Raises:
            ThreadNotFound: source thread does not exist
            ThreadEventNotFound: at_event_id is not an event of the source
        """
        source = await self.get_thread(source_thread_id)

        if at_event_id is not None:
            if await self.events.get(source_thread_id, at_event_id) is None:
                raise ThreadEventNotFound(source_thread_id, at_event_id)
            fork_point = at_event_id
        else:
            fork_point = await self.events.last_event_id(source_thread_id)

        history = await self.events.list(
            source_thread_id,
            include_compacted=not compact,
            up_to_event_id=fork_point,
        ) if fork_point is not None else []

        summary = await self.summarizer.summarize(history) if compact and history else None
        fork = await self.threads.create(
            topic=topic or f"Fork of: {source.topic or source.thread_id}",
            status=ConversationStatus.PAUSED,
            parent_thread_id=source_thread_id,
            fork_point_event_id=fork_point,
            summary=summary,
        )

        if compact:
            if history:
                await self.events.append(
                    thread_id=fork.thread_id,
                    channel=EventChannel.SYSTEM,
                    direction=EventDirection.OUTBOUND,
                    actor=SYSTEM_ACTOR,
                    content=summary,
                    message_kind=MessageKind.SUMMARY,
                    metadata={
                        "compact_type": CompactMode.FORK.value,
                        "compacted_count": len(history),
                        "source_thread_id": str(source_thread_id),
                    },
                )
        else:
            for event in history:
                await self.events.append(
                    thread_id=fork.thread_id,
                    channel=event.channel,
                    direction=event.direction,
                    actor=event.actor,
                    content=event.content,
                    message_kind=event.message_kind,
                    metadata=event.metadata,
                    usage=event.usage,
                    compacted=event.compacted,
                    created_at=event.created_at,
                )

        for ref in await self.refs.list_for_thread(source_thread_id):
            await self.refs.add(
                thread_id=fork.thread_id,
                ref_kind=ref.ref_kind,
                repo=ref.repo,
                number=ref.number,
                ref=ref.ref,
                url=ref.url,
                status=ref.status,
            )

        logger.info(
            f"Forked thread {source_thread_id} at event {fork_point} -> {fork.thread_id}"
            f" ({'compact' if compact else f'{len(history)} events'})"
        )
        if self.bus is not None:
            await self.bus.publish(
                {
                    "type": "thread_forked",
                    "thread_id": str(fork.thread_id),
                    "parent_thread_id": str(source_thread_id),
                }
            )
        return await self.get_thread(fork.thread_id)

    @persistent("compact thread")
    async def compact(
        self,
        thread_id: UUID,
        mode: CompactMode = CompactMode.IN_PLACE,
        keep_recent: Optional[int] = None,
    ) -> CompactResult:
        """
        Condense older history.

        in_place: mark all but the keep_recent newest live events compacted
        and append a summary event. fork: fork with compaction, source
        untouched.

        Raises:
            ThreadNotFound: thread does not exist
            NothingToCompact: in_place with no more than keep_recent live events
        """
        keep = settings.compact_keep_recent if keep_recent is None else keep_recent
        await self.get_thread(thread_id)

        if mode == CompactMode.FORK:
            fork = await self.fork(thread_id, compact=True)
            live = await self.events.count_live(thread_id)
            return CompactResult(
                thread_id=fork.thread_id,
                mode=mode.value,
                compacted_count=live,
                kept_count=0,
                summary=fork.summary or "",
            )

        live_events = await self.events.list(thread_id)
        if len(live_events) <= keep:
            raise NothingToCompact(thread_id, len(live_events), keep)

        older = live_events[: len(live_events) - keep]
        summary = await self.summarizer.summarize(older)

        await self.events.mark_compacted(thread_id, [e.event_id for e in older])
        summary_event = await self.append_event(
            thread_id=thread_id,
            channel=EventChannel.SYSTEM,
            direction=EventDirection.OUTBOUND,
            actor=SYSTEM_ACTOR,
            content=summary,
            message_kind=MessageKind.SUMMARY,
            metadata={
                "compact_type": CompactMode.IN_PLACE.value,
                "compacted_count": len(older),
            },
        )
        await self.threads.update(thread_id, summary=summary)

        logger.info(f"Compacted {len(older)} events in thread {thread_id}, kept {keep}")
        return CompactResult(
            thread_id=thread_id,
            mode=mode.value,
            compacted_count=len(older),
            kept_count=keep,
            summary=summary,
            summary_event_id=summary_event.event_id,
        )

    @persistent("should compact")
    async def should_compact(
        self,
        thread_id: UUID,
        threshold: Optional[int] = None,
    ) -> CompactRecommendation:
        limit = settings.compact_threshold if threshold is None else threshold
        count = await self.events.count_live(thread_id)
        if count > limit:
            return CompactRecommendation(
                should_compact=True,
                event_count=count,
                reason=f"{count} live events exceeds threshold of {limit}",
            )
        return CompactRecommendation(
            should_compact=False,
            event_count=count,
            reason=f"{count} live events within threshold of {limit}",
        )

    # ========================================================================
    # Worker context
    # ========================================================================

    @persistent("build context")
    async def build_context(self, thread_id: UUID) -> list[WorkerMessage]:
        """
        Live history as Worker messages.

        Summary events lead; then inbound -> user and outbound -> assistant.
        Error and stop markers are bookkeeping and are left out.
        """
        events = await self.events.list(thread_id)
        summaries = [e for e in events if e.message_kind == MessageKind.SUMMARY]
        rest = [
            e for e in events
            if e.message_kind not in (MessageKind.SUMMARY, MessageKind.ERROR, MessageKind.STOPPED)
        ]

        messages = []
        for event in summaries:
            count = event.metadata.get("compacted_count", "?")
            messages.append(
                WorkerMessage(
                    role="user",
                    content=f"[THREAD SUMMARY: {count} earlier events condensed]\n{event.text}",
                )
            )
        for event in rest:
            role = "user" if event.direction == EventDirection.INBOUND else "assistant"
            text = event.text
            if text:
                messages.append(WorkerMessage(role=role, content=text))
        return messages
