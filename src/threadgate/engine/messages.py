"""Chat message handling: explicit new-task requests and /issue tracking."""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from threadgate.engine.enforcer import TaskEnforcer
from threadgate.engine.errors import ThreadGateError, WorkerInvocationFailed
from threadgate.engine.notifications import NotificationService
from threadgate.engine.registry import WorkerRegistry
from threadgate.engine.store import ThreadStore
from threadgate.engine.turns import TurnOutcome, TurnRunner
from threadgate.models import (
    Conversation,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    RefKind,
    TaskContext,
    Thread,
)

logger = logging.getLogger(__name__)

ISSUE_COMMAND = re.compile(r"/issue\s+([a-z0-9._-]+)#(\d+)", re.IGNORECASE)


def parse_issue_command(text: str) -> Optional[tuple[str, int]]:
    """(repo, issue_number) from `/issue repo#N`, if present."""
    match = ISSUE_COMMAND.search(text)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


@dataclass
class MessageReply:
    conversation: Conversation
    thread: Thread
    event_id: int
    outcome: TurnOutcome
    task: Optional[TaskContext] = None


class ChatMessageHandler:
    """Messages typed by a human into a chat channel."""

    def __init__(
        self,
        store: ThreadStore,
        turns: TurnRunner,
        enforcer: TaskEnforcer,
        registry: WorkerRegistry,
        notifications: Optional[NotificationService] = None,
    ):
        self.store = store
        self.turns = turns
        self.enforcer = enforcer
        self.registry = registry
        self.notifications = notifications

    async def start_conversation(
        self,
        channel: str,
        topic: Optional[str] = None,
        tags: Iterable[str] = (),
        repo: Optional[str] = None,
    ) -> tuple[Conversation, Thread]:
        """Explicit new-task request: a fresh active conversation and its thread."""
        conversation = await self.store.create_conversation(
            channel=channel,
            topic=topic,
            status=ConversationStatus.ACTIVE,
            tags=tags,
            repo=repo,
        )
        thread = await self.store.create_thread(
            topic=topic,
            conversation_id=conversation.conversation_id,
            status=ConversationStatus.ACTIVE,
        )
        await self.store.session.commit()
        return conversation, thread

    async def handle_message(
        self,
        conversation_id: UUID,
        text: str,
        channel: EventChannel = EventChannel.WEB,
        actor: str = "user",
    ) -> MessageReply:
        """
        Record a human message and run a supervised Worker turn.

        `/issue repo#N` starts task tracking, tags the conversation and
        links the issue to the thread before the turn runs.

        Raises:
            ConversationNotFound: unknown conversation
            WorkerInvocationFailed: the Worker raised; the failure is
                recorded on the thread first
        """
        conversation = await self.store.get_conversation(conversation_id)
        thread = await self.store.ensure_thread(conversation)

        task = None
        command = parse_issue_command(text)
        if command is not None:
            task = await self._track_issue(conversation, thread, *command)

        event = await self.store.append_event(
            thread_id=thread.thread_id,
            channel=channel,
            direction=EventDirection.INBOUND,
            actor=actor,
            content=text,
        )

        try:
            outcome = await self.turns.run_with_enforcement(
                conversation_id,
                thread.thread_id,
                channel=channel,
                triggered_by=channel.value,
            )
        except WorkerInvocationFailed as e:
            logger.error(f"Message turn for {conversation_id} failed: {e.message}")
            await self.store.append_event(
                thread_id=thread.thread_id,
                channel=EventChannel.SYSTEM,
                direction=EventDirection.OUTBOUND,
                actor="system",
                content=f"Failed to process message: {e.message}",
                message_kind=MessageKind.ERROR,
            )
            await self.store.session.commit()
            if self.notifications is not None:
                self.notifications.notify(
                    f"*Message failed* in conversation {conversation_id}: {e.message}",
                    job="message:error",
                )
            raise
        return MessageReply(
            conversation=await self.store.get_conversation(conversation_id),
            thread=await self.store.get_thread(thread.thread_id),
            event_id=event.event_id,
            outcome=outcome,
            task=task,
        )

    def stop(self, conversation_id: UUID) -> bool:
        """Cancel the conversation's in-flight Worker turn."""
        return self.registry.stop(conversation_id)

    async def _track_issue(
        self,
        conversation: Conversation,
        thread: Thread,
        repo: str,
        issue_number: int,
    ) -> TaskContext:
        task = await self.enforcer.start_task(conversation.conversation_id, repo, issue_number)
        logger.info(f"Started task tracking: {repo}#{issue_number}")
        try:
            await self.store.add_tags(conversation.conversation_id, [f"{repo}#{issue_number}", repo])
            await self.store.conversations.update(conversation.conversation_id, repo=repo)
            await self.store.add_ref(thread.thread_id, RefKind.ISSUE, repo, number=issue_number)
        except ThreadGateError as e:
            logger.warning(f"Auto-tag for {repo}#{issue_number} failed: {e.message}", exc_info=True)
        return task
