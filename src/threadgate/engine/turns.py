"""Worker turn runner."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from threadgate.config import settings
from threadgate.engine.bus import EventBus
from threadgate.engine.enforcer import TaskEnforcer
from threadgate.engine.errors import WorkerInvocationFailed
from threadgate.engine.registry import WorkerRegistry
from threadgate.engine.store import SYSTEM_ACTOR, ThreadStore
from threadgate.integrations.worker import Worker, WorkerEvent, WorkerMessage, WorkerResult
from threadgate.models import (
    ConversationStatus,
    EventChannel,
    EventDirection,
    FollowUp,
    MessageKind,
)

logger = logging.getLogger(__name__)

STOPPED_TEXT = "Stopped by user"
TITLE_PATTERN = re.compile(r"^\[title:\s*(.+?)\]\s*", re.MULTILINE)


def extract_title(text: str) -> tuple[str, Optional[str]]:
    """Split a leading `[title: ...]` marker off a Worker reply."""
    match = TITLE_PATTERN.search(text)
    if match is None:
        return text, None
    return text.replace(match.group(0), "", 1), match.group(1).strip()


@dataclass
class TurnOutcome:
    result: Optional[WorkerResult] = None
    text: Optional[str] = None
    stopped: bool = False

    @property
    def completed(self) -> bool:
        return self.result is not None and not self.stopped


class TurnRunner:
    """
    Runs one Worker turn against a thread and records the outcome.

    The caller commits before invoking so bookkeeping survives a Worker
    failure; the runner commits again once the response is stored.
    """

    def __init__(
        self,
        store: ThreadStore,
        worker: Worker,
        registry: WorkerRegistry,
        bus: Optional[EventBus] = None,
        enforcer: Optional[TaskEnforcer] = None,
        bot_login: Optional[str] = None,
    ):
        self.store = store
        self.worker = worker
        self.registry = registry
        self.bus = bus
        self.enforcer = enforcer
        self.bot_login = bot_login or settings.bot_login

    async def run_turn(
        self,
        conversation_id: UUID,
        thread_id: UUID,
        channel: EventChannel,
        triggered_by: str,
        followup: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> TurnOutcome:
        """
        Invoke the Worker with the thread history and persist its reply.

        With a stored session handle and a follow-up text only the follow-up
        is sent; otherwise the full live history is.

        Raises:
            WorkerInvocationFailed: the Worker raised
        """
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.session_handle and followup:
            messages = [WorkerMessage(role="user", content=followup)]
        else:
            messages = await self.store.build_context(thread_id)

        await self.store.session.commit()
        logger.info(
            f"Invoking worker for conversation {conversation_id} "
            f"({len(messages)} messages, trigger={triggered_by})"
        )

        call = self.worker.run(
            messages,
            session_handle=conversation.session_handle,
            system_prompt=system_prompt,
            on_event=self._progress_publisher(conversation_id, thread_id),
        )
        try:
            result: WorkerResult = await self.registry.run(conversation_id, call)
        except asyncio.CancelledError:
            if not self.registry.consume_stop(conversation_id):
                raise
            await self._record_stop(conversation_id, thread_id)
            return TurnOutcome(stopped=True)
        except WorkerInvocationFailed:
            raise
        except Exception as e:
            raise WorkerInvocationFailed(str(e)) from e

        text, title = extract_title(result.text)
        if title:
            await self.store.conversations.update(conversation_id, topic=title)
            await self.store.threads.update(thread_id, topic=title)

        metadata = {"triggered_by": triggered_by}
        if result.tool_calls:
            metadata["tool_calls"] = [
                {"id": t.tool_use_id, "name": t.name} for t in result.tool_calls
            ]
        await self.store.append_event(
            thread_id=thread_id,
            channel=channel,
            direction=EventDirection.OUTBOUND,
            actor=self.bot_login,
            content=text,
            metadata=metadata,
            usage=result.usage,
        )
        if result.session_handle:
            await self.store.set_session_handle(
                result.session_handle,
                conversation_id=conversation_id,
                thread_id=thread_id,
            )
        await self.store.session.commit()
        return TurnOutcome(result=result, text=text)

    async def run_with_enforcement(
        self,
        conversation_id: UUID,
        thread_id: UUID,
        channel: EventChannel,
        triggered_by: str,
        system_prompt: Optional[str] = None,
    ) -> TurnOutcome:
        """A turn followed by the enforcer's bounded follow-up loop."""
        outcome = await self.run_turn(
            conversation_id, thread_id, channel, triggered_by, system_prompt=system_prompt
        )
        if not outcome.completed or self.enforcer is None:
            return outcome

        async def invoke(followup: FollowUp) -> bool:
            await self.store.append_event(
                thread_id=thread_id,
                channel=EventChannel.SYSTEM,
                direction=EventDirection.INBOUND,
                actor=SYSTEM_ACTOR,
                content=followup.instruction,
                message_kind=MessageKind.ENFORCER,
                metadata={"progress_state": followup.state.value},
            )
            nonlocal outcome
            outcome = await self.run_turn(
                conversation_id,
                thread_id,
                channel,
                triggered_by="enforcer",
                followup=followup.instruction,
                system_prompt=system_prompt,
            )
            return outcome.completed

        issued = await self.enforcer.enforce(conversation_id, invoke)
        if issued:
            logger.info(f"Enforcer issued {len(issued)} follow-up(s) for {conversation_id}")
            await self.store.session.commit()
        return outcome

    async def _record_stop(self, conversation_id: UUID, thread_id: UUID) -> None:
        logger.info(f"Worker for conversation {conversation_id} stopped by user")
        await self.store.append_event(
            thread_id=thread_id,
            channel=EventChannel.SYSTEM,
            direction=EventDirection.OUTBOUND,
            actor=SYSTEM_ACTOR,
            content=STOPPED_TEXT,
            message_kind=MessageKind.STOPPED,
        )
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.status == ConversationStatus.ACTIVE:
            await self.store.transition_conversation(conversation_id, ConversationStatus.PAUSED)
        await self.store.session.commit()

    def _progress_publisher(self, conversation_id: UUID, thread_id: UUID):
        bus = self.bus
        if bus is None:
            return None

        async def on_event(event: WorkerEvent) -> None:
            await bus.publish(
                {
                    "type": f"worker_{event.type}",
                    "conversation_id": str(conversation_id),
                    "thread_id": str(thread_id),
                    "data": event.data,
                }
            )

        return on_event
