"""
Timezone-aware datetimes.

Every timestamp leaving the store is UTC-aware, including the ones SQLite
hands back naive.
"""

from datetime import datetime, timedelta, timezone
from typing import get_type_hints

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.engine.store import ThreadStore
from threadgate.models import ActionKind, ConversationStatus, EventChannel, EventDirection
from threadgate.utils.time import ensure_utc, utc_now
from threadgate.webhooks.self_filter import SelfActionFilter


def test_ensure_utc():
    naive = datetime(2025, 1, 2, 3, 4, 5)
    offset = datetime(2025, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(None) is None
    assert ensure_utc(naive) == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert ensure_utc(offset).tzinfo == timezone.utc
    assert ensure_utc(offset) == ensure_utc(naive)
    assert utc_now().tzinfo is not None


@pytest.mark.asyncio
async def test_store_timestamps_are_aware(session: AsyncSession):
    store = ThreadStore(session)
    conversation = await store.create_conversation(channel="web", topic="tz")
    thread = await store.ensure_thread(conversation)
    event = await store.append_event(
        thread_id=thread.thread_id,
        channel=EventChannel.WEB,
        direction=EventDirection.INBOUND,
        actor="user",
        content="hello",
    )
    await store.transition_conversation(conversation.conversation_id, ConversationStatus.STOPPED)
    await session.commit()

    reloaded = await store.get_conversation(conversation.conversation_id)
    for value in (reloaded.created_at, reloaded.updated_at, reloaded.closed_at):
        assert value.tzinfo is not None
    assert reloaded.updated_at >= reloaded.created_at

    assert (await store.get_thread(thread.thread_id)).created_at.tzinfo is not None
    assert event.created_at.tzinfo is not None
    assert (await store.list_events(thread.thread_id))[0].created_at.tzinfo is not None

    # Aware values compare against utc_now() without TypeError
    assert reloaded.created_at <= utc_now()


@pytest.mark.asyncio
async def test_action_window_compares_aware_times(session: AsyncSession):
    self_filter = SelfActionFilter(session, window_seconds=60)
    entry = await self_filter.record(ActionKind.CREATE_ISSUE, "app", 3)
    await session.commit()

    assert entry.created_at.tzinfo is not None
    assert utc_now() - entry.created_at < timedelta(seconds=60)


def test_repository_annotations_resolve():
    """Repositories with a `list` method still declare builtin list results."""
    from threadgate.db.repositories import ConversationRepository, ThreadEventRepository, ThreadRepository
    from threadgate.models import Conversation, Thread, ThreadEvent

    assert get_type_hints(ConversationRepository.find_by_tag)["return"] == list[Conversation]
    assert get_type_hints(ThreadRepository.list)["return"] == list[Thread]
    assert get_type_hints(ThreadEventRepository.list)["return"] == list[ThreadEvent]
