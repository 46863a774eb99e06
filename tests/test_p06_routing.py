"""
Webhook routing tests.

Redelivering the same event never duplicates conversations, threads or
refs; closing an item stops its conversation and syncs ref status.
"""

import pytest

from threadgate.engine.router import SKIP_IGNORED, SKIP_UNROUTED
from threadgate.engine.store import ThreadStore
from threadgate.models import ConversationStatus, EventChannel, RefKind, RefStatus
from threadgate.webhooks import normalize

from fakes import comment_payload, issue_payload, pull_request_payload, push_payload


@pytest.mark.asyncio
async def test_replayed_delivery_is_idempotent(engine, worker):
    """Two identical "issue opened" deliveries: one conversation, one thread, one ref."""
    delivery = issue_payload("opened", 11, repo="replay")

    first = await engine.route_webhook(normalize("issues", delivery))
    second = await engine.route_webhook(normalize("issues", delivery))

    assert first.created
    assert not second.created
    assert second.conversation_id == first.conversation_id
    assert second.thread_id == first.thread_id

    detail = await engine.store.get_thread_detail(first.thread_id)
    assert [(r.repo, r.ref_kind, r.number) for r in detail.refs] == [("replay", RefKind.ISSUE, 11)]

    events = await engine.store.list_events(first.thread_id)
    assert len(events) == 2
    assert all(e.channel == EventChannel.WEBHOOK for e in events)
    assert events[0].text.startswith('Issue #11 opened: "Issue 11" by @alice')

    tagged = await engine.store.conversations.find_by_tag("replay#11", ConversationStatus.live_states())
    assert len(tagged) == 1
    assert worker.calls == []


@pytest.mark.asyncio
async def test_created_conversation_is_paused_with_tags(engine):
    result = await engine.route_webhook(normalize("issues", issue_payload("opened", 12, repo="lib")))

    conversation = await engine.store.get_conversation(result.conversation_id)
    assert conversation.status == ConversationStatus.PAUSED
    assert conversation.topic == "Issue #12: Issue 12"
    assert conversation.repo == "lib"
    assert set(conversation.tags) == {"lib#12", "lib"}
    assert result.to_response()["processed"] == "issues"


@pytest.mark.asyncio
async def test_unclaimed_comment_is_summarized(engine, services, notifier):
    result = await engine.route_webhook(
        normalize("issue_comment", comment_payload(3, "looks fine to me", repo="quiet"))
    )
    await services.side_channel.drain()

    assert result.skipped == SKIP_UNROUTED
    assert result.conversation_id is None
    assert result.summary.startswith("[Comment] created on #3 in acme/quiet")
    assert "looks fine to me" in result.summary
    # Plain comments are not significant enough to notify
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_unclaimed_push_to_main_notifies(engine, services, notifier):
    result = await engine.route_webhook(normalize("push", push_payload(repo="quiet")))
    await services.side_channel.drain()

    assert result.skipped == SKIP_UNROUTED
    assert result.summary.startswith("[Push] alice pushed 1 commits to acme/quiet:refs/heads/main")
    assert len(notifier.sent) == 1
    assert notifier.texts()[0].startswith("*Push to `main`*")


@pytest.mark.asyncio
async def test_unknown_event_kind_is_ignored(engine, worker):
    result = await engine.route_webhook(normalize("release", {"action": "published"}))

    assert result.skipped == SKIP_IGNORED
    assert result.to_response() == {"ok": True, "skipped": SKIP_IGNORED}


@pytest.mark.asyncio
async def test_issue_closed_stops_conversation_and_syncs_ref(engine, services, session_factory):
    opened = await engine.route_webhook(normalize("issues", issue_payload("opened", 30, repo="close")))
    closed = await engine.route_webhook(normalize("issues", issue_payload("closed", 30, repo="close")))
    await services.side_channel.drain()

    assert closed.conversation_id == opened.conversation_id
    assert closed.auto_closed
    assert closed.to_response()["auto_closed"] is True

    conversation = await engine.store.get_conversation(opened.conversation_id)
    assert conversation.status == ConversationStatus.STOPPED
    assert conversation.closed_at is not None

    async with session_factory() as fresh:
        detail = await ThreadStore(fresh).get_thread_detail(opened.thread_id)
    assert [r.status for r in detail.refs] == [RefStatus.CLOSED]

    # The stopped conversation no longer claims the issue
    assert await engine.resolver.resolve(
        normalize("issues", issue_payload("closed", 30, repo="close")).refs, []
    ) is None


@pytest.mark.asyncio
async def test_pull_request_merge_marks_ref_merged(engine, services, session_factory):
    opened = await engine.route_webhook(normalize("pull_request", pull_request_payload("opened", 40)))
    merged = await engine.route_webhook(
        normalize("pull_request", pull_request_payload("closed", 40, merged=True))
    )
    await services.side_channel.drain()

    assert opened.created
    assert merged.auto_closed

    async with session_factory() as fresh:
        detail = await ThreadStore(fresh).get_thread_detail(opened.thread_id)
    assert [(r.ref_kind, r.status) for r in detail.refs] == [(RefKind.PR, RefStatus.MERGED)]


@pytest.mark.asyncio
async def test_later_edit_of_merged_pull_request_keeps_reopened_conversation(engine, services):
    opened = await engine.route_webhook(normalize("pull_request", pull_request_payload("opened", 41)))
    await engine.route_webhook(normalize("pull_request", pull_request_payload("closed", 41, merged=True)))
    await engine.set_status(opened.conversation_id, ConversationStatus.ACTIVE)

    edited = await engine.route_webhook(
        normalize("pull_request", pull_request_payload("edited", 41, merged=True))
    )
    await services.side_channel.drain()

    assert edited.conversation_id == opened.conversation_id
    assert not edited.auto_closed
    conversation = await engine.store.get_conversation(opened.conversation_id)
    assert conversation.status == ConversationStatus.ACTIVE
