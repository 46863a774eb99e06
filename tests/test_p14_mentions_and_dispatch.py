"""
Mentions and push-triggered workflow dispatch.
"""

import pytest

from threadgate.config import DispatchRule
from threadgate.engine.errors import WorkerInvocationFailed
from threadgate.models import EventChannel, EventDirection, MessageKind
from threadgate.webhooks import normalize

from fakes import BOT, comment_payload, push_payload


@pytest.mark.asyncio
async def test_mention_runs_worker_in_thread(engine, services, worker, notifier):
    worker.replies = ["Looking into it."]

    result = await engine.route_webhook(
        normalize("issue_comment", comment_payload(15, f"@{BOT} can you reproduce this?", repo="web"))
    )
    await services.side_channel.drain()

    assert result.created
    assert result.worker_invoked
    assert len(worker.calls) == 1
    assert worker.last_messages[-1].content.startswith("[Comment from @alice]\ncan you reproduce this?")

    events = await engine.store.list_events(result.thread_id)
    assert [(e.channel, e.direction) for e in events] == [
        (EventChannel.WEBHOOK, EventDirection.INBOUND),
        (EventChannel.GITEA_COMMENT, EventDirection.INBOUND),
        (EventChannel.GITEA_COMMENT, EventDirection.OUTBOUND),
    ]
    assert events[1].actor == "@alice"
    assert events[2].text == "Looking into it."
    assert any("mentioned" in t for t in notifier.texts())


@pytest.mark.asyncio
async def test_mention_on_pull_request_comment(engine, worker):
    result = await engine.route_webhook(
        normalize("issue_comment", comment_payload(16, f"@{BOT} rebase please", repo="web", on_pull=True))
    )

    assert result.worker_invoked
    conversation = await engine.store.get_conversation(result.conversation_id)
    assert conversation.topic == "PR #16: Issue 16"
    assert "pr#16" in conversation.tags


@pytest.mark.asyncio
async def test_comment_without_mention_is_recorded_only(engine, worker):
    first = await engine.route_webhook(
        normalize("issue_comment", comment_payload(17, f"@{BOT} start", repo="web"))
    )
    worker.calls.clear()

    second = await engine.route_webhook(
        normalize("issue_comment", comment_payload(17, "thanks!", repo="web"))
    )

    assert second.conversation_id == first.conversation_id
    assert not second.worker_invoked
    assert worker.calls == []


@pytest.mark.asyncio
async def test_mention_failure_recorded(engine, services, worker, notifier):
    worker.replies = [WorkerInvocationFailed("connection reset")]

    result = await engine.route_webhook(
        normalize("issue_comment", comment_payload(18, f"@{BOT} help", repo="web"))
    )
    await services.side_channel.drain()

    assert not result.worker_invoked
    errors = await engine.store.list_events(result.thread_id, message_kind=MessageKind.ERROR)
    assert [e.text for e in errors] == ["Failed to process mention: Worker invocation failed: connection reset"]
    assert any(t.startswith("*Mention failed* in web") for t in notifier.texts())


@pytest.mark.asyncio
async def test_push_dispatches_configured_workflows(engine, services, hosting):
    services.dispatch_rules.append(
        DispatchRule(
            source_repo="lib",
            target_owner="acme",
            target_repo="site",
            workflow_file="deploy.yml",
            inputs={"env": "prod"},
        )
    )

    await engine.route_webhook(normalize("push", push_payload(commits=["1111aaaa", "2222bbbb"], repo="lib")))
    await engine.route_webhook(normalize("push", push_payload(ref="refs/heads/dev", repo="lib")))
    await engine.route_webhook(normalize("push", push_payload(repo="other")))
    await services.side_channel.drain()

    assert hosting.dispatched == [
        {
            "owner": "acme",
            "repo": "site",
            "workflow_file": "deploy.yml",
            "inputs": {"env": "prod", "sha": "2222bbbb"},
        }
    ]
