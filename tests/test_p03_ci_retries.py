"""
CI remediation tests.

Failures on the bot's own PRs invoke the Worker a bounded number of
times; the operator hears about giving up exactly once; a green run
resets the budget.
"""

import pytest

from threadgate.engine.ci import (
    CIRunInfo,
    FixAttemptTracker,
    build_ci_failure_message,
    parse_ci_event,
)
from threadgate.engine.errors import PersistenceError, WorkerInvocationFailed
from threadgate.integrations.hosting import JobLog
from threadgate.models import CIAction, EventChannel, MessageKind, RefKind
from threadgate.webhooks import normalize

from fakes import workflow_run_payload


def ci_event(run_id: int, conclusion: str, **kwargs):
    return normalize("workflow_run", workflow_run_payload(run_id, conclusion, **kwargs))


@pytest.mark.asyncio
async def test_bounded_retries_and_reset(engine, services, worker, notifier, hosting):
    """Three invocations, the fourth gives up once, success resets."""
    hosting.add_pull_request("app", 5)
    hosting.logs[101] = [JobLog(job_name="test", log="AssertionError: expected 2")]

    actions = []
    for run_id in (101, 102, 103, 104):
        result = await engine.route_webhook(ci_event(run_id, "failure"))
        actions.append(result.ci.action)

    assert actions == [
        CIAction.WORKER_INVOKED,
        CIAction.WORKER_INVOKED,
        CIAction.WORKER_INVOKED,
        CIAction.MAX_RETRIES,
    ]
    assert len(worker.calls) == 3

    # Still exhausted; no second "gave up" message
    again = await engine.route_webhook(ci_event(105, "failure"))
    assert again.ci.action == CIAction.MAX_RETRIES

    await services.side_channel.drain()
    gave_up = [t for t in notifier.texts() if "gave up" in t]
    assert len(gave_up) == 1
    assert "PR: #5" in gave_up[0]

    reset = await engine.route_webhook(ci_event(106, "success"))
    assert reset.ci.action == CIAction.SUCCESS_RESET
    assert services.tracker.attempts("acme", "app", 5) == 0

    retried = await engine.route_webhook(ci_event(107, "failure"))
    assert retried.ci.action == CIAction.WORKER_INVOKED
    assert len(worker.calls) == 4


@pytest.mark.asyncio
async def test_failure_creates_ci_conversation_once(engine, hosting):
    hosting.add_pull_request("app", 5)
    hosting.logs[201] = [JobLog(job_name="lint", log="E501 line too long")]

    first = await engine.route_webhook(ci_event(201, "failure"))
    second = await engine.route_webhook(ci_event(202, "failure"))

    assert first.ci.conversation_id == second.ci.conversation_id
    resolution = await engine.lookup_ref("app", RefKind.PR, 5)
    assert resolution.conversation.topic == "CI Fix: PR #5 in app"
    assert "app#5" in resolution.conversation.tags

    events = await engine.store.list_events(resolution.thread.thread_id, message_kind=MessageKind.CI_FAILURE)
    assert len(events) == 2
    assert events[0].actor == "ci"
    assert events[0].channel == EventChannel.WEBHOOK
    assert events[0].metadata["attempt"] == 1
    assert "E501 line too long" in events[0].text
    assert events[1].metadata["attempt"] == 2


@pytest.mark.asyncio
async def test_pr_by_other_author_is_left_alone(engine, hosting, worker):
    hosting.add_pull_request("app", 8, author="alice")

    result = await engine.route_webhook(ci_event(301, "failure", pr_number=8))

    assert result.ci.action == CIAction.NOT_OWN_PR
    assert worker.calls == []


@pytest.mark.asyncio
async def test_failure_without_pull_request_is_ignored(engine, worker):
    result = await engine.route_webhook(ci_event(401, "failure", pr_number=None, branch="main"))

    assert result.ci.action == CIAction.IGNORED
    assert result.ci.reason == "no pull request"
    assert worker.calls == []


@pytest.mark.asyncio
async def test_pr_found_by_branch(engine, hosting, worker):
    hosting.add_pull_request("app", 9, branch="feature-x")

    result = await engine.route_webhook(ci_event(501, "failure", pr_number=None, branch="feature-x"))

    assert result.ci.action == CIAction.WORKER_INVOKED
    assert result.ci.pr_number == 9


@pytest.mark.asyncio
async def test_cancelled_and_in_progress_runs_ignored(engine, worker):
    cancelled = await engine.route_webhook(ci_event(601, "cancelled"))
    assert cancelled.ci.action == CIAction.IGNORED

    payload = workflow_run_payload(602, "")
    payload["action"] = "in_progress"
    in_progress = await engine.route_webhook(normalize("workflow_run", payload))
    assert in_progress.ci.action == CIAction.IGNORED
    assert worker.calls == []


@pytest.mark.asyncio
async def test_log_fetch_failure_degrades(engine, hosting, worker):
    """Missing logs still invoke the Worker with a pointer to the run."""
    hosting.add_pull_request("app", 5)
    hosting.fail_logs = True

    result = await engine.route_webhook(ci_event(701, "failure"))

    assert result.ci.action == CIAction.WORKER_INVOKED
    prompt = worker.last_messages[-1].content
    assert "No logs could be fetched" in prompt


@pytest.mark.asyncio
async def test_worker_failure_recorded_and_reported(engine, services, hosting, worker, notifier):
    hosting.add_pull_request("app", 5)
    worker.replies = [WorkerInvocationFailed("worker crashed")]

    result = await engine.route_webhook(ci_event(801, "failure"))
    await services.side_channel.drain()

    assert result.ci.action == CIAction.WORKER_FAILED
    assert result.ci.reason == "Worker invocation failed: worker crashed"
    resolution = await engine.lookup_ref("app", RefKind.PR, 5)
    errors = await engine.store.list_events(resolution.thread.thread_id, message_kind=MessageKind.ERROR)
    assert [e.text for e in errors] == ["Worker invocation failed: worker crashed"]
    assert any("CI auto-fix error" in t for t in notifier.texts())


def test_tracker_counts_per_pull_request():
    tracker = FixAttemptTracker(max_attempts=2)

    assert tracker.track("acme", "app", 1) == 1
    assert tracker.track("acme", "app", 1) == 2
    assert not tracker.can_attempt("acme", "app", 1)
    assert tracker.can_attempt("acme", "app", 2)

    assert len(tracker) == 1

    tracker.reset("acme", "app", 1)
    assert tracker.can_attempt("acme", "app", 1)
    assert tracker.attempts("acme", "app", 1) == 0
    # A reset drops the entry instead of keeping a zero count
    assert len(tracker) == 0


def test_failure_message_truncates_and_warns_on_last_attempt():
    run = CIRunInfo(
        run_id=1,
        owner="acme",
        repo="app",
        branch="fix",
        head_sha="0123456789abcdef",
        workflow_name="CI",
        conclusion="failure",
        pr_number=5,
    )
    logs = [JobLog(job_name="test", log="x" * 50 + "TAIL")]

    message = build_ci_failure_message(run, logs, attempt=3, max_attempts=3, tail_chars=10)

    assert message.startswith("[CI Failure: auto-fix attempt 3/3]")
    assert "xxxxxxTAIL" in message
    assert "... (truncated, showing last 10 chars)" in message
    assert "**Commit:** 01234567" in message
    assert "last auto-fix attempt" in message

    first = build_ci_failure_message(run, logs, attempt=1, max_attempts=3, tail_chars=100)
    assert "truncated" not in first
    assert "last auto-fix attempt" not in first


def test_parse_workflow_job_event():
    payload = {
        "action": "completed",
        "repository": {"name": "app", "owner": {"login": "acme"}},
        "workflow_job": {
            "id": 9,
            "run_id": 77,
            "name": "build",
            "workflow_name": "CI",
            "head_branch": "fix",
            "conclusion": "failure",
        },
    }
    run = parse_ci_event(normalize("workflow_job", payload))

    assert run.run_id == 77
    assert run.workflow_name == "CI"
    assert run.pr_number is None


@pytest.mark.asyncio
async def test_persistence_failure_reported_not_raised(engine, services, hosting, worker, notifier, monkeypatch):
    hosting.add_pull_request("app", 6)
    original_append = engine.store.append_event

    async def failing_append(**kwargs):
        if kwargs.get("message_kind") == MessageKind.CI_FAILURE:
            raise PersistenceError("append event", "disk I/O error")
        return await original_append(**kwargs)

    monkeypatch.setattr(engine.store, "append_event", failing_append)

    # No thread yet: the half-created conversation is rolled back
    fresh = await engine.route_webhook(ci_event(901, "failure", pr_number=6))
    assert fresh.ci.action == CIAction.WORKER_FAILED
    assert fresh.ci.reason == "append event failed: disk I/O error"
    assert fresh.ci.conversation_id is None
    assert worker.calls == []

    # An existing thread gets the error recorded
    monkeypatch.setattr(engine.store, "append_event", original_append)
    await engine.route_webhook(ci_event(902, "failure", pr_number=6))
    monkeypatch.setattr(engine.store, "append_event", failing_append)

    known = await engine.route_webhook(ci_event(903, "failure", pr_number=6))
    await services.side_channel.drain()

    assert known.ci.action == CIAction.WORKER_FAILED
    assert len(worker.calls) == 1
    resolution = await engine.lookup_ref("app", RefKind.PR, 6)
    assert known.ci.conversation_id == str(resolution.conversation.conversation_id)
    errors = await engine.store.list_events(resolution.thread.thread_id, message_kind=MessageKind.ERROR)
    assert [e.text for e in errors] == ["append event failed: disk I/O error"]
    failures = [t for t in notifier.texts() if "CI auto-fix error" in t]
    assert len(failures) == 2
    assert all("Error: append event failed: disk I/O error" in t for t in failures)
