"""
Outbound integration tests: Worker HTTP adapter, hosting client, workspace
inspection, summaries and the event bus.
"""

import json
import shutil

import httpx
import pytest

from threadgate.engine.bus import EventBus
from threadgate.engine.enforcer import GitWorkspaceInspector
from threadgate.engine.errors import HostingError, WorkerInvocationFailed
from threadgate.engine.summarizer import WorkerSummarizer
from threadgate.integrations.hosting import HostingClient, JobLog
from threadgate.integrations.worker import HttpWorker, WorkerMessage
from threadgate.utils import shell
from threadgate.webhooks import normalize
from threadgate.webhooks.self_filter import SelfActionFilter

from fakes import FakeWorker, comment_payload


def _ndjson(*events) -> bytes:
    return b"\n".join(json.dumps(e).encode() for e in events) + b"\n"


@pytest.mark.asyncio
async def test_http_worker_aggregates_stream():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.read())
        return httpx.Response(
            200,
            content=_ndjson(
                {"type": "text_chunk", "text": "Hel"},
                {"type": "tool_use", "id": "t1", "name": "bash", "input": {"cmd": "ls"}},
                {"type": "tool_result", "id": "t1", "result": "README.md"},
                {"type": "text_chunk", "text": "lo"},
                {"type": "heartbeat"},
                {"type": "agent_done", "usage": {"input_tokens": 7}, "session_id": "sess-9"},
            )
            + b"not json\n",
        )

    worker = HttpWorker("http://worker.test/", transport=httpx.MockTransport(handler))
    progress = []

    async def on_event(event):
        progress.append(event.type)

    result = await worker.run(
        [WorkerMessage(role="user", content="list files")],
        session_handle="sess-1",
        on_event=on_event,
    )

    assert seen["url"] == "http://worker.test/turns"
    assert seen["body"]["messages"] == [{"role": "user", "content": "list files"}]
    assert seen["body"]["session_id"] == "sess-1"
    assert result.text == "Hello"
    assert result.usage == {"input_tokens": 7}
    assert result.session_handle == "sess-9"
    assert [(t.name, t.result) for t in result.tool_calls] == [("bash", "README.md")]
    assert progress == ["text_chunk", "tool_use", "tool_result", "text_chunk", "agent_done"]


@pytest.mark.asyncio
async def test_http_worker_errors_become_invocation_failures():
    worker = HttpWorker(
        "http://worker.test", transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    with pytest.raises(WorkerInvocationFailed):
        await worker.run([WorkerMessage(role="user", content="hi")])


@pytest.mark.asyncio
async def test_hosting_fetches_failed_job_logs():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/repos/acme/app/actions/runs/7/jobs":
            return httpx.Response(
                200,
                json={
                    "jobs": [
                        {"id": 1, "name": "test", "conclusion": "failure"},
                        {"id": 2, "name": "lint", "conclusion": "success"},
                        {"id": 3, "name": "build", "conclusion": "failure"},
                    ]
                },
            )
        if path == "/api/v1/repos/acme/app/actions/jobs/1/logs":
            return httpx.Response(200, text="AssertionError")
        return httpx.Response(500)

    client = HostingClient("http://hosting.test", token="t", transport=httpx.MockTransport(handler))
    try:
        logs = await client.fetch_run_logs("acme", "app", 7)
    finally:
        await client.aclose()

    assert logs == [JobLog(job_name="test", log="AssertionError")]


@pytest.mark.asyncio
async def test_hosting_pull_request_lookups():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "token t"
        if request.url.path == "/api/v1/repos/acme/app/pulls":
            return httpx.Response(
                200,
                json=[
                    {"number": 3, "title": "Fix", "user": {"login": "gigi"}, "head": {"ref": "fix-3"}},
                    {"number": 4, "title": "Feat", "user": {"login": "alice"}, "head": {"ref": "feat"}},
                ],
            )
        return httpx.Response(404, json={"message": "not found"})

    client = HostingClient("http://hosting.test", token="t", transport=httpx.MockTransport(handler))
    try:
        pr = await client.find_pull_request_for_branch("acme", "app", "fix-3")
        assert (pr.number, pr.author) == (3, "gigi")
        assert await client.find_pull_request_for_branch("acme", "app", "nope") is None

        with pytest.raises(HostingError) as excinfo:
            await client.get_pull_request("acme", "app", 99)
        assert excinfo.value.status_code == 404
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_comment_echo_suppressed_during_post(session_factory):
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        # The echo webhook is handled on another session while the POST is in flight
        async with session_factory() as other:
            echo = normalize("issue_comment", comment_payload(12, "On it", author="gigi"))
            seen["suppressed"] = await SelfActionFilter(other).is_self_generated(echo)
        seen["path"] = request.url.path
        return httpx.Response(201, json={"id": 1})

    client = HostingClient(
        "http://hosting.test",
        token="t",
        transport=httpx.MockTransport(handler),
        session_factory=session_factory,
    )
    try:
        await client.comment_on_issue("acme", "app", 12, "On it")
    finally:
        await client.aclose()

    assert seen == {"suppressed": True, "path": "/api/v1/repos/acme/app/issues/12/comments"}


@pytest.mark.asyncio
async def test_missing_checkout_snapshot(tmp_path):
    snapshot = await GitWorkspaceInspector(str(tmp_path)).snapshot("absent")

    assert not snapshot.exists


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
async def test_git_snapshot(tmp_path):
    repo = tmp_path / "app"
    repo.mkdir()
    git = ["git", "-C", str(repo), "-c", "user.email=t@example.com", "-c", "user.name=t"]
    await shell.run(git + ["init"])
    await shell.run(git + ["symbolic-ref", "HEAD", "refs/heads/main"])
    (repo / "a.txt").write_text("one\n")
    await shell.run(git + ["add", "a.txt"])
    await shell.run(git + ["commit", "-m", "first"])

    inspector = GitWorkspaceInspector(str(tmp_path))
    clean = await inspector.snapshot("app")
    assert clean.exists
    assert clean.branch == "main"
    assert len(clean.commit_hash) == 40
    assert clean.dirty_files == []
    assert not clean.has_upstream

    (repo / "a.txt").write_text("two\n")
    dirty = await inspector.snapshot("app")
    assert dirty.dirty_files == ["a.txt"]
    assert dirty.commit_hash == clean.commit_hash


@pytest.mark.asyncio
async def test_worker_summarizer_falls_back(session):
    from threadgate.engine.store import ThreadStore
    from threadgate.models import EventChannel, EventDirection

    store = ThreadStore(session)
    conversation = await store.create_conversation(channel="web")
    thread = await store.ensure_thread(conversation)
    await store.append_event(thread.thread_id, EventChannel.WEB, EventDirection.INBOUND, "user", "hi")
    events = await store.list_events(thread.thread_id)

    summarized = await WorkerSummarizer(FakeWorker(replies=["  Short summary.  "])).summarize(events)
    assert summarized == "Short summary."

    failing = FakeWorker(replies=[RuntimeError("down")])
    fallback = await WorkerSummarizer(failing).summarize(events)
    assert fallback.startswith("Thread with 1 events")


@pytest.mark.asyncio
async def test_event_bus_isolates_subscribers():
    bus = EventBus()
    received = []

    def broken(event):
        raise ValueError("bad subscriber")

    async def collector(event):
        received.append(event["type"])

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(collector)

    await bus.publish({"type": "thread_event"})
    unsubscribe()
    await bus.publish({"type": "status_changed"})

    assert received == ["thread_event"]
    assert bus.subscriber_count == 1
