"""
Task completion enforcement tests.

Progress is read from the Worker's checkout, only ever moves forward, and
each state needing a nudge gets exactly one follow-up.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.engine.enforcer import (
    FOLLOWUP_PREFIX,
    TaskEnforcer,
    detect_progress,
    followup_instruction,
)
from threadgate.engine.errors import TaskNotFound
from threadgate.engine.store import ThreadStore
from threadgate.integrations.worker import WorkerMessage
from threadgate.models import EventChannel, MessageKind, ProgressState, RefKind, WorkspaceSnapshot

from fakes import FakeInspector

BASELINE = {"branch": "main", "commit_hash": "aaa111", "has_upstream": True}


async def _conversation(session: AsyncSession):
    store = ThreadStore(session)
    conversation = await store.create_conversation(channel="web", topic="Fix issue 7")
    await store.ensure_thread(conversation)
    return conversation


@pytest.mark.asyncio
async def test_followups_are_monotonic(session: AsyncSession):
    """code_changed -> push follow-up, branch_pushed -> notify follow-up, notified -> nothing."""
    inspector = FakeInspector()
    inspector.set("app", **BASELINE)
    enforcer = TaskEnforcer(session, inspector)
    conversation = await _conversation(session)
    cid = conversation.conversation_id

    await enforcer.start_task(cid, "app", 7)
    assert await enforcer.check(cid) is None

    inspector.set("app", branch="main", commit_hash="aaa111", dirty_files=["src/app.py"])
    followup = await enforcer.check(cid)
    assert followup.state == ProgressState.CODE_CHANGED
    assert followup.instruction.startswith(FOLLOWUP_PREFIX)
    assert "Committing and pushing to a feature branch" in followup.instruction

    # Same state again: no repeated nudge
    assert await enforcer.check(cid) is None

    inspector.set("app", branch="fix-7", commit_hash="bbb222", has_upstream=True)
    followup = await enforcer.check(cid)
    assert followup.state == ProgressState.BRANCH_PUSHED
    assert "You pushed branch fix-7 for app#7" in followup.instruction
    assert (await enforcer.get_task(cid)).branch == "fix-7"

    # Checkout reset to the baseline: progress does not regress
    inspector.set("app", **BASELINE)
    assert await enforcer.check(cid) is None
    assert (await enforcer.get_task(cid)).progress_state == ProgressState.BRANCH_PUSHED

    task = await enforcer.mark_notified(cid)
    assert task.progress_state == ProgressState.NOTIFIED
    assert task.completed_at is not None

    inspector.set("app", branch="fix-7", commit_hash="ccc333", has_upstream=True)
    assert await enforcer.check(cid) is None


@pytest.mark.asyncio
async def test_missing_checkout_is_not_progress(session: AsyncSession):
    inspector = FakeInspector()
    enforcer = TaskEnforcer(session, inspector)
    conversation = await _conversation(session)

    await enforcer.start_task(conversation.conversation_id, "app", 7)

    assert await enforcer.check(conversation.conversation_id) is None


@pytest.mark.asyncio
async def test_restart_resets_progress(session: AsyncSession):
    inspector = FakeInspector()
    inspector.set("app", **BASELINE)
    enforcer = TaskEnforcer(session, inspector)
    conversation = await _conversation(session)
    cid = conversation.conversation_id

    await enforcer.start_task(cid, "app", 7)
    inspector.set("app", branch="main", commit_hash="bbb222")
    await enforcer.check(cid)

    restarted = await enforcer.start_task(cid, "app", 7)

    assert restarted.progress_state == ProgressState.NOT_STARTED
    assert restarted.followup_state is None
    assert restarted.workspace_snapshot.commit_hash == "bbb222"


@pytest.mark.asyncio
async def test_mark_notified_unknown_task(session: AsyncSession):
    enforcer = TaskEnforcer(session, FakeInspector())
    conversation = await _conversation(session)

    with pytest.raises(TaskNotFound):
        await enforcer.mark_notified(conversation.conversation_id, "app", 99)


@pytest.mark.asyncio
async def test_completed_task_still_reported(session: AsyncSession):
    inspector = FakeInspector()
    inspector.set("app", **BASELINE)
    enforcer = TaskEnforcer(session, inspector)
    conversation = await _conversation(session)
    cid = conversation.conversation_id

    with pytest.raises(TaskNotFound):
        await enforcer.get_task(cid)

    await enforcer.start_task(cid, "app", 7)
    await enforcer.mark_notified(cid)

    task = await enforcer.get_task(cid)
    assert task.progress_state == ProgressState.NOTIFIED
    assert task.completed_at is not None
    # Marking again is a no-op on the finished task
    again = await enforcer.mark_notified(cid)
    assert again.task_context_id == task.task_context_id


@pytest.mark.asyncio
async def test_enforce_loop_is_bounded(session: AsyncSession):
    inspector = FakeInspector()
    inspector.set("app", **BASELINE)
    enforcer = TaskEnforcer(session, inspector, max_cycles=1)
    conversation = await _conversation(session)
    cid = conversation.conversation_id
    await enforcer.start_task(cid, "app", 7)
    inspector.set("app", branch="main", commit_hash="bbb222")

    invoked = []

    async def invoke(followup):
        invoked.append(followup)
        inspector.set("app", branch="fix-7", commit_hash="ccc333", has_upstream=True)
        return True

    issued = await enforcer.enforce(cid, invoke)

    assert [f.state for f in issued] == [ProgressState.CODE_CHANGED]
    assert len(invoked) == 1


def test_detect_progress_rules():
    baseline = WorkspaceSnapshot(exists=True, **BASELINE)

    assert detect_progress(baseline, baseline, ["main"]) == ProgressState.NOT_STARTED
    committed_on_main = WorkspaceSnapshot(exists=True, branch="main", commit_hash="b", has_upstream=True)
    assert detect_progress(baseline, committed_on_main, ["main"]) == ProgressState.CODE_CHANGED
    local_branch = WorkspaceSnapshot(exists=True, branch="fix", commit_hash="b", has_upstream=False)
    assert detect_progress(baseline, local_branch, ["main"]) == ProgressState.CODE_CHANGED
    pushed = WorkspaceSnapshot(exists=True, branch="fix", commit_hash="b", has_upstream=True)
    assert detect_progress(baseline, pushed, ["main"]) == ProgressState.BRANCH_PUSHED


@pytest.mark.asyncio
async def test_issue_command_drives_followup_turns(engine, services, worker, inspector):
    """/issue starts tracking; the Worker is nudged until it reports completion."""
    inspector.set("app", **BASELINE)
    worker.session_handle = "sess-1"

    def edit():
        inspector.set("app", branch="main", commit_hash="aaa111", dirty_files=["a.py"])
        return "I'll fix it"

    def push():
        inspector.set("app", branch="fix-7", commit_hash="bbb222", has_upstream=True)
        return "Pushed fix-7 and opened PR #8"

    worker.replies = [edit, push, "Notification sent"]

    conversation, thread = await engine.start_conversation(channel="web", topic="chat")
    reply = await engine.send_message(conversation.conversation_id, "/issue app#7 please fix the crash")

    assert len(worker.calls) == 3
    assert worker.calls[1]["session_handle"] == "sess-1"
    assert worker.calls[1]["messages"] == [
        WorkerMessage(role="user", content=followup_instruction(reply.task, ProgressState.CODE_CHANGED, "main"))
    ]
    assert reply.outcome.text == "Notification sent"

    task = await engine.task_status(conversation.conversation_id)
    assert task.progress_state == ProgressState.NOTIFIED

    enforcer_events = await engine.store.list_events(thread.thread_id, message_kind=MessageKind.ENFORCER)
    assert [e.metadata["progress_state"] for e in enforcer_events] == ["code_changed", "branch_pushed"]
    assert all(e.channel == EventChannel.SYSTEM for e in enforcer_events)

    refreshed = await engine.store.get_conversation(conversation.conversation_id)
    assert "app#7" in refreshed.tags
    assert refreshed.repo == "app"
    resolution = await engine.lookup_ref("app", RefKind.ISSUE, 7)
    assert resolution.conversation.conversation_id == conversation.conversation_id
