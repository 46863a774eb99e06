"""Task completion enforcer.

The Worker sometimes narrates what it will do instead of doing it. The
enforcer observes the Worker's checkout directly and pushes the task
forward through not_started -> code_changed -> branch_pushed -> notified
with a bounded number of corrective follow-up turns.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.config import settings
from threadgate.db.repositories import TaskContextRepository
from threadgate.engine.errors import CommandError, TaskNotFound
from threadgate.models import FollowUp, ProgressState, TaskContext, WorkspaceSnapshot
from threadgate.utils import shell
from threadgate.utils.time import utc_now

logger = logging.getLogger(__name__)

FOLLOWUP_PREFIX = "[ENFORCER] "


class WorkspaceInspector(ABC):
    @abstractmethod
    async def snapshot(self, repo: str) -> WorkspaceSnapshot:
        """Observe the checkout for a repo. Never raises."""


class GitWorkspaceInspector(WorkspaceInspector):
    """Reads version-control state with git under workspace_root/<repo>."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.workspace_root)

    def path_for(self, repo: str) -> Path:
        return self.root / repo

    async def snapshot(self, repo: str) -> WorkspaceSnapshot:
        path = self.path_for(repo)
        if not (path / ".git").exists():
            return WorkspaceSnapshot(exists=False)

        try:
            branch = (await self._git(path, "rev-parse", "--abbrev-ref", "HEAD")).strip()
            commit_hash = (await self._git(path, "rev-parse", "HEAD")).strip()
            status = await self._git(path, "status", "--porcelain")
        except CommandError as e:
            return WorkspaceSnapshot(exists=True, error=str(e))

        dirty = [line[3:] for line in status.splitlines() if line.strip()]
        has_upstream = await self._has_upstream(path, branch)
        return WorkspaceSnapshot(
            exists=True,
            branch=branch,
            commit_hash=commit_hash,
            dirty_files=dirty,
            has_upstream=has_upstream,
        )

    async def _has_upstream(self, path: Path, branch: str) -> bool:
        if not branch or branch == "HEAD":
            return False
        try:
            await self._git(path, "rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}")
            return True
        except CommandError:
            return False

    async def _git(self, path: Path, *args: str) -> str:
        return await shell.run(["git", "-C", str(path), *args])


def detect_progress(
    baseline: WorkspaceSnapshot,
    current: WorkspaceSnapshot,
    default_branches: Iterable[str],
) -> ProgressState:
    """Highest state the checkout demonstrates relative to the baseline."""
    hash_moved = (
        current.commit_hash is not None
        and baseline.commit_hash is not None
        and current.commit_hash != baseline.commit_hash
    )
    code_changed = hash_moved or current.dirty_count > baseline.dirty_count
    if not code_changed:
        return ProgressState.NOT_STARTED

    pushed = (
        current.branch is not None
        and current.branch not in set(default_branches)
        and current.has_upstream
    )
    return ProgressState.BRANCH_PUSHED if pushed else ProgressState.CODE_CHANGED


def followup_instruction(task: TaskContext, state: ProgressState, branch: Optional[str]) -> str:
    ref = f"{task.repo}#{task.issue_number}"
    if state == ProgressState.CODE_CHANGED:
        return (
            f"{FOLLOWUP_PREFIX}You made code changes for {ref}. Complete the task by:\n"
            "1. Committing and pushing to a feature branch\n"
            "2. Opening a PR\n"
            "3. Sending the completion notification"
        )
    return (
        f"{FOLLOWUP_PREFIX}You pushed branch {branch or task.branch} for {ref}. "
        "Complete the task by sending the completion notification with the PR link."
    )


# Returns True when the follow-up turn completed
FollowUpInvoker = Callable[[FollowUp], Awaitable[bool]]


class TaskEnforcer:
    """Supervises the TaskContext attached to a conversation."""

    def __init__(
        self,
        session: AsyncSession,
        inspector: WorkspaceInspector,
        max_cycles: Optional[int] = None,
        default_branches: Optional[list[str]] = None,
    ):
        self.tasks = TaskContextRepository(session)
        self.inspector = inspector
        self.max_cycles = settings.enforcer_max_cycles if max_cycles is None else max_cycles
        self.default_branches = default_branches or settings.default_branches

    async def start_task(self, conversation_id: UUID, repo: str, issue_number: int) -> TaskContext:
        """Begin tracking with a baseline snapshot. Restarting resets progress."""
        snapshot = await self.inspector.snapshot(repo)
        if snapshot.error:
            logger.warning(f"Baseline snapshot for {repo} failed: {snapshot.error}")
        task = await self.tasks.upsert(conversation_id, repo, issue_number, snapshot)
        logger.info(
            f"Tracking {repo}#{issue_number} for conversation {conversation_id}"
            f" (branch={snapshot.branch}, hash={(snapshot.commit_hash or '')[:8]})"
        )
        return task

    async def get_task(self, conversation_id: UUID) -> TaskContext:
        """Current incomplete task, else the most recently started one."""
        task = await self.tasks.get_current(conversation_id)
        if task is None:
            history = await self.tasks.list_for_conversation(conversation_id)
            if not history:
                raise TaskNotFound(conversation_id)
            task = history[0]
        return task

    async def check(self, conversation_id: UUID) -> Optional[FollowUp]:
        """
        Observe progress for the conversation's current task.

        Advances progress_state (never backwards) and returns a follow-up
        only the first time a state needing one is reached.
        """
        task = await self.tasks.get_current(conversation_id)
        if task is None or task.is_complete():
            return None

        current = await self.inspector.snapshot(task.repo)
        if not current.exists or current.error:
            logger.warning(
                f"Cannot observe {task.repo} for {conversation_id}: {current.error or 'missing checkout'}"
            )
            return None

        detected = detect_progress(task.workspace_snapshot, current, self.default_branches)
        state = detected if detected.rank > task.progress_state.rank else task.progress_state

        if state != task.progress_state:
            logger.info(
                f"Task {task.repo}#{task.issue_number}: "
                f"{task.progress_state.value} -> {state.value}"
            )
            task = await self.tasks.update(
                task.task_context_id,
                progress_state=state,
                branch=current.branch or task.branch,
            )

        if state not in (ProgressState.CODE_CHANGED, ProgressState.BRANCH_PUSHED):
            return None
        if task.followup_state == state:
            return None

        await self.tasks.update(task.task_context_id, followup_state=state)
        return FollowUp(
            task_context_id=task.task_context_id,
            state=state,
            instruction=followup_instruction(task, state, current.branch),
        )

    async def mark_notified(
        self,
        conversation_id: UUID,
        repo: Optional[str] = None,
        issue_number: Optional[int] = None,
    ) -> TaskContext:
        """
        Mark the task complete after the completion message went out.

        Raises:
            TaskNotFound: no matching task
        """
        if repo is not None and issue_number is not None:
            task = await self.tasks.get(conversation_id, repo, issue_number)
            if task is None:
                raise TaskNotFound(conversation_id)
        else:
            task = await self.get_task(conversation_id)

        if task.is_complete():
            return task
        now = utc_now()
        updated = await self.tasks.update(
            task.task_context_id,
            progress_state=ProgressState.NOTIFIED,
            completed_at=now,
        )
        logger.info(f"Task {task.repo}#{task.issue_number} marked notified")
        return updated

    async def enforce(self, conversation_id: UUID, invoke: FollowUpInvoker) -> list[FollowUp]:
        """
        Bounded check -> follow-up -> re-check loop.

        Runs at most max_cycles follow-up turns. A completed notify follow-up
        marks the task notified.
        """
        issued: list[FollowUp] = []
        for _ in range(self.max_cycles):
            followup = await self.check(conversation_id)
            if followup is None:
                break
            issued.append(followup)

            if not await invoke(followup):
                break
            if followup.state == ProgressState.BRANCH_PUSHED:
                await self.mark_notified(conversation_id)
                break
        return issued
