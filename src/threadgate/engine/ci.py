"""CI remediation supervisor.

Completed CI runs on the bot's own pull requests drive the Worker to fix
the failure, with a bounded number of attempts per PR. A success resets
the budget.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from threadgate.config import settings
from threadgate.engine.errors import (
    HostingError,
    MaxRetriesExceeded,
    ThreadGateError,
    ThreadNotFound,
    WorkerInvocationFailed,
)
from threadgate.engine.notifications import NotificationService
from threadgate.engine.resolver import ThreadResolver
from threadgate.engine.store import ThreadStore
from threadgate.engine.turns import TurnRunner
from threadgate.integrations.hosting import HostingClient, JobLog, PullRequestInfo
from threadgate.models import (
    CIAction,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    RefKind,
    Resolution,
)
from threadgate.webhooks.normalizer import NormalizedEvent, WebhookRef
from threadgate.webhooks.payloads import WorkflowJobEvent, WorkflowRunEvent

logger = logging.getLogger(__name__)

CI_ACTOR = "ci"


# ============================================================================
# Attempt tracking
# ============================================================================


@dataclass
class FixAttemptCounter:
    count: int = 0
    gave_up_notified: bool = False


class FixAttemptTracker:
    """
    Fix attempts per (owner, repo, pr_number).

    Lives for the process; a restart forgets the counts. Only PRs with a
    non-zero count hold an entry.
    """

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_fix_attempts
        self._counters: dict[tuple[str, str, int], FixAttemptCounter] = {}

    @staticmethod
    def key(owner: str, repo: str, pr_number: int) -> tuple[str, str, int]:
        return (owner, repo, pr_number)

    def get(self, owner: str, repo: str, pr_number: int) -> FixAttemptCounter:
        return self._counters.setdefault(self.key(owner, repo, pr_number), FixAttemptCounter())

    def attempts(self, owner: str, repo: str, pr_number: int) -> int:
        counter = self._counters.get(self.key(owner, repo, pr_number))
        return counter.count if counter else 0

    def can_attempt(self, owner: str, repo: str, pr_number: int) -> bool:
        return self.attempts(owner, repo, pr_number) < self.max_attempts

    def track(self, owner: str, repo: str, pr_number: int) -> int:
        """Count an attempt; returns its 1-based number."""
        counter = self.get(owner, repo, pr_number)
        counter.count += 1
        return counter.count

    def reset(self, owner: str, repo: str, pr_number: int) -> None:
        self._counters.pop(self.key(owner, repo, pr_number), None)

    def __len__(self) -> int:
        return len(self._counters)


# ============================================================================
# Run info and failure message
# ============================================================================


@dataclass
class CIRunInfo:
    run_id: int
    owner: str
    repo: str
    branch: str
    head_sha: str
    workflow_name: str
    conclusion: str
    pr_number: Optional[int] = None
    html_url: Optional[str] = None


def parse_ci_event(event: NormalizedEvent) -> Optional[CIRunInfo]:
    """Run info for a completed workflow_run/workflow_job, else None."""
    variant = event.event
    if getattr(variant, "action", None) != "completed":
        return None

    if isinstance(variant, WorkflowRunEvent):
        run = variant.workflow_run
        return CIRunInfo(
            run_id=run.id,
            owner=variant.owner,
            repo=variant.repo,
            branch=run.head_branch or "",
            head_sha=run.head_sha or "",
            workflow_name=run.name or run.display_title or "",
            conclusion=run.conclusion or "",
            pr_number=run.pull_requests[0].number if run.pull_requests else None,
            html_url=run.html_url,
        )

    if isinstance(variant, WorkflowJobEvent):
        job = variant.workflow_job
        return CIRunInfo(
            run_id=job.run_id,
            owner=variant.owner,
            repo=variant.repo,
            branch=job.head_branch or "",
            head_sha=job.head_sha or "",
            workflow_name=job.workflow_name or job.name or "",
            conclusion=job.conclusion or "",
            html_url=job.html_url,
        )

    return None


def build_ci_failure_message(
    run: CIRunInfo,
    logs: list[JobLog],
    attempt: int,
    max_attempts: int,
    tail_chars: Optional[int] = None,
) -> str:
    tail = settings.ci_log_tail_chars if tail_chars is None else tail_chars

    sections = []
    for job in logs:
        text = job.log
        if len(text) > tail:
            text = f"{text[-tail:]}\n... (truncated, showing last {tail} chars)"
        sections.append(f"### Job: {job.job_name}\n```\n{text}\n```")
    log_section = "\n\n".join(sections) or "_No logs could be fetched. Check the CI run manually._"

    lines = [
        f"[CI Failure: auto-fix attempt {attempt}/{max_attempts}]",
        "",
        f"**Workflow:** {run.workflow_name}",
        f"**Repository:** {run.owner}/{run.repo}",
        f"**Branch:** {run.branch}",
        f"**Commit:** {run.head_sha[:8]}",
        f"**PR:** #{run.pr_number}" if run.pr_number else "",
        f"**Run URL:** {run.html_url}" if run.html_url else "",
        "",
        "## CI Logs",
        "",
        log_section,
        "",
        "## Instructions",
        "",
        "The CI pipeline failed on your PR. You should:",
        "1. Analyze the log output above to understand what failed",
        "2. Check out the branch and investigate the relevant source/test files",
        "3. Fix the issue and push the fix to the same branch",
        "4. The CI will automatically re-run after your push",
        "",
    ]
    if attempt >= max_attempts:
        lines.append(
            "**WARNING: This is the last auto-fix attempt. "
            "If this fails, the operator will be notified.**"
        )
    return "\n".join(line for line in lines if line)


# ============================================================================
# Supervisor
# ============================================================================


@dataclass
class CIOutcome:
    action: CIAction
    conclusion: Optional[str] = None
    pr_number: Optional[int] = None
    conversation_id: Optional[str] = None
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)


class CIRemediationSupervisor:
    """Decides what a completed CI run means and drives the Worker on failure."""

    def __init__(
        self,
        store: ThreadStore,
        resolver: ThreadResolver,
        hosting: HostingClient,
        tracker: FixAttemptTracker,
        turns: TurnRunner,
        notifications: NotificationService,
        bot_login: Optional[str] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.hosting = hosting
        self.tracker = tracker
        self.turns = turns
        self.notifications = notifications
        self.bot_login = bot_login or settings.bot_login

    async def handle(self, event: NormalizedEvent) -> CIOutcome:
        run = parse_ci_event(event)
        if run is None:
            return CIOutcome(action=CIAction.IGNORED, reason="not a completed run")

        logger.info(
            f"CI {event.event_kind}: {run.workflow_name} on {run.owner}/{run.repo}@{run.branch}"
            f" -> {run.conclusion}"
        )

        if run.conclusion == "success":
            return await self._handle_success(run)
        if run.conclusion != "failure":
            return CIOutcome(action=CIAction.IGNORED, conclusion=run.conclusion)
        return await self._handle_failure(run)

    async def _handle_success(self, run: CIRunInfo) -> CIOutcome:
        pr_number = run.pr_number
        if pr_number is None:
            pr = await self._find_pull_request(run)
            pr_number = pr.number if pr else None
        if pr_number is not None:
            self.tracker.reset(run.owner, run.repo, pr_number)
            logger.info(f"CI passed, reset fix counter for {run.repo} PR #{pr_number}")
        return CIOutcome(action=CIAction.SUCCESS_RESET, conclusion="success", pr_number=pr_number)

    async def _handle_failure(self, run: CIRunInfo) -> CIOutcome:
        pr = await self._find_pull_request(run)
        if pr is None:
            logger.info(f"No PR for branch {run.branch}, ignoring CI failure")
            return CIOutcome(action=CIAction.IGNORED, conclusion="failure", reason="no pull request")
        run.pr_number = pr.number

        if pr.author != self.bot_login:
            logger.info(f"PR #{pr.number} authored by {pr.author}, skipping auto-fix")
            return CIOutcome(action=CIAction.NOT_OWN_PR, conclusion="failure", pr_number=pr.number)

        if not self.tracker.can_attempt(run.owner, run.repo, pr.number):
            self._give_up(run, pr)
            return CIOutcome(action=CIAction.MAX_RETRIES, conclusion="failure", pr_number=pr.number)

        attempt = self.tracker.track(run.owner, run.repo, pr.number)
        logger.info(
            f"CI failure on own PR #{pr.number}, auto-fix attempt {attempt}/{self.tracker.max_attempts}"
        )

        logs = await self._fetch_logs(run)
        message = build_ci_failure_message(run, logs, attempt, self.tracker.max_attempts)

        conversation_id: Optional[UUID] = None
        thread_id: Optional[UUID] = None
        try:
            resolution = await self._pull_request_thread(run, pr)
            conversation_id = resolution.conversation.conversation_id
            thread = resolution.thread or await self.store.ensure_thread(resolution.conversation)
            thread_id = thread.thread_id

            await self.store.append_event(
                thread_id=thread_id,
                channel=EventChannel.WEBHOOK,
                direction=EventDirection.INBOUND,
                actor=CI_ACTOR,
                content=message,
                message_kind=MessageKind.CI_FAILURE,
                metadata={
                    "run_id": run.run_id,
                    "conclusion": run.conclusion,
                    "workflow": run.workflow_name,
                    "attempt": attempt,
                },
            )
            await self.turns.run_turn(
                conversation_id,
                thread_id,
                channel=EventChannel.WEBHOOK,
                triggered_by="ci_failure",
            )
        except Exception as e:
            reason = e.message if isinstance(e, ThreadGateError) else str(e)
            logger.error(
                f"CI auto-fix for PR #{pr.number} failed: {reason}",
                exc_info=not isinstance(e, WorkerInvocationFailed),
            )
            if not await self._record_failure(thread_id, reason):
                conversation_id = None
            self.notifications.notify(
                "\n".join(
                    line for line in (
                        f"*CI auto-fix error* on {run.owner}/{run.repo}#{pr.number}",
                        f"Error: {reason}",
                        f"Run: {run.html_url}" if run.html_url else "",
                    ) if line
                ),
                job="ci:error",
            )
            return CIOutcome(
                action=CIAction.WORKER_FAILED,
                conclusion="failure",
                pr_number=pr.number,
                conversation_id=str(conversation_id) if conversation_id else None,
                reason=reason,
            )

        return CIOutcome(
            action=CIAction.WORKER_INVOKED,
            conclusion="failure",
            pr_number=pr.number,
            conversation_id=str(conversation_id),
            details={"attempt": attempt},
        )

    async def _pull_request_thread(self, run: CIRunInfo, pr: PullRequestInfo) -> Resolution:
        refs = [WebhookRef(run.repo, RefKind.PR, pr.number, pr.html_url)]
        resolution = await self.resolver.resolve(refs, [f"{run.repo}#{pr.number}", f"pr#{pr.number}"])
        if resolution is not None:
            return resolution
        return await self.resolver.create_for_refs(
            refs=refs,
            tags=[f"{run.repo}#{pr.number}", f"pr#{pr.number}", run.repo],
            topic=f"CI Fix: PR #{pr.number} in {run.repo}",
            repo=run.repo,
            status=ConversationStatus.ACTIVE,
        )

    async def _record_failure(self, thread_id: Optional[UUID], reason: str) -> bool:
        """
        Roll back the failed unit and leave an error event on the thread.

        Returns False when the thread did not survive the rollback.
        """
        await self.store.session.rollback()
        if thread_id is None:
            return False
        try:
            await self.store.get_thread(thread_id)
            await self.store.append_event(
                thread_id=thread_id,
                channel=EventChannel.SYSTEM,
                direction=EventDirection.OUTBOUND,
                actor=CI_ACTOR,
                content=reason,
                message_kind=MessageKind.ERROR,
            )
            await self.store.session.commit()
        except ThreadNotFound:
            return False
        except ThreadGateError as e:
            logger.warning(f"Could not record CI failure on thread {thread_id}: {e.message}", exc_info=True)
            await self.store.session.rollback()
            return False
        return True

    def _give_up(self, run: CIRunInfo, pr: PullRequestInfo) -> None:
        counter = self.tracker.get(run.owner, run.repo, pr.number)
        error = MaxRetriesExceeded(f"{run.owner}/{run.repo}#{pr.number}", counter.count)
        logger.warning(error.message)
        if counter.gave_up_notified:
            return
        counter.gave_up_notified = True

        lines = [
            f"*CI auto-fix gave up* on {run.owner}/{run.repo}",
            "",
            f"PR: #{pr.number} {pr.title}".rstrip(),
            f"Workflow: {run.workflow_name}",
            f"Branch: {run.branch}",
        ]
        if run.html_url:
            lines.append(f"Run: {run.html_url}")
        lines += [
            "",
            f"Reached max fix attempts ({self.tracker.max_attempts}). Manual intervention needed.",
        ]
        self.notifications.notify("\n".join(lines), job="ci:gave-up")

    async def _find_pull_request(self, run: CIRunInfo) -> Optional[PullRequestInfo]:
        try:
            if run.pr_number is not None:
                return await self.hosting.get_pull_request(run.owner, run.repo, run.pr_number)
            if not run.branch:
                return None
            return await self.hosting.find_pull_request_for_branch(run.owner, run.repo, run.branch)
        except HostingError as e:
            logger.warning(f"PR lookup for {run.repo}@{run.branch} failed: {e.message}")
            return None

    async def _fetch_logs(self, run: CIRunInfo) -> list[JobLog]:
        try:
            return await self.hosting.fetch_run_logs(run.owner, run.repo, run.run_id)
        except HostingError as e:
            logger.warning(f"Could not fetch logs for run {run.run_id}: {e.message}")
            return []
