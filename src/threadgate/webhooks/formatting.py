"""Human-readable renderings of webhook events."""

import re
from typing import Optional

from threadgate.webhooks.payloads import (
    IgnorableEvent,
    IssueCommentEvent,
    IssueEvent,
    PullRequestEvent,
    PushEvent,
    ReviewCommentEvent,
    WebhookEvent,
    WorkflowJobEvent,
    WorkflowRunEvent,
)

PREVIEW_CHARS = 200
SUMMARY_BODY_CHARS = 500

_MARKDOWN_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!])")
_MARKDOWN_STRIP = re.compile(r"[*_`\[\]()]")


def mention_pattern(bot_login: str) -> re.Pattern:
    return re.compile(rf"@{re.escape(bot_login)}\b", re.IGNORECASE)


def mentions_bot(text: Optional[str], bot_login: str) -> bool:
    return bool(text) and bool(mention_pattern(bot_login).search(text))


def strip_mention(text: str, bot_login: str) -> str:
    return mention_pattern(bot_login).sub("", text).strip()


def escape_markdown(text: str) -> str:
    """Escape Telegram Markdown special characters."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def strip_markdown(text: str) -> str:
    """Best-effort plain-text rendering of a markdown message."""
    return _MARKDOWN_STRIP.sub("", text)


def _preview(body: str) -> str:
    preview = body[:PREVIEW_CHARS]
    return preview + ("..." if len(body) >= PREVIEW_CHARS else "")


def _first_line(message: str) -> str:
    return message.split("\n", 1)[0]


# ============================================================================
# Thread system messages
# ============================================================================


def format_event_message(event: WebhookEvent) -> str:
    """System message stored on a thread for a webhook event."""
    if isinstance(event, IssueEvent):
        issue = event.issue
        author = issue.user.login if issue.user else ""
        return (
            f"Issue #{issue.number} {event.action}: \"{issue.title}\" by @{author}\n"
            f"{issue.html_url or ''}"
        ).rstrip()

    if isinstance(event, IssueCommentEvent):
        author = event.comment.user.login if event.comment.user else ""
        noun = "PR" if event.on_pull_request else "issue"
        return (
            f"@{author} commented on {noun} #{event.issue.number}:\n"
            f"\"{_preview(event.comment.body)}\"\n"
            f"{event.comment.html_url or ''}"
        ).rstrip()

    if isinstance(event, PullRequestEvent):
        pr = event.pull_request
        status = "merged" if pr.merged else event.action
        author = pr.user.login if pr.user else ""
        head = pr.head.ref if pr.head and pr.head.ref else ""
        base = pr.base.ref if pr.base and pr.base.ref else ""
        return (
            f"PR #{event.pr_number} {status}: \"{pr.title}\" by @{author}\n"
            f"{head} -> {base}\n"
            f"{pr.html_url or ''}"
        ).rstrip()

    if isinstance(event, ReviewCommentEvent):
        author = event.comment.user.login if event.comment.user else ""
        location = f" ({event.comment.path}:{event.comment.line})" if event.comment.path else ""
        return (
            f"@{author} commented on PR #{event.pull_request.number}{location}:\n"
            f"\"{_preview(event.comment.body)}\"\n"
            f"{event.comment.html_url or ''}"
        ).rstrip()

    if isinstance(event, PushEvent):
        pusher = event.pusher.login if event.pusher else event.sender_login
        lines = [f"@{pusher} pushed {len(event.commits)} commit(s) to {event.ref}:"]
        lines += [f"  - {_first_line(c.message)}" for c in event.commits[:3]]
        if len(event.commits) > 3:
            lines.append(f"  ... and {len(event.commits) - 3} more")
        return "\n".join(lines)

    if isinstance(event, WorkflowRunEvent):
        run = event.workflow_run
        return (
            f"Workflow \"{run.name}\" {run.status or event.action}"
            f" ({run.conclusion or 'pending'}) on {run.head_branch}\n{run.html_url or ''}"
        ).rstrip()

    if isinstance(event, WorkflowJobEvent):
        job = event.workflow_job
        return (
            f"Job \"{job.name}\" of \"{job.workflow_name}\" {job.status or event.action}"
            f" ({job.conclusion or 'pending'})\n{job.html_url or ''}"
        ).rstrip()

    if isinstance(event, IgnorableEvent):
        return f"Ignored event {event.event_kind}"

    raise TypeError(f"Unhandled event variant: {type(event).__name__}")


def summarize_event(event: WebhookEvent) -> Optional[str]:
    """One-paragraph summary for events no thread claims."""
    if isinstance(event, PushEvent):
        pusher = event.pusher.login if event.pusher else event.sender_login
        lines = [
            f"[Push] {pusher} pushed {len(event.commits)} commits to "
            f"{event.repository.full_name or event.repo}:{event.ref}"
        ]
        lines += [f"  - {_first_line(c.message)}" for c in event.commits]
        return "\n".join(lines)

    if isinstance(event, PullRequestEvent):
        pr = event.pull_request
        head = pr.head.ref if pr.head else None
        base = pr.base.ref if pr.base else None
        return (
            f"[PR] {event.action}: #{event.pr_number} \"{pr.title}\" in "
            f"{event.repository.full_name or event.repo}\n"
            f"By {pr.user.login if pr.user else ''} | {head} -> {base}"
        )

    if isinstance(event, IssueEvent):
        text = (
            f"[Issue] {event.action}: #{event.issue.number} \"{event.issue.title}\" in "
            f"{event.repository.full_name or event.repo}"
        )
        if event.issue.body:
            text += f"\nBody: {event.issue.body[:SUMMARY_BODY_CHARS]}"
        return text

    if isinstance(event, IssueCommentEvent):
        author = event.comment.user.login if event.comment.user else ""
        return (
            f"[Comment] {event.action} on #{event.issue.number} in "
            f"{event.repository.full_name or event.repo}\n"
            f"By {author}: {event.comment.body[:SUMMARY_BODY_CHARS]}"
        )

    return None


# ============================================================================
# Chat notifications
# ============================================================================


def should_notify(event: WebhookEvent, bot_login: str) -> bool:
    """Only significant, actionable events not caused by the bot itself."""
    if isinstance(event, IgnorableEvent):
        return False

    sender = event.sender_login
    if not sender and isinstance(event, PushEvent) and event.pusher:
        sender = event.pusher.login
    if sender == bot_login:
        return False

    if isinstance(event, IssueEvent):
        return event.action in ("opened", "closed")
    if isinstance(event, PullRequestEvent):
        return event.action in ("opened", "closed") or event.pull_request.merged
    if isinstance(event, IssueCommentEvent):
        return event.action == "created" and mentions_bot(event.comment.body, bot_login)
    if isinstance(event, PushEvent):
        return event.ref in ("refs/heads/main", "refs/heads/master")
    return False


def format_notification(event: WebhookEvent, bot_login: str) -> str:
    """Concise Telegram Markdown rendering of a webhook event."""
    if isinstance(event, IgnorableEvent):
        return f"*Webhook* `{event.event_kind}`"

    repo = event.repository.full_name or event.repo

    if isinstance(event, IssueEvent):
        issue = event.issue
        link = f"[#{issue.number}: {escape_markdown(issue.title)}]({issue.html_url})"
        if event.action == "opened":
            author = issue.user.login if issue.user else ""
            return f"*New issue* in `{repo}`\n{link}\nby @{author}"
        if event.action == "closed":
            return f"*Issue closed* in `{repo}`\n{link}"

    if isinstance(event, PullRequestEvent):
        pr = event.pull_request
        link = f"[#{event.pr_number}: {escape_markdown(pr.title)}]({pr.html_url})"
        branches = f"`{pr.head.ref if pr.head else ''}` -> `{pr.base.ref if pr.base else ''}`"
        if pr.merged:
            return f"*PR merged* in `{repo}`\n{link}\n{branches}"
        if event.action == "opened":
            author = pr.user.login if pr.user else ""
            return f"*New PR* in `{repo}`\n{link}\n{branches}\nby @{author}"
        if event.action == "closed":
            return f"*PR closed* in `{repo}`\n{link}"

    if isinstance(event, IssueCommentEvent):
        author = event.comment.user.login if event.comment.user else ""
        return (
            f"*@{bot_login} mentioned* on issue #{event.issue.number} in `{repo}`\n"
            f"by @{author}\n{event.comment.html_url or ''}"
        ).rstrip()

    if isinstance(event, PushEvent):
        pusher = event.pusher.login if event.pusher else event.sender_login
        summary = "\n".join(f"- {escape_markdown(_first_line(c.message))}" for c in event.commits[:3])
        more = f"\n_...and {len(event.commits) - 3} more_" if len(event.commits) > 3 else ""
        return (
            f"*Push to `{event.branch}`* in `{repo}`\n"
            f"{len(event.commits)} commit(s) by @{pusher}\n{summary}{more}"
        )

    return f"*Webhook* `{event.kind}` in `{repo}`"
