"""Webhook normalization: raw delivery -> typed event, refs and tags."""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from threadgate.engine.errors import PayloadUnparseable
from threadgate.models import RefKind
from threadgate.webhooks.payloads import (
    EVENT_TYPES,
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


@dataclass(frozen=True)
class WebhookRef:
    """Structured pointer to an external item."""

    repo: str
    ref_kind: RefKind
    number: int
    url: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.repo, self.ref_kind.value, self.number)


@dataclass(frozen=True)
class NormalizedEvent:
    """A delivery parsed once at the ingress boundary."""

    event_kind: str
    event: WebhookEvent
    refs: tuple[WebhookRef, ...] = ()
    tags: tuple[str, ...] = ()

    @property
    def action(self) -> Optional[str]:
        return self.event.action

    @property
    def is_ignorable(self) -> bool:
        return isinstance(self.event, IgnorableEvent)

    @property
    def repo(self) -> Optional[str]:
        return getattr(self.event, "repo", None)

    @property
    def is_ci(self) -> bool:
        return isinstance(self.event, (WorkflowRunEvent, WorkflowJobEvent))

    @property
    def is_creation(self) -> bool:
        """Issue or PR "opened" events."""
        return isinstance(self.event, (IssueEvent, PullRequestEvent)) and self.action == "opened"


def normalize(event_kind: str, payload: Any) -> NormalizedEvent:
    """
    Parse a delivery into a typed variant plus refs and tags.

    Unknown event kinds become IgnorableEvent with no refs or tags.

    Raises:
        PayloadUnparseable: payload is not an object or does not match its kind
    """
    if not isinstance(payload, dict):
        raise PayloadUnparseable("payload must be a JSON object")

    model = EVENT_TYPES.get(event_kind)
    if model is None:
        action = payload.get("action")
        return NormalizedEvent(
            event_kind=event_kind,
            event=IgnorableEvent(
                event_kind=event_kind,
                action=action if isinstance(action, str) else None,
            ),
        )

    try:
        event = model.model_validate(payload)
    except ValidationError as e:
        raise PayloadUnparseable(f"{event_kind}: {e.error_count()} validation errors") from e

    refs = extract_refs(event)
    return NormalizedEvent(
        event_kind=event_kind,
        event=event,
        refs=tuple(refs),
        tags=tuple(extract_tags(event, refs)),
    )


def extract_refs(event: WebhookEvent) -> list[WebhookRef]:
    """Refs per event kind, in lookup order."""
    if isinstance(event, IssueEvent):
        return [WebhookRef(event.repo, RefKind.ISSUE, event.issue.number, event.issue.html_url)]

    if isinstance(event, IssueCommentEvent):
        kind = RefKind.PR if event.on_pull_request else RefKind.ISSUE
        return [WebhookRef(event.repo, kind, event.issue.number, event.issue.html_url)]

    if isinstance(event, PullRequestEvent):
        return [
            WebhookRef(event.repo, RefKind.PR, event.pr_number, event.pull_request.html_url)
        ]

    if isinstance(event, ReviewCommentEvent):
        return [
            WebhookRef(
                event.repo,
                RefKind.PR,
                event.pull_request.number,
                event.pull_request.html_url,
            )
        ]

    if isinstance(event, WorkflowRunEvent):
        prs = event.workflow_run.pull_requests
        if prs:
            return [WebhookRef(event.repo, RefKind.PR, prs[0].number)]
        return []

    if isinstance(event, (PushEvent, WorkflowJobEvent, IgnorableEvent)):
        return []

    raise TypeError(f"Unhandled event variant: {type(event).__name__}")


def extract_tags(event: WebhookEvent, refs: Optional[list[WebhookRef]] = None) -> list[str]:
    """Legacy tags, most specific first: repo#N, pr#N, repo."""
    if isinstance(event, IgnorableEvent):
        return []

    refs = extract_refs(event) if refs is None else refs
    tags: list[str] = []
    for ref in refs:
        tags.append(f"{ref.repo}#{ref.number}")
        if ref.ref_kind == RefKind.PR:
            tags.append(f"pr#{ref.number}")
    tags.append(event.repo)

    # Stable de-duplication
    return list(dict.fromkeys(tags))


def sort_tags(tags: list[str] | tuple[str, ...]) -> list[str]:
    """Specific tags (containing '#') before generic repo tags."""
    return sorted(tags, key=lambda t: 0 if "#" in t else 1)
