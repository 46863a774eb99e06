"""Typed webhook payload variants.

Each supported event kind parses into exactly one variant. Fields the
platform may omit default to None so partial deliveries still validate;
anything not listed is ignored.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class User(_Payload):
    login: str = ""


class Owner(_Payload):
    login: Optional[str] = None
    username: Optional[str] = None


class Repository(_Payload):
    name: str
    full_name: Optional[str] = None
    html_url: Optional[str] = None
    default_branch: Optional[str] = None
    owner: Optional[Owner] = None

    @property
    def owner_login(self) -> str:
        if self.owner and (self.owner.login or self.owner.username):
            return self.owner.login or self.owner.username or ""
        if self.full_name and "/" in self.full_name:
            return self.full_name.split("/", 1)[0]
        return ""


class Issue(_Payload):
    number: int
    title: str = ""
    body: Optional[str] = None
    state: Optional[str] = None
    html_url: Optional[str] = None
    user: Optional[User] = None
    # Present (non-null) when the issue is really a pull request
    pull_request: Optional[dict[str, Any]] = None

    @property
    def is_pull_request(self) -> bool:
        return bool(self.pull_request)


class Comment(_Payload):
    id: Optional[int] = None
    body: str = ""
    html_url: Optional[str] = None
    user: Optional[User] = None
    path: Optional[str] = None
    line: Optional[int] = None


class BranchInfo(_Payload):
    ref: Optional[str] = None
    sha: Optional[str] = None


class PullRequest(_Payload):
    number: int
    title: str = ""
    body: Optional[str] = None
    state: Optional[str] = None
    html_url: Optional[str] = None
    user: Optional[User] = None
    merged: bool = False
    head: Optional[BranchInfo] = None
    base: Optional[BranchInfo] = None


class Commit(_Payload):
    id: str
    message: str = ""
    url: Optional[str] = None
    author: Optional[dict[str, Any]] = None


class PullRequestNumber(_Payload):
    number: int


class WorkflowRun(_Payload):
    id: int
    name: Optional[str] = None
    display_title: Optional[str] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    html_url: Optional[str] = None
    pull_requests: list[PullRequestNumber] = Field(default_factory=list)


class WorkflowJob(_Payload):
    id: int
    run_id: int
    name: Optional[str] = None
    workflow_name: Optional[str] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    html_url: Optional[str] = None


# ============================================================================
# Event variants
# ============================================================================


class _Event(_Payload):
    action: Optional[str] = None
    repository: Repository
    sender: Optional[User] = None

    @property
    def repo(self) -> str:
        return self.repository.name

    @property
    def owner(self) -> str:
        return self.repository.owner_login

    @property
    def sender_login(self) -> str:
        return self.sender.login if self.sender else ""


class IssueEvent(_Event):
    kind: Literal["issues"] = "issues"
    issue: Issue


class IssueCommentEvent(_Event):
    kind: Literal["issue_comment"] = "issue_comment"
    issue: Issue
    comment: Comment
    # Some platforms flag PR comments at the top level as well
    is_pull: bool = False

    @property
    def on_pull_request(self) -> bool:
        return self.issue.is_pull_request or self.is_pull


class PullRequestEvent(_Event):
    kind: Literal["pull_request"] = "pull_request"
    number: Optional[int] = None
    pull_request: PullRequest

    @property
    def pr_number(self) -> int:
        return self.number if self.number is not None else self.pull_request.number


class ReviewCommentEvent(_Event):
    kind: Literal["pull_request_review_comment"] = "pull_request_review_comment"
    pull_request: PullRequest
    comment: Comment


class PushEvent(_Event):
    kind: Literal["push"] = "push"
    ref: str = ""
    before: Optional[str] = None
    after: Optional[str] = None
    commits: list[Commit] = Field(default_factory=list)
    pusher: Optional[User] = None

    @property
    def branch(self) -> str:
        return self.ref.removeprefix("refs/heads/")


class WorkflowRunEvent(_Event):
    kind: Literal["workflow_run"] = "workflow_run"
    workflow_run: WorkflowRun


class WorkflowJobEvent(_Event):
    kind: Literal["workflow_job"] = "workflow_job"
    workflow_job: WorkflowJob


class IgnorableEvent(BaseModel):
    """Event kind we do not route."""

    kind: Literal["ignorable"] = "ignorable"
    event_kind: str
    action: Optional[str] = None


WebhookEvent = Union[
    IssueEvent,
    IssueCommentEvent,
    PullRequestEvent,
    ReviewCommentEvent,
    PushEvent,
    WorkflowRunEvent,
    WorkflowJobEvent,
    IgnorableEvent,
]

EVENT_TYPES: dict[str, type[_Event]] = {
    "issues": IssueEvent,
    "issue_comment": IssueCommentEvent,
    "pull_request": PullRequestEvent,
    "pull_request_review_comment": ReviewCommentEvent,
    "push": PushEvent,
    "workflow_run": WorkflowRunEvent,
    "workflow_job": WorkflowJobEvent,
}
