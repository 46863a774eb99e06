"""Task supervision models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from threadgate.models.enums import ProgressState


class WorkspaceSnapshot(BaseModel):
    """Observed version-control state of a Worker checkout."""

    exists: bool = False
    branch: Optional[str] = None
    commit_hash: Optional[str] = None
    dirty_files: list[str] = Field(default_factory=list)
    has_upstream: bool = False
    error: Optional[str] = None

    @property
    def dirty_count(self) -> int:
        return len(self.dirty_files)


class TaskContext(BaseModel):
    """Supervises one task attached to a conversation."""

    task_context_id: UUID
    conversation_id: UUID
    repo: str
    issue_number: int
    branch: Optional[str] = None

    progress_state: ProgressState = ProgressState.NOT_STARTED
    # Last state whose follow-up instruction has been issued
    followup_state: Optional[ProgressState] = None
    workspace_snapshot: WorkspaceSnapshot = Field(default_factory=WorkspaceSnapshot)

    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    def is_complete(self) -> bool:
        return self.progress_state == ProgressState.NOTIFIED


class FollowUp(BaseModel):
    """Corrective instruction for the Worker."""

    task_context_id: UUID
    state: ProgressState
    instruction: str


class ActionLogEntry(BaseModel):
    """Record of a self-performed external action."""

    action_id: UUID
    action_kind: str
    repo: str
    ref_id: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
