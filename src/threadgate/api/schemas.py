"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from threadgate.models import (
    ActionKind,
    CompactMode,
    Conversation,
    ConversationStatus,
    EventChannel,
    RefKind,
    Thread,
    ThreadEvent,
    ThreadRef,
)


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    running_workers: int = 0
    side_channel_pending: int = 0


# ============================================================================
# Conversations
# ============================================================================


class CreateConversationRequest(BaseModel):
    """Explicit new-task request."""

    channel: str = Field(default=EventChannel.WEB.value, description="Originating channel")
    topic: Optional[str] = Field(None, description="Conversation topic")
    tags: list[str] = Field(default_factory=list, description="Legacy lookup tags")
    repo: Optional[str] = Field(None, description="Repository the work concerns")


class ConversationResponse(BaseModel):
    """Conversation with its backing thread id."""

    conversation: Conversation
    thread_id: Optional[UUID] = None


class ListConversationsResponse(BaseModel):
    conversations: list[Conversation]


class StatusChangeRequest(BaseModel):
    status: ConversationStatus = Field(..., description="Target status")


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Message text")
    channel: EventChannel = Field(default=EventChannel.WEB, description="Channel the message arrived on")


class SendMessageResponse(BaseModel):
    conversation: Conversation
    thread_id: UUID
    event_id: int
    reply: Optional[str] = None
    stopped: bool = False
    usage: Optional[dict[str, Any]] = None
    task_context_id: Optional[UUID] = None


class StopResponse(BaseModel):
    conversation_id: UUID
    stopped: bool


# ============================================================================
# Threads
# ============================================================================


class ThreadResponse(BaseModel):
    thread: Thread
    refs: list[ThreadRef]
    live_event_count: int


class ListEventsResponse(BaseModel):
    thread_id: UUID
    events: list[ThreadEvent]


class ForkRequest(BaseModel):
    at_event_id: Optional[int] = Field(None, description="Last event to copy (default: all)")
    compact: bool = Field(default=False, description="Copy a summary instead of the events")
    topic: Optional[str] = None


class CompactRequest(BaseModel):
    mode: CompactMode = CompactMode.IN_PLACE
    keep_recent: Optional[int] = Field(None, ge=0, description="Live events to keep uncompacted")


class UsageResponse(BaseModel):
    thread_id: UUID
    input_tokens: int
    output_tokens: int


class AddRefRequest(BaseModel):
    ref_kind: RefKind
    repo: str
    number: Optional[int] = None
    ref: Optional[str] = Field(None, description="Branch name for branch refs")
    url: Optional[str] = None


class LookupResponse(BaseModel):
    conversation: Conversation
    thread: Optional[Thread] = None
    matched_by: str


# ============================================================================
# Tasks
# ============================================================================


class StartTaskRequest(BaseModel):
    repo: str
    issue_number: int = Field(..., ge=1)


class MarkNotifiedRequest(BaseModel):
    repo: Optional[str] = None
    issue_number: Optional[int] = Field(None, ge=1)


class TaskResponse(BaseModel):
    task_context_id: UUID
    conversation_id: UUID
    repo: str
    issue_number: int
    branch: Optional[str] = None
    progress_state: str
    followup_state: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


# ============================================================================
# Self actions
# ============================================================================


class RecordActionRequest(BaseModel):
    """External write about to be performed by the agent itself."""

    action_kind: ActionKind
    repo: str
    ref_id: str = Field(..., description="Issue/PR number or short commit id")
    metadata: dict[str, Any] = Field(default_factory=dict)
