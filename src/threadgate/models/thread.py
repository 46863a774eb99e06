"""Conversation and thread models."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from threadgate.models.enums import (
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    RefKind,
    RefStatus,
)


class Conversation(BaseModel):
    """Coarse container for a line of work."""

    conversation_id: UUID
    channel: str
    topic: Optional[str] = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    tags: list[str] = Field(default_factory=list)
    repo: Optional[str] = None
    session_handle: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    def is_live(self) -> bool:
        return self.status.is_live()


class Thread(BaseModel):
    """Unit of ongoing work layered on a conversation."""

    thread_id: UUID
    conversation_id: Optional[UUID] = None
    topic: Optional[str] = None
    status: ConversationStatus = ConversationStatus.PAUSED
    session_handle: Optional[str] = None
    summary: Optional[str] = None

    # Lineage
    parent_thread_id: Optional[UUID] = None
    fork_point_event_id: Optional[int] = None

    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None


class ThreadRef(BaseModel):
    """Structured link from a thread to an external item."""

    ref_id: UUID
    thread_id: UUID
    ref_kind: RefKind
    repo: str
    number: Optional[int] = None
    ref: Optional[str] = None
    url: Optional[str] = None
    status: RefStatus = RefStatus.OPEN
    created_at: datetime


class ThreadEvent(BaseModel):
    """One message or action in a thread's timeline."""

    event_id: int
    thread_id: UUID
    channel: EventChannel
    direction: EventDirection
    actor: str
    content: Any
    message_kind: MessageKind = MessageKind.TEXT
    metadata: dict[str, Any] = Field(default_factory=dict)
    usage: Optional[dict[str, Any]] = None
    compacted: bool = False
    created_at: datetime

    @property
    def text(self) -> str:
        """Content flattened to text."""
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            parts = []
            for block in self.content:
                if isinstance(block, dict) and block.get("type") == "text":
                    parts.append(str(block.get("text", "")))
                elif isinstance(block, str):
                    parts.append(block)
            return "\n".join(parts)
        if isinstance(self.content, dict) and "text" in self.content:
            return str(self.content["text"])
        return "" if self.content is None else str(self.content)


class ThreadDetail(BaseModel):
    """Thread together with its refs and live event count."""

    thread: Thread
    refs: list[ThreadRef] = Field(default_factory=list)
    live_event_count: int = 0


class Resolution(BaseModel):
    """Result of mapping refs/tags to existing state."""

    conversation: Optional[Conversation] = None
    thread: Optional[Thread] = None
    created: bool = False
    matched_by: str = "ref"


class CompactResult(BaseModel):
    """Outcome of a compaction."""

    thread_id: UUID
    mode: str
    compacted_count: int
    kept_count: int
    summary: str
    summary_event_id: Optional[int] = None


class CompactRecommendation(BaseModel):
    """Heuristic answer to whether a thread should be compacted."""

    should_compact: bool
    event_count: int
    reason: str
