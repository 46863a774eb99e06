"""SQLAlchemy table definitions."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from threadgate.db.base import Base
from threadgate.models.enums import (
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    ProgressState,
    RefKind,
    RefStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
EventIdType = BigInteger().with_variant(Integer(), "sqlite")


class ConversationTable(Base):
    """Conversations table - coarse containers for lines of work."""

    __tablename__ = "conversations"

    conversation_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), nullable=False, default=ConversationStatus.ACTIVE
    )
    repo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_conversations_status", "status", "updated_at"),
    )


class ConversationTagTable(Base):
    """Conversation tags - legacy string keys used for fallback lookup."""

    __tablename__ = "conversation_tags"

    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag: Mapped[str] = mapped_column(String(255), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_conversation_tags_tag", "tag"),
    )


class ThreadTable(Base):
    """Threads table - forkable units of work."""

    __tablename__ = "threads"

    thread_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    conversation_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("conversations.conversation_id", ondelete="SET NULL"),
        nullable=True,
    )
    topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), nullable=False, default=ConversationStatus.PAUSED
    )
    session_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lineage
    parent_thread_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("threads.thread_id", ondelete="SET NULL"),
        nullable=True,
    )
    fork_point_event_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_threads_conversation", "conversation_id"),
        Index("idx_threads_status", "status", "updated_at"),
    )


class ThreadRefTable(Base):
    """Thread refs - links to issues, PRs and branches.

    (repo, ref_kind, number) is a logical key only; duplicates are
    deduplicated at lookup time.
    """

    __tablename__ = "thread_refs"

    ref_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    thread_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("threads.thread_id", ondelete="CASCADE"),
        nullable=False,
    )
    ref_kind: Mapped[RefKind] = mapped_column(Enum(RefKind), nullable=False)
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RefStatus] = mapped_column(
        Enum(RefStatus), nullable=False, default=RefStatus.OPEN
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_thread_refs_lookup", "repo", "ref_kind", "number"),
        Index("idx_thread_refs_thread", "thread_id"),
    )


class ThreadEventTable(Base):
    """Thread events - append-only timeline."""

    __tablename__ = "thread_events"

    event_id: Mapped[int] = mapped_column(EventIdType, primary_key=True, autoincrement=True)
    thread_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("threads.thread_id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[EventChannel] = mapped_column(Enum(EventChannel), nullable=False)
    direction: Mapped[EventDirection] = mapped_column(Enum(EventDirection), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[Any] = mapped_column(JSONType, nullable=True)
    message_kind: Mapped[MessageKind] = mapped_column(
        Enum(MessageKind), nullable=False, default=MessageKind.TEXT
    )
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    usage: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    compacted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_thread_events_thread", "thread_id", "event_id"),
        Index("idx_thread_events_live", "thread_id", "compacted"),
    )


class ActionLogTable(Base):
    """Action log - self-performed external writes, for echo suppression."""

    __tablename__ = "action_log"

    action_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    action_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    ref_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_action_log_key", "action_kind", "repo", "ref_id", "created_at"),
        Index("idx_action_log_created", "created_at"),
    )


class TaskContextTable(Base):
    """Task contexts - supervised tasks attached to conversations."""

    __tablename__ = "task_contexts"

    task_context_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
        nullable=False,
    )
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    issue_number: Mapped[int] = mapped_column(Integer, nullable=False)
    branch: Mapped[str | None] = mapped_column(String(255), nullable=True)

    progress_state: Mapped[ProgressState] = mapped_column(
        Enum(ProgressState), nullable=False, default=ProgressState.NOT_STARTED
    )
    followup_state: Mapped[ProgressState | None] = mapped_column(
        Enum(ProgressState), nullable=True
    )
    workspace_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "repo", "issue_number", name="uq_task_context_issue"
        ),
        Index("idx_task_contexts_conversation", "conversation_id", "started_at"),
    )
