"""Database repositories for ThreadGate entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from threadgate.db.tables import (
    ActionLogTable,
    ConversationTable,
    ConversationTagTable,
    TaskContextTable,
    ThreadEventTable,
    ThreadRefTable,
    ThreadTable,
)
from threadgate.models import (
    ActionLogEntry,
    Conversation,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    ProgressState,
    RefKind,
    RefStatus,
    TaskContext,
    Thread,
    ThreadEvent,
    ThreadRef,
    WorkspaceSnapshot,
)
from threadgate.utils.time import ensure_utc, utc_now


class ConversationRepository:
    """Repository for conversation operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        channel: str,
        topic: Optional[str] = None,
        status: ConversationStatus = ConversationStatus.ACTIVE,
        tags: Iterable[str] = (),
        repo: Optional[str] = None,
        conversation_id: Optional[UUID] = None,
    ) -> Conversation:
        """Create a new conversation with its tags."""
        now = utc_now()
        conversation = ConversationTable(
            conversation_id=conversation_id or uuid4(),
            channel=channel,
            topic=topic,
            status=status,
            repo=repo,
            created_at=now,
            updated_at=now,
        )
        self.session.add(conversation)
        await self.session.flush()

        await self.add_tags(conversation.conversation_id, tags)
        return await self._row_to_model(conversation)

    async def get(self, conversation_id: UUID) -> Conversation | None:
        """Get conversation by ID."""
        row = await self.session.get(ConversationTable, conversation_id)
        if row is None:
            return None
        await self.session.refresh(row)
        return await self._row_to_model(row)

    async def list(
        self,
        status: Optional[ConversationStatus] = None,
        archived: Optional[bool] = None,
        limit: int = 50,
    ) -> list[Conversation]:
        """List conversations, most recently updated first."""
        query = select(ConversationTable)
        if status is not None:
            query = query.where(ConversationTable.status == status)
        if archived is True:
            query = query.where(ConversationTable.archived_at.is_not(None))
        elif archived is False:
            query = query.where(ConversationTable.archived_at.is_(None))
        query = query.order_by(ConversationTable.updated_at.desc()).limit(limit)

        result = await self.session.execute(query)
        return [await self._row_to_model(r) for r in result.scalars().all()]

    async def find_by_tag(
        self,
        tag: str,
        statuses: Iterable[ConversationStatus],
    ) -> list[Conversation]:
        """Find conversations carrying a tag, most recently updated first."""
        query = (
            select(ConversationTable)
            .join(
                ConversationTagTable,
                ConversationTagTable.conversation_id == ConversationTable.conversation_id,
            )
            .where(
                ConversationTagTable.tag == tag,
                ConversationTable.status.in_(list(statuses)),
            )
            .order_by(ConversationTable.updated_at.desc())
        )
        result = await self.session.execute(query)
        return [await self._row_to_model(r) for r in result.scalars().all()]

    async def add_tags(self, conversation_id: UUID, tags: Iterable[str]) -> None:
        """Add tags not already present, preserving order."""
        existing = await self.get_tags(conversation_id)
        position = len(existing)
        for tag in tags:
            if tag in existing:
                continue
            self.session.add(
                ConversationTagTable(conversation_id=conversation_id, tag=tag, position=position)
            )
            existing.append(tag)
            position += 1
        await self.session.flush()

    async def get_tags(self, conversation_id: UUID) -> list[str]:
        result = await self.session.execute(
            select(ConversationTagTable.tag)
            .where(ConversationTagTable.conversation_id == conversation_id)
            .order_by(ConversationTagTable.position)
        )
        return list(result.scalars().all())

    async def update(self, conversation_id: UUID, **values: Any) -> Conversation | None:
        """Update columns and touch updated_at."""
        values.setdefault("updated_at", utc_now())
        await self.session.execute(
            update(ConversationTable)
            .where(ConversationTable.conversation_id == conversation_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return await self.get(conversation_id)

    async def touch(self, conversation_id: UUID) -> None:
        await self.session.execute(
            update(ConversationTable)
            .where(ConversationTable.conversation_id == conversation_id)
            .values(updated_at=utc_now())
        )

    async def _row_to_model(self, row: ConversationTable) -> Conversation:
        """Convert database row to model."""
        return Conversation(
            conversation_id=row.conversation_id,
            channel=row.channel,
            topic=row.topic,
            status=row.status,
            tags=await self.get_tags(row.conversation_id),
            repo=row.repo,
            session_handle=row.session_handle,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            closed_at=ensure_utc(row.closed_at),
            archived_at=ensure_utc(row.archived_at),
        )


class ThreadRepository:
    """Repository for thread operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        topic: Optional[str] = None,
        conversation_id: Optional[UUID] = None,
        status: ConversationStatus = ConversationStatus.PAUSED,
        parent_thread_id: Optional[UUID] = None,
        fork_point_event_id: Optional[int] = None,
        summary: Optional[str] = None,
    ) -> Thread:
        """Create a new thread."""
        now = utc_now()
        thread = ThreadTable(
            thread_id=uuid4(),
            conversation_id=conversation_id,
            topic=topic,
            status=status,
            summary=summary,
            parent_thread_id=parent_thread_id,
            fork_point_event_id=fork_point_event_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(thread)
        await self.session.flush()
        return self._row_to_model(thread)

    async def get(self, thread_id: UUID) -> Thread | None:
        """Get thread by ID."""
        result = await self.session.execute(
            select(ThreadTable).where(ThreadTable.thread_id == thread_id)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def get_by_conversation(self, conversation_id: UUID) -> Thread | None:
        """Reverse lookup: newest thread backing a conversation."""
        result = await self.session.execute(
            select(ThreadTable)
            .where(ThreadTable.conversation_id == conversation_id)
            .order_by(ThreadTable.updated_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list(
        self,
        status: Optional[ConversationStatus] = None,
        parent_thread_id: Optional[UUID] = None,
        limit: int = 50,
    ) -> list[Thread]:
        query = select(ThreadTable)
        if status is not None:
            query = query.where(ThreadTable.status == status)
        if parent_thread_id is not None:
            query = query.where(ThreadTable.parent_thread_id == parent_thread_id)
        query = query.order_by(ThreadTable.updated_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def update(self, thread_id: UUID, **values: Any) -> Thread | None:
        """Update columns and touch updated_at."""
        values.setdefault("updated_at", utc_now())
        await self.session.execute(
            update(ThreadTable)
            .where(ThreadTable.thread_id == thread_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return await self.get(thread_id)

    async def touch(self, thread_id: UUID) -> None:
        await self.session.execute(
            update(ThreadTable)
            .where(ThreadTable.thread_id == thread_id)
            .values(updated_at=utc_now())
        )

    def _row_to_model(self, row: ThreadTable) -> Thread:
        """Convert database row to model."""
        return Thread(
            thread_id=row.thread_id,
            conversation_id=row.conversation_id,
            topic=row.topic,
            status=row.status,
            session_handle=row.session_handle,
            summary=row.summary,
            parent_thread_id=row.parent_thread_id,
            fork_point_event_id=row.fork_point_event_id,
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
            closed_at=ensure_utc(row.closed_at),
            archived_at=ensure_utc(row.archived_at),
        )


class ThreadRefRepository:
    """Repository for thread ref operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        thread_id: UUID,
        ref_kind: RefKind,
        repo: str,
        number: Optional[int] = None,
        ref: Optional[str] = None,
        url: Optional[str] = None,
        status: RefStatus = RefStatus.OPEN,
    ) -> ThreadRef:
        """
        Add a ref to a thread.

        Upserts on (thread_id, ref_kind, repo, number) so rediscovering the
        same ref refreshes url/status instead of adding a row. Different
        threads may still carry the same ref.
        """
        result = await self.session.execute(
            select(ThreadRefTable).where(
                ThreadRefTable.thread_id == thread_id,
                ThreadRefTable.ref_kind == ref_kind,
                ThreadRefTable.repo == repo,
                ThreadRefTable.number == number if number is not None
                else ThreadRefTable.number.is_(None),
            )
        )
        row = result.scalars().first()
        if row is not None:
            if url is not None:
                row.url = url
            if ref is not None:
                row.ref = ref
            row.status = status
            await self.session.flush()
            return self._row_to_model(row)

        row = ThreadRefTable(
            ref_id=uuid4(),
            thread_id=thread_id,
            ref_kind=ref_kind,
            repo=repo,
            number=number,
            ref=ref,
            url=url,
            status=status,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def list_for_thread(self, thread_id: UUID) -> list[ThreadRef]:
        result = await self.session.execute(
            select(ThreadRefTable)
            .where(ThreadRefTable.thread_id == thread_id)
            .order_by(ThreadRefTable.created_at)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def find_threads(self, repo: str, ref_kind: RefKind, number: int) -> list[ThreadTable]:
        """Threads carrying the ref, most recently updated first.

        May return several threads when duplicate refs exist.
        """
        result = await self.session.execute(
            select(ThreadTable)
            .join(ThreadRefTable, ThreadRefTable.thread_id == ThreadTable.thread_id)
            .where(
                ThreadRefTable.repo == repo,
                ThreadRefTable.ref_kind == ref_kind,
                ThreadRefTable.number == number,
            )
            .order_by(ThreadTable.updated_at.desc())
        )
        seen: set[UUID] = set()
        rows = []
        for row in result.scalars().all():
            if row.thread_id in seen:
                continue
            seen.add(row.thread_id)
            rows.append(row)
        return rows

    async def update_status(
        self,
        repo: str,
        ref_kind: RefKind,
        number: int,
        status: RefStatus,
    ) -> int:
        """Update status on every ref matching the logical key."""
        result = await self.session.execute(
            update(ThreadRefTable)
            .where(
                ThreadRefTable.repo == repo,
                ThreadRefTable.ref_kind == ref_kind,
                ThreadRefTable.number == number,
            )
            .values(status=status)
        )
        return result.rowcount or 0

    async def remove(self, thread_id: UUID, ref_id: UUID) -> bool:
        result = await self.session.execute(
            delete(ThreadRefTable).where(
                ThreadRefTable.thread_id == thread_id,
                ThreadRefTable.ref_id == ref_id,
            )
        )
        return (result.rowcount or 0) > 0

    def _row_to_model(self, row: ThreadRefTable) -> ThreadRef:
        return ThreadRef(
            ref_id=row.ref_id,
            thread_id=row.thread_id,
            ref_kind=row.ref_kind,
            repo=row.repo,
            number=row.number,
            ref=row.ref,
            url=row.url,
            status=row.status,
            created_at=ensure_utc(row.created_at),
        )


class ThreadEventRepository:
    """Repository for the append-only thread timeline."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        thread_id: UUID,
        channel: EventChannel,
        direction: EventDirection,
        actor: str,
        content: Any,
        message_kind: MessageKind = MessageKind.TEXT,
        metadata: Optional[dict[str, Any]] = None,
        usage: Optional[dict[str, Any]] = None,
        compacted: bool = False,
        created_at: Optional[datetime] = None,
    ) -> ThreadEvent:
        """Append an event. Event IDs increase monotonically."""
        row = ThreadEventTable(
            thread_id=thread_id,
            channel=channel,
            direction=direction,
            actor=actor,
            content=content,
            message_kind=message_kind,
            event_metadata=metadata or {},
            usage=usage,
            compacted=compacted,
            created_at=created_at or utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, thread_id: UUID, event_id: int) -> ThreadEvent | None:
        result = await self.session.execute(
            select(ThreadEventTable).where(
                ThreadEventTable.thread_id == thread_id,
                ThreadEventTable.event_id == event_id,
            )
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list(
        self,
        thread_id: UUID,
        channel: Optional[EventChannel] = None,
        direction: Optional[EventDirection] = None,
        actor: Optional[str] = None,
        message_kind: Optional[MessageKind] = None,
        include_compacted: bool = False,
        up_to_event_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[ThreadEvent]:
        """List events in timeline order with optional filters."""
        query = select(ThreadEventTable).where(ThreadEventTable.thread_id == thread_id)
        if channel is not None:
            query = query.where(ThreadEventTable.channel == channel)
        if direction is not None:
            query = query.where(ThreadEventTable.direction == direction)
        if actor is not None:
            query = query.where(ThreadEventTable.actor == actor)
        if message_kind is not None:
            query = query.where(ThreadEventTable.message_kind == message_kind)
        if not include_compacted:
            query = query.where(ThreadEventTable.compacted.is_(False))
        if up_to_event_id is not None:
            query = query.where(ThreadEventTable.event_id <= up_to_event_id)

        query = query.order_by(ThreadEventTable.event_id).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def count_live(self, thread_id: UUID) -> int:
        """Count non-compacted events."""
        result = await self.session.execute(
            select(func.count())
            .select_from(ThreadEventTable)
            .where(
                ThreadEventTable.thread_id == thread_id,
                ThreadEventTable.compacted.is_(False),
            )
        )
        return int(result.scalar_one())

    async def last_event_id(self, thread_id: UUID) -> int | None:
        result = await self.session.execute(
            select(func.max(ThreadEventTable.event_id)).where(
                ThreadEventTable.thread_id == thread_id
            )
        )
        return result.scalar_one_or_none()

    async def mark_compacted(self, thread_id: UUID, event_ids: list[int]) -> int:
        """Flag events as compacted. Rows are never deleted."""
        if not event_ids:
            return 0
        result = await self.session.execute(
            update(ThreadEventTable)
            .where(
                ThreadEventTable.thread_id == thread_id,
                ThreadEventTable.event_id.in_(event_ids),
            )
            .values(compacted=True)
        )
        return result.rowcount or 0

    async def usage_rows(self, thread_id: UUID) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(ThreadEventTable.usage).where(
                ThreadEventTable.thread_id == thread_id,
                ThreadEventTable.usage.is_not(None),
            )
        )
        return [u for u in result.scalars().all() if isinstance(u, dict)]

    def _row_to_model(self, row: ThreadEventTable) -> ThreadEvent:
        return ThreadEvent(
            event_id=row.event_id,
            thread_id=row.thread_id,
            channel=row.channel,
            direction=row.direction,
            actor=row.actor,
            content=row.content,
            message_kind=row.message_kind,
            metadata=row.event_metadata or {},
            usage=row.usage,
            compacted=bool(row.compacted),
            created_at=ensure_utc(row.created_at),
        )


class ActionLogRepository:
    """Repository for self-performed action records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        action_kind: str,
        repo: str,
        ref_id: str,
        metadata: Optional[dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> ActionLogEntry:
        """Record an action. Flushed immediately so racing readers see it."""
        row = ActionLogTable(
            action_id=uuid4(),
            action_kind=action_kind,
            repo=repo,
            ref_id=str(ref_id),
            action_metadata=metadata or {},
            created_at=created_at or utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return ActionLogEntry(
            action_id=row.action_id,
            action_kind=row.action_kind,
            repo=row.repo,
            ref_id=row.ref_id,
            metadata=row.action_metadata,
            created_at=ensure_utc(row.created_at),
        )

    async def exists_between(
        self,
        action_kind: str,
        repo: str,
        ref_id: str,
        since: datetime,
        until: datetime,
    ) -> bool:
        """Check for a matching entry created in [since, until]."""
        result = await self.session.execute(
            select(ActionLogTable.action_id)
            .where(
                ActionLogTable.action_kind == action_kind,
                ActionLogTable.repo == repo,
                ActionLogTable.ref_id == str(ref_id),
                ActionLogTable.created_at >= since,
                ActionLogTable.created_at <= until,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def purge_before(self, cutoff: datetime) -> int:
        """Delete entries older than cutoff."""
        result = await self.session.execute(
            delete(ActionLogTable).where(ActionLogTable.created_at < cutoff)
        )
        return result.rowcount or 0


class TaskContextRepository:
    """Repository for supervised task state."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        conversation_id: UUID,
        repo: str,
        issue_number: int,
        snapshot: WorkspaceSnapshot,
    ) -> TaskContext:
        """
        Start (or restart) tracking a task.

        Restarting an existing (conversation, repo, issue) resets progress
        and replaces the baseline snapshot.
        """
        now = utc_now()
        row = await self._get_row(conversation_id, repo, issue_number)
        if row is None:
            row = TaskContextTable(
                task_context_id=uuid4(),
                conversation_id=conversation_id,
                repo=repo,
                issue_number=issue_number,
                started_at=now,
            )
            self.session.add(row)

        row.branch = snapshot.branch
        row.progress_state = ProgressState.NOT_STARTED
        row.followup_state = None
        row.workspace_snapshot = snapshot.model_dump()
        row.started_at = now
        row.updated_at = now
        row.completed_at = None
        await self.session.flush()
        return self._row_to_model(row)

    async def get(
        self,
        conversation_id: UUID,
        repo: str,
        issue_number: int,
    ) -> TaskContext | None:
        row = await self._get_row(conversation_id, repo, issue_number)
        return self._row_to_model(row) if row else None

    async def get_current(self, conversation_id: UUID) -> TaskContext | None:
        """Most recently started incomplete task for the conversation."""
        result = await self.session.execute(
            select(TaskContextTable)
            .where(
                TaskContextTable.conversation_id == conversation_id,
                TaskContextTable.completed_at.is_(None),
            )
            .order_by(TaskContextTable.started_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list_for_conversation(self, conversation_id: UUID) -> list[TaskContext]:
        result = await self.session.execute(
            select(TaskContextTable)
            .where(TaskContextTable.conversation_id == conversation_id)
            .order_by(TaskContextTable.started_at.desc())
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def update(self, task_context_id: UUID, **values: Any) -> TaskContext | None:
        values.setdefault("updated_at", utc_now())
        await self.session.execute(
            update(TaskContextTable)
            .where(TaskContextTable.task_context_id == task_context_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(
            select(TaskContextTable).where(TaskContextTable.task_context_id == task_context_id)
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def _get_row(
        self,
        conversation_id: UUID,
        repo: str,
        issue_number: int,
    ) -> TaskContextTable | None:
        result = await self.session.execute(
            select(TaskContextTable).where(
                TaskContextTable.conversation_id == conversation_id,
                TaskContextTable.repo == repo,
                TaskContextTable.issue_number == issue_number,
            )
        )
        return result.scalar_one_or_none()

    def _row_to_model(self, row: TaskContextTable) -> TaskContext:
        return TaskContext(
            task_context_id=row.task_context_id,
            conversation_id=row.conversation_id,
            repo=row.repo,
            issue_number=row.issue_number,
            branch=row.branch,
            progress_state=row.progress_state,
            followup_state=row.followup_state,
            workspace_snapshot=WorkspaceSnapshot.model_validate(row.workspace_snapshot or {}),
            started_at=ensure_utc(row.started_at),
            updated_at=ensure_utc(row.updated_at),
            completed_at=ensure_utc(row.completed_at),
        )
