"""Management REST API router."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from threadgate.api.deps import get_engine, verify_api_key
from threadgate.api.schemas import (
    AddRefRequest,
    CompactRequest,
    ConversationResponse,
    CreateConversationRequest,
    ForkRequest,
    HealthResponse,
    ListConversationsResponse,
    ListEventsResponse,
    LookupResponse,
    MarkNotifiedRequest,
    RecordActionRequest,
    SendMessageRequest,
    SendMessageResponse,
    StartTaskRequest,
    StatusChangeRequest,
    StopResponse,
    TaskResponse,
    ThreadResponse,
    UsageResponse,
)
from threadgate.engine.core import ThreadGateEngine
from threadgate.engine.errors import (
    ConversationNotFound,
    InvalidStateTransition,
    NothingToCompact,
    RefNotFound,
    TaskNotFound,
    ThreadEventNotFound,
    ThreadNotFound,
    WorkerInvocationFailed,
)
from threadgate.models import (
    ActionLogEntry,
    CompactRecommendation,
    CompactResult,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    RefKind,
    TaskContext,
    Thread,
    ThreadRef,
)

VERSION = "0.1.0"

router = APIRouter(prefix="/v1", dependencies=[Depends(verify_api_key)])
health_router = APIRouter()


def _task_response(task: TaskContext) -> TaskResponse:
    return TaskResponse(
        task_context_id=task.task_context_id,
        conversation_id=task.conversation_id,
        repo=task.repo,
        issue_number=task.issue_number,
        branch=task.branch,
        progress_state=task.progress_state.value,
        followup_state=task.followup_state.value if task.followup_state else None,
        started_at=task.started_at,
        updated_at=task.updated_at,
        completed_at=task.completed_at,
    )


# ============================================================================
# Health
# ============================================================================


@health_router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return HealthResponse(status="starting", version=VERSION)
    return HealthResponse(
        status="healthy",
        version=VERSION,
        running_workers=len(services.registry.running),
        side_channel_pending=services.side_channel.pending,
    )


# ============================================================================
# Conversations
# ============================================================================


@router.post("/conversations", response_model=ConversationResponse, status_code=201)
async def create_conversation(
    request: CreateConversationRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """Explicit new-task request."""
    conversation, thread = await engine.start_conversation(
        channel=request.channel,
        topic=request.topic,
        tags=request.tags,
        repo=request.repo,
    )
    return ConversationResponse(conversation=conversation, thread_id=thread.thread_id)


@router.get("/conversations", response_model=ListConversationsResponse)
async def list_conversations(
    status: Optional[ConversationStatus] = Query(None),
    archived: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    engine: ThreadGateEngine = Depends(get_engine),
):
    conversations = await engine.store.list_conversations(status=status, archived=archived, limit=limit)
    return ListConversationsResponse(conversations=conversations)


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        conversation = await engine.store.get_conversation(conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    thread = await engine.store.threads.get_by_conversation(conversation_id)
    return ConversationResponse(
        conversation=conversation,
        thread_id=thread.thread_id if thread else None,
    )


@router.post("/conversations/{conversation_id}/messages", response_model=SendMessageResponse)
async def send_message(
    conversation_id: UUID,
    request: SendMessageRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """Record a message and run a supervised Worker turn."""
    try:
        reply = await engine.send_message(conversation_id, request.text, channel=request.channel)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except WorkerInvocationFailed as e:
        raise HTTPException(status_code=502, detail=e.message)

    result = reply.outcome.result
    return SendMessageResponse(
        conversation=reply.conversation,
        thread_id=reply.thread.thread_id,
        event_id=reply.event_id,
        reply=reply.outcome.text,
        stopped=reply.outcome.stopped,
        usage=result.usage if result else None,
        task_context_id=reply.task.task_context_id if reply.task else None,
    )


@router.post("/conversations/{conversation_id}/stop", response_model=StopResponse)
async def stop_conversation(
    conversation_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """Cancel the conversation's running Worker turn."""
    try:
        await engine.store.get_conversation(conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return StopResponse(conversation_id=conversation_id, stopped=engine.stop_worker(conversation_id))


@router.post("/conversations/{conversation_id}/status", response_model=ConversationResponse)
async def change_status(
    conversation_id: UUID,
    request: StatusChangeRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        conversation = await engine.set_status(conversation_id, request.status)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=e.message)
    return ConversationResponse(conversation=conversation)


@router.post("/conversations/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        conversation = await engine.store.archive_conversation(conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return ConversationResponse(conversation=conversation)


@router.post("/conversations/{conversation_id}/unarchive", response_model=ConversationResponse)
async def unarchive_conversation(
    conversation_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        conversation = await engine.store.unarchive_conversation(conversation_id)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return ConversationResponse(conversation=conversation)


# ============================================================================
# Threads
# ============================================================================


@router.get("/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        detail = await engine.store.get_thread_detail(thread_id)
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return ThreadResponse(thread=detail.thread, refs=detail.refs, live_event_count=detail.live_event_count)


@router.get("/threads/{thread_id}/events", response_model=ListEventsResponse)
async def list_thread_events(
    thread_id: UUID,
    channel: Optional[EventChannel] = Query(None),
    direction: Optional[EventDirection] = Query(None),
    actor: Optional[str] = Query(None),
    message_kind: Optional[MessageKind] = Query(None),
    include_compacted: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        events = await engine.store.list_events(
            thread_id,
            channel=channel,
            direction=direction,
            actor=actor,
            message_kind=message_kind,
            include_compacted=include_compacted,
            limit=limit,
            offset=offset,
        )
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return ListEventsResponse(thread_id=thread_id, events=events)


@router.post("/threads/{thread_id}/fork", response_model=Thread, status_code=201)
async def fork_thread(
    thread_id: UUID,
    request: ForkRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        return await engine.fork_thread(
            thread_id,
            at_event_id=request.at_event_id,
            compact=request.compact,
            topic=request.topic,
        )
    except (ThreadNotFound, ThreadEventNotFound) as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/threads/{thread_id}/compact", response_model=CompactResult)
async def compact_thread(
    thread_id: UUID,
    request: CompactRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        return await engine.compact_thread(thread_id, mode=request.mode, keep_recent=request.keep_recent)
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except NothingToCompact as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.get("/threads/{thread_id}/should-compact", response_model=CompactRecommendation)
async def should_compact(
    thread_id: UUID,
    threshold: Optional[int] = Query(None, ge=0),
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        return await engine.should_compact(thread_id, threshold=threshold)
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("/threads/{thread_id}/usage", response_model=UsageResponse)
async def thread_usage(
    thread_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        totals = await engine.thread_usage(thread_id)
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return UsageResponse(thread_id=thread_id, **totals)


@router.get("/threads/{thread_id}/refs", response_model=list[ThreadRef])
async def list_thread_refs(
    thread_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        return (await engine.store.get_thread_detail(thread_id)).refs
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post("/threads/{thread_id}/refs", response_model=ThreadRef, status_code=201)
async def add_thread_ref(
    thread_id: UUID,
    request: AddRefRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        return await engine.add_ref(
            thread_id,
            request.ref_kind,
            request.repo,
            number=request.number,
            ref=request.ref,
            url=request.url,
        )
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.delete("/threads/{thread_id}/refs/{ref_id}", status_code=204)
async def remove_thread_ref(
    thread_id: UUID,
    ref_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        removed = await engine.remove_ref(thread_id, ref_id)
    except ThreadNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    if not removed:
        raise HTTPException(status_code=404, detail=f"Ref {ref_id} not found on thread {thread_id}")


@router.get("/lookup/{repo}/{ref_kind}/{number}", response_model=LookupResponse)
async def lookup_by_ref(
    repo: str,
    ref_kind: RefKind,
    number: int,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """Live thread carrying an external reference."""
    try:
        resolution = await engine.lookup_ref(repo, ref_kind, number)
    except RefNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return LookupResponse(
        conversation=resolution.conversation,
        thread=resolution.thread,
        matched_by=resolution.matched_by,
    )


# ============================================================================
# Tasks
# ============================================================================


@router.post("/conversations/{conversation_id}/task", response_model=TaskResponse, status_code=201)
async def start_task(
    conversation_id: UUID,
    request: StartTaskRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        task = await engine.start_task(conversation_id, request.repo, request.issue_number)
    except ConversationNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return _task_response(task)


@router.get("/conversations/{conversation_id}/task", response_model=TaskResponse)
async def task_status(
    conversation_id: UUID,
    engine: ThreadGateEngine = Depends(get_engine),
):
    try:
        task = await engine.task_status(conversation_id)
    except (ConversationNotFound, TaskNotFound) as e:
        raise HTTPException(status_code=404, detail=e.message)
    return _task_response(task)


@router.post("/conversations/{conversation_id}/task/notified", response_model=TaskResponse)
async def mark_notified(
    conversation_id: UUID,
    request: MarkNotifiedRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """Record that the completion notification went out."""
    try:
        task = await engine.mark_notified(conversation_id, request.repo, request.issue_number)
    except TaskNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    return _task_response(task)


# ============================================================================
# Self actions
# ============================================================================


@router.post("/actions", response_model=ActionLogEntry, status_code=201)
async def record_action(
    request: RecordActionRequest,
    engine: ThreadGateEngine = Depends(get_engine),
):
    """
    Record a write the agent is about to make.

    Must be called before the external write so the webhook it triggers
    is recognised as self-generated.
    """
    return await engine.record_action(request.action_kind, request.repo, request.ref_id, request.metadata)
