"""ThreadGate data models."""

from threadgate.models.enums import (
    ActionKind,
    CIAction,
    CompactMode,
    ConversationStatus,
    EventChannel,
    EventDirection,
    MessageKind,
    ProgressState,
    RefKind,
    RefStatus,
)
from threadgate.models.thread import (
    CompactRecommendation,
    CompactResult,
    Conversation,
    Resolution,
    Thread,
    ThreadDetail,
    ThreadEvent,
    ThreadRef,
)
from threadgate.models.task import ActionLogEntry, FollowUp, TaskContext, WorkspaceSnapshot

__all__ = [
    "ActionKind",
    "ActionLogEntry",
    "CIAction",
    "CompactMode",
    "CompactRecommendation",
    "CompactResult",
    "Conversation",
    "ConversationStatus",
    "EventChannel",
    "EventDirection",
    "FollowUp",
    "MessageKind",
    "ProgressState",
    "RefKind",
    "RefStatus",
    "Resolution",
    "TaskContext",
    "Thread",
    "ThreadDetail",
    "ThreadEvent",
    "ThreadRef",
    "WorkspaceSnapshot",
]
