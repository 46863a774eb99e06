"""ThreadGate database layer."""

from threadgate.db.base import Base, get_session, init_db
from threadgate.db.tables import (
    ActionLogTable,
    ConversationTable,
    ConversationTagTable,
    TaskContextTable,
    ThreadEventTable,
    ThreadRefTable,
    ThreadTable,
)

__all__ = [
    "Base",
    "get_session",
    "init_db",
    "ActionLogTable",
    "ConversationTable",
    "ConversationTagTable",
    "TaskContextTable",
    "ThreadEventTable",
    "ThreadRefTable",
    "ThreadTable",
]
