"""ThreadGate engine - routing, thread state and task supervision."""

from threadgate.engine.errors import (
    ConversationNotFound,
    InvalidStateTransition,
    MaxRetriesExceeded,
    NothingToCompact,
    PayloadUnparseable,
    PersistenceError,
    RefNotFound,
    SignatureInvalid,
    TaskNotFound,
    ThreadEventNotFound,
    ThreadGateError,
    ThreadNotFound,
    WorkerInvocationFailed,
)

__all__ = [
    "ConversationNotFound",
    "InvalidStateTransition",
    "MaxRetriesExceeded",
    "NothingToCompact",
    "PayloadUnparseable",
    "PersistenceError",
    "RefNotFound",
    "SignatureInvalid",
    "TaskNotFound",
    "ThreadEventNotFound",
    "ThreadGateError",
    "ThreadNotFound",
    "WorkerInvocationFailed",
]
