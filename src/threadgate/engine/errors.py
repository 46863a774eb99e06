"""ThreadGate engine errors."""


class ThreadGateError(Exception):
    """Base error for ThreadGate operations."""

    def __init__(self, message: str, code: str = "THREADGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


# ============================================================================
# Ingress
# ============================================================================


class SignatureInvalid(ThreadGateError):
    """Webhook signature missing or does not match the body."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, "SIGNATURE_INVALID")


class PayloadUnparseable(ThreadGateError):
    """Webhook body is not valid JSON or does not match its event kind."""

    def __init__(self, detail: str):
        super().__init__(f"Unparseable payload: {detail}", "PAYLOAD_UNPARSEABLE")
        self.detail = detail


# ============================================================================
# Lookup
# ============================================================================


class RefNotFound(ThreadGateError):
    """No live thread carries the reference."""

    def __init__(self, repo: str, ref_kind: str, number: int | None):
        super().__init__(f"No thread for {ref_kind} {repo}#{number}", "REF_NOT_FOUND")
        self.repo = repo
        self.ref_kind = ref_kind
        self.number = number


class ConversationNotFound(ThreadGateError):
    """Conversation does not exist."""

    def __init__(self, conversation_id):
        super().__init__(f"Conversation not found: {conversation_id}", "CONVERSATION_NOT_FOUND")
        self.conversation_id = conversation_id


class ThreadNotFound(ThreadGateError):
    """Thread does not exist."""

    def __init__(self, thread_id):
        super().__init__(f"Thread not found: {thread_id}", "THREAD_NOT_FOUND")
        self.thread_id = thread_id


class ThreadEventNotFound(ThreadGateError):
    """Event does not exist in the given thread."""

    def __init__(self, thread_id, event_id: int):
        super().__init__(
            f"Event {event_id} not found in thread {thread_id}",
            "THREAD_EVENT_NOT_FOUND",
        )
        self.thread_id = thread_id
        self.event_id = event_id


class TaskNotFound(ThreadGateError):
    """No tracked task for the conversation."""

    def __init__(self, conversation_id):
        super().__init__(f"No tracked task for conversation {conversation_id}", "TASK_NOT_FOUND")
        self.conversation_id = conversation_id


# ============================================================================
# State
# ============================================================================


class InvalidStateTransition(ThreadGateError):
    """Invalid conversation/thread status transition."""

    def __init__(self, current_status: str, requested_status: str):
        super().__init__(
            f"Invalid transition from {current_status} to {requested_status}",
            "INVALID_STATE_TRANSITION",
        )
        self.current_status = current_status
        self.requested_status = requested_status


class NothingToCompact(ThreadGateError):
    """Thread has too few live events to compact."""

    def __init__(self, thread_id, live_count: int, keep_recent: int):
        super().__init__(
            f"Thread {thread_id} has {live_count} live events, keep_recent={keep_recent}",
            "NOTHING_TO_COMPACT",
        )
        self.thread_id = thread_id


# ============================================================================
# Supervision
# ============================================================================


class MaxRetriesExceeded(ThreadGateError):
    """CI auto-fix attempts exhausted for a pull request."""

    def __init__(self, key: str, attempts: int):
        super().__init__(
            f"Auto-fix gave up on {key} after {attempts} attempts",
            "MAX_RETRIES_EXCEEDED",
        )
        self.key = key
        self.attempts = attempts


class WorkerInvocationFailed(ThreadGateError):
    """Worker raised or returned an unusable result."""

    def __init__(self, message: str):
        super().__init__(f"Worker invocation failed: {message}", "WORKER_INVOCATION_FAILED")


# ============================================================================
# Infrastructure
# ============================================================================


class PersistenceError(ThreadGateError):
    """Store operation failed."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}", "PERSISTENCE_ERROR")
        self.operation = operation


class HostingError(ThreadGateError):
    """Git-hosting API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, "HOSTING_ERROR")
        self.status_code = status_code


class CommandError(ThreadGateError):
    """Local command exited non-zero."""

    def __init__(self, argv: list[str], returncode: int, stderr: str):
        super().__init__(
            f"Command failed ({returncode}): {' '.join(argv)}: {stderr.strip()}",
            "COMMAND_ERROR",
        )
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
