"""ThreadGate enumerations."""

from enum import Enum


class ConversationStatus(str, Enum):
    """Conversation and thread lifecycle status."""

    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    ARCHIVED = "archived"

    @classmethod
    def live_states(cls) -> set["ConversationStatus"]:
        """States a resolver may attach new events to."""
        return {cls.ACTIVE, cls.PAUSED}

    def is_live(self) -> bool:
        return self in self.live_states()

    def can_transition_to(self, new_status: "ConversationStatus") -> bool:
        """Check if a status transition is valid."""
        valid_transitions = {
            ConversationStatus.ACTIVE: {ConversationStatus.PAUSED, ConversationStatus.STOPPED},
            ConversationStatus.PAUSED: {ConversationStatus.ACTIVE, ConversationStatus.STOPPED},
            # Explicit reopen only
            ConversationStatus.STOPPED: {ConversationStatus.ACTIVE, ConversationStatus.PAUSED},
            # Leaving archived goes through unarchive
            ConversationStatus.ARCHIVED: set(),
        }
        return new_status in valid_transitions.get(self, set())


class RefKind(str, Enum):
    """Kind of external item a thread points at."""

    ISSUE = "issue"
    PR = "pr"
    BRANCH = "branch"


class RefStatus(str, Enum):
    """State of the external item."""

    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class EventChannel(str, Enum):
    """Where a thread event came from or went to."""

    WEB = "web"
    TELEGRAM = "telegram"
    GITEA_COMMENT = "gitea_comment"
    GITEA_REVIEW = "gitea_review"
    WEBHOOK = "webhook"
    SYSTEM = "system"


class EventDirection(str, Enum):
    """Direction relative to the agent."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageKind(str, Enum):
    """Kind of thread event content."""

    TEXT = "text"
    SUMMARY = "summary"
    CI_FAILURE = "ci_failure"
    ENFORCER = "enforcer"
    ERROR = "error"
    STOPPED = "stopped"


class CompactMode(str, Enum):
    """How a compaction is applied."""

    IN_PLACE = "in_place"
    FORK = "fork"


class ProgressState(str, Enum):
    """Externally observed task progress. Ordered; never regresses."""

    NOT_STARTED = "not_started"
    CODE_CHANGED = "code_changed"
    BRANCH_PUSHED = "branch_pushed"
    NOTIFIED = "notified"

    @property
    def rank(self) -> int:
        return _PROGRESS_ORDER.index(self)

    def at_least(self, other: "ProgressState") -> bool:
        return self.rank >= other.rank


_PROGRESS_ORDER = [
    ProgressState.NOT_STARTED,
    ProgressState.CODE_CHANGED,
    ProgressState.BRANCH_PUSHED,
    ProgressState.NOTIFIED,
]


class ActionKind(str, Enum):
    """Self-performed external writes recorded for loop suppression."""

    CREATE_ISSUE = "create_issue"
    COMMENT_ISSUE = "comment_issue"
    CREATE_PR = "create_pr"
    GIT_PUSH = "git_push"


class CIAction(str, Enum):
    """Outcome of handling one CI completion event."""

    IGNORED = "ignored"
    SUCCESS_RESET = "success_reset"
    NOT_OWN_PR = "not_own_pr"
    MAX_RETRIES = "max_retries"
    WORKER_INVOKED = "worker_invoked"
    WORKER_FAILED = "worker_failed"
