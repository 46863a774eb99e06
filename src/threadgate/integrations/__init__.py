"""External service integrations and best-effort delivery."""

from threadgate.integrations.hosting import HostingClient, IssueInfo, JobLog, PullRequestInfo
from threadgate.integrations.notifier import Notifier, NullNotifier, TelegramNotifier, build_notifier
from threadgate.integrations.side_channel import BestEffortChannel, SideChannelStats
from threadgate.integrations.worker import (
    HttpWorker,
    ToolCall,
    UnconfiguredWorker,
    Worker,
    WorkerEvent,
    WorkerMessage,
    WorkerResult,
    build_worker,
)

__all__ = [
    "BestEffortChannel",
    "HostingClient",
    "HttpWorker",
    "IssueInfo",
    "JobLog",
    "Notifier",
    "NullNotifier",
    "PullRequestInfo",
    "SideChannelStats",
    "TelegramNotifier",
    "ToolCall",
    "UnconfiguredWorker",
    "Worker",
    "WorkerEvent",
    "WorkerMessage",
    "WorkerResult",
    "build_notifier",
    "build_worker",
]
