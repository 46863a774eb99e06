"""Process-wide collaborators, built once in the application lifespan."""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from threadgate.config import DispatchRule, settings
from threadgate.engine.bus import EventBus
from threadgate.engine.ci import FixAttemptTracker
from threadgate.engine.enforcer import GitWorkspaceInspector, WorkspaceInspector
from threadgate.engine.notifications import NotificationService
from threadgate.engine.registry import WorkerRegistry
from threadgate.engine.summarizer import BasicSummarizer, Summarizer, WorkerSummarizer
from threadgate.integrations.hosting import HostingClient
from threadgate.integrations.notifier import Notifier, build_notifier
from threadgate.integrations.side_channel import BestEffortChannel
from threadgate.integrations.worker import Worker, build_worker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """
    Long-lived state shared by every request.

    Registries live here instead of module globals so tests can build a
    fresh set and the lifespan can tear them down in order.
    """

    session_factory: async_sessionmaker[AsyncSession]
    worker: Worker
    hosting: HostingClient
    notifier: Notifier
    inspector: WorkspaceInspector
    bus: EventBus = field(default_factory=EventBus)
    registry: WorkerRegistry = field(default_factory=WorkerRegistry)
    tracker: FixAttemptTracker = field(default_factory=FixAttemptTracker)
    side_channel: BestEffortChannel = field(default_factory=BestEffortChannel)
    summarizer: Optional[Summarizer] = None
    operator_chat_id: Optional[str] = None
    bot_login: str = field(default_factory=lambda: settings.bot_login)
    dispatch_rules: list[DispatchRule] = field(default_factory=lambda: list(settings.dispatch_rules))

    def __post_init__(self):
        if self.summarizer is None:
            self.summarizer = WorkerSummarizer(self.worker, BasicSummarizer())
        self.notifications = NotificationService(
            notifier=self.notifier,
            channel=self.side_channel,
            chat_id=self.operator_chat_id,
            bot_login=self.bot_login,
        )

    @classmethod
    def build(cls, session_factory: async_sessionmaker[AsyncSession]) -> "Services":
        """Services configured from settings."""
        return cls(
            session_factory=session_factory,
            worker=build_worker(),
            hosting=HostingClient(session_factory=session_factory),
            notifier=build_notifier(),
            inspector=GitWorkspaceInspector(settings.workspace_root),
            operator_chat_id=settings.telegram_chat_id,
        )

    def rules_for_push(self, repo: str, ref: str) -> list[DispatchRule]:
        return [r for r in self.dispatch_rules if r.source_repo == repo and r.source_ref == ref]

    async def aclose(self) -> None:
        await self.registry.shutdown()
        await self.side_channel.drain()
        await self.hosting.aclose()
        logger.info(
            f"Services closed (side channel: {self.side_channel.stats.succeeded} delivered,"
            f" {self.side_channel.stats.failed} failed)"
        )
