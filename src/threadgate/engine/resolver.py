"""Thread resolver: refs/tags -> existing thread+conversation, or create."""

import logging
from dataclasses import dataclass
from typing import Optional

from threadgate.config import settings
from threadgate.engine.errors import RefNotFound
from threadgate.engine.store import ThreadStore
from threadgate.models import (
    Conversation,
    ConversationStatus,
    RefKind,
    Resolution,
    Thread,
)
from threadgate.webhooks.formatting import mentions_bot
from threadgate.webhooks.normalizer import NormalizedEvent, WebhookRef, sort_tags
from threadgate.webhooks.payloads import (
    IssueCommentEvent,
    IssueEvent,
    PullRequestEvent,
    ReviewCommentEvent,
)

logger = logging.getLogger(__name__)

WEBHOOK_CHANNEL = "webhook"


@dataclass(frozen=True)
class AutoCreatePolicy:
    """When an untracked item deserves a new conversation."""

    bot_login: str
    on_opened: bool = True
    on_mention: bool = True

    def qualifies(self, event: NormalizedEvent) -> bool:
        if not event.refs:
            return False
        variant = event.event
        if self.on_opened and event.is_creation:
            return True
        if self.on_mention and isinstance(variant, (IssueCommentEvent, ReviewCommentEvent)):
            author = variant.comment.user.login if variant.comment.user else ""
            return (
                variant.action == "created"
                and author != self.bot_login
                and mentions_bot(variant.comment.body, self.bot_login)
            )
        return False


def default_policy() -> AutoCreatePolicy:
    return AutoCreatePolicy(bot_login=settings.bot_login)


def synthesize_topic(event: NormalizedEvent) -> str:
    """Topic for a conversation created from a webhook."""
    variant = event.event
    if isinstance(variant, IssueEvent):
        return f"Issue #{variant.issue.number}: {variant.issue.title}"
    if isinstance(variant, IssueCommentEvent):
        noun = "PR" if variant.on_pull_request else "Issue"
        return f"{noun} #{variant.issue.number}: {variant.issue.title}"
    if isinstance(variant, PullRequestEvent):
        return f"PR #{variant.pr_number}: {variant.pull_request.title}"
    if isinstance(variant, ReviewCommentEvent):
        return f"PR #{variant.pull_request.number}: {variant.pull_request.title}"
    if event.refs:
        ref = event.refs[0]
        return f"{ref.ref_kind.value} {ref.repo}#{ref.number}"
    return f"{event.event_kind} in {event.repo}"


class ThreadResolver:
    """Maps refs and tags onto live state. Structured refs always win."""

    def __init__(self, store: ThreadStore):
        self.store = store

    async def resolve(
        self,
        refs: tuple[WebhookRef, ...] | list[WebhookRef],
        tags: tuple[str, ...] | list[str],
    ) -> Optional[Resolution]:
        """First live match by ref, else by tag; None when nothing matches."""
        for ref in refs:
            resolution = await self._resolve_ref(ref.repo, ref.ref_kind, ref.number)
            if resolution is not None:
                return resolution

        for tag in sort_tags(list(tags)):
            matches = await self.store.conversations.find_by_tag(
                tag, ConversationStatus.live_states()
            )
            if matches:
                conversation = matches[0]
                thread = await self.store.threads.get_by_conversation(conversation.conversation_id)
                logger.debug(f"Resolved tag {tag} -> conversation {conversation.conversation_id}")
                return Resolution(conversation=conversation, thread=thread, matched_by="tag")

        return None

    async def resolve_ref(self, repo: str, ref_kind: RefKind, number: int) -> Resolution:
        """
        Raises:
            RefNotFound: no live thread carries the ref
        """
        resolution = await self._resolve_ref(repo, ref_kind, number)
        if resolution is None:
            raise RefNotFound(repo, ref_kind.value, number)
        return resolution

    async def find_or_create(
        self,
        event: NormalizedEvent,
        policy: Optional[AutoCreatePolicy] = None,
    ) -> Optional[Resolution]:
        """Resolve, else create when the event qualifies under the policy."""
        resolution = await self.resolve(event.refs, event.tags)
        if resolution is not None:
            return resolution

        policy = policy or default_policy()
        if not policy.qualifies(event):
            return None

        return await self.create_for_refs(
            refs=event.refs,
            tags=event.tags,
            topic=synthesize_topic(event),
            repo=event.repo,
        )

    async def create_for_refs(
        self,
        refs: tuple[WebhookRef, ...] | list[WebhookRef],
        tags: tuple[str, ...] | list[str],
        topic: str,
        repo: Optional[str] = None,
        status: ConversationStatus = ConversationStatus.PAUSED,
        channel: str = WEBHOOK_CHANNEL,
    ) -> Resolution:
        """
        Create Conversation + Thread + one ThreadRef per ref.

        Everything is flushed in the caller's transaction, so a failure
        part-way leaves nothing behind once the caller rolls back.
        """
        conversation = await self.store.create_conversation(
            channel=channel,
            topic=topic,
            status=status,
            tags=tags,
            repo=repo,
        )
        thread = await self.store.create_thread(
            topic=topic,
            conversation_id=conversation.conversation_id,
            status=status,
        )
        for ref in refs:
            await self.store.add_ref(
                thread_id=thread.thread_id,
                ref_kind=ref.ref_kind,
                repo=ref.repo,
                number=ref.number,
                url=ref.url,
            )

        logger.info(
            f"Created conversation {conversation.conversation_id} / thread {thread.thread_id}"
            f" for {[f'{r.ref_kind.value}:{r.repo}#{r.number}' for r in refs]}"
        )
        return Resolution(conversation=conversation, thread=thread, created=True, matched_by="created")

    async def _resolve_ref(self, repo: str, ref_kind: RefKind, number: int) -> Optional[Resolution]:
        for row in await self.store.refs.find_threads(repo, ref_kind, number):
            if row.conversation_id is None:
                continue
            conversation: Optional[Conversation] = await self.store.conversations.get(row.conversation_id)
            if conversation is None or not conversation.is_live():
                continue
            thread: Thread = await self.store.threads.get(row.thread_id)
            return Resolution(conversation=conversation, thread=thread, matched_by="ref")
        return None
