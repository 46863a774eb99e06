"""Thread summarization for compaction and compact forks."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from threadgate.integrations.worker import Worker, WorkerMessage
from threadgate.models import ThreadEvent

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Summarize the following conversation history for a coding agent that will "
    "continue the work. Keep decisions, open questions, file paths, branch and "
    "PR names, and anything still to do. Be concise."
)

EVENT_PREVIEW_CHARS = 1500


def _render(events: list[ThreadEvent]) -> str:
    lines = []
    for event in events:
        text = event.text[:EVENT_PREVIEW_CHARS]
        lines.append(f"[{event.created_at:%Y-%m-%d %H:%M}] {event.actor} ({event.channel.value}): {text}")
    return "\n".join(lines)


class Summarizer(ABC):
    @abstractmethod
    async def summarize(self, events: list[ThreadEvent]) -> str:
        """Condense events into a summary."""


class BasicSummarizer(Summarizer):
    """Deterministic summary; needs no Worker."""

    async def summarize(self, events: list[ThreadEvent]) -> str:
        if not events:
            return "Empty thread."
        first = events[0].created_at.date().isoformat()
        last = events[-1].created_at.date().isoformat()
        channels = ", ".join(dict.fromkeys(e.channel.value for e in events))
        actors = ", ".join(dict.fromkeys(e.actor for e in events))
        return (
            f"Thread with {len(events)} events from {first} to {last}. "
            f"Channels: {channels}. Participants: {actors}."
        )


class WorkerSummarizer(Summarizer):
    """Asks the Worker for a summary, falling back to BasicSummarizer."""

    def __init__(self, worker: Worker, fallback: Optional[Summarizer] = None):
        self.worker = worker
        self.fallback = fallback or BasicSummarizer()

    async def summarize(self, events: list[ThreadEvent]) -> str:
        if not events:
            return await self.fallback.summarize(events)
        try:
            result = await self.worker.run(
                [WorkerMessage(role="user", content=_render(events))],
                system_prompt=SUMMARY_PROMPT,
            )
            if result.text.strip():
                return result.text.strip()
            logger.warning("Worker returned an empty summary, using basic summary")
        except Exception as e:
            logger.warning(f"Worker summarization failed, using basic summary: {e}")
        return await self.fallback.summarize(events)
