"""Worker (coding agent) collaborator interface and HTTP adapter."""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional

import httpx

from threadgate.config import settings
from threadgate.engine.errors import WorkerInvocationFailed

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]
WorkerEventType = Literal["text_chunk", "tool_use", "tool_result", "agent_done"]


@dataclass(frozen=True)
class WorkerMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class WorkerEvent:
    """Progress event streamed during a turn."""

    type: WorkerEventType
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCall:
    tool_use_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    result: Optional[str] = None


@dataclass(frozen=True)
class WorkerResult:
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Optional[dict[str, Any]] = None
    session_handle: Optional[str] = None


EventCallback = Callable[[WorkerEvent], Awaitable[None]]


class Worker(ABC):
    """Black-box agent invoked with a message history."""

    @abstractmethod
    async def run(
        self,
        messages: list[WorkerMessage],
        *,
        session_handle: Optional[str] = None,
        system_prompt: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
    ) -> WorkerResult:
        """Run one turn and return the aggregated result.

        When session_handle is given the Worker resumes that session and only
        needs the newest message.
        """


class UnconfiguredWorker(Worker):
    """Placeholder used when no Worker endpoint is configured."""

    async def run(self, messages, *, session_handle=None, system_prompt=None, on_event=None):
        raise WorkerInvocationFailed("no worker endpoint configured")


class HttpWorker(Worker):
    """
    Worker reached over HTTP.

    POSTs the turn to `worker_url` and reads newline-delimited JSON events
    back. Each line is a progress event; the final `agent_done` line carries
    the aggregated text, usage and session handle.
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.worker_timeout_seconds
        self.transport = transport

    async def run(
        self,
        messages: list[WorkerMessage],
        *,
        session_handle: Optional[str] = None,
        system_prompt: Optional[str] = None,
        on_event: Optional[EventCallback] = None,
    ) -> WorkerResult:
        payload = {
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "session_id": session_handle,
            "system_prompt": system_prompt,
        }

        chunks: list[str] = []
        tools: dict[str, dict[str, Any]] = {}
        done: dict[str, Any] = {}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream("POST", f"{self.base_url}/turns", json=payload) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        event = self._parse_line(line)
                        if event is None:
                            continue
                        if on_event is not None:
                            await on_event(event)

                        if event.type == "text_chunk":
                            chunks.append(str(event.data.get("text", "")))
                        elif event.type == "tool_use":
                            tool_id = str(event.data.get("id", len(tools)))
                            tools[tool_id] = {
                                "name": event.data.get("name", ""),
                                "input": event.data.get("input") or {},
                            }
                        elif event.type == "tool_result":
                            tool_id = str(event.data.get("id", ""))
                            tools.setdefault(tool_id, {"name": "", "input": {}})
                            tools[tool_id]["result"] = event.data.get("result")
                        elif event.type == "agent_done":
                            done = event.data
        except httpx.HTTPError as e:
            raise WorkerInvocationFailed(str(e)) from e

        text = done.get("text") if isinstance(done.get("text"), str) else "".join(chunks)
        return WorkerResult(
            text=text,
            tool_calls=tuple(
                ToolCall(
                    tool_use_id=tool_id,
                    name=tool["name"],
                    input=tool["input"],
                    result=None if tool.get("result") is None else str(tool["result"]),
                )
                for tool_id, tool in tools.items()
            ),
            usage=done.get("usage"),
            session_handle=done.get("session_id") or session_handle,
        )

    def _parse_line(self, line: str) -> Optional[WorkerEvent]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed worker event line: {line[:120]}")
            return None
        event_type = data.pop("type", None)
        if event_type not in ("text_chunk", "tool_use", "tool_result", "agent_done"):
            return None
        return WorkerEvent(type=event_type, data=data)


def build_worker() -> Worker:
    """Worker configured from settings."""
    if settings.worker_url:
        return HttpWorker(settings.worker_url)
    logger.warning("THREADGATE_WORKER_URL not set, worker invocations will fail")
    return UnconfiguredWorker()
