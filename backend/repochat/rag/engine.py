from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from ..core.errors import LLMUpstreamError
from ..models.chat import (
    ChatMessage,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextFragment,
    ToolCall,
    ToolCallBatch,
    ToolResult,
    TurnParts,
)
from ..settings import settings
from .tool_runtime import ToolContext, ToolRuntime

logger = logging.getLogger(__name__)


class ChatSession(Protocol):
    def send(self, parts: TurnParts) -> AsyncIterator[StreamEvent]: ...


class CompletionClient(Protocol):
    def open_chat(
        self,
        history: list[ChatMessage],
        tools: list[dict[str, Any]],
        system_instruction: str,
    ) -> ChatSession: ...


@dataclass
class TurnState:
    """Bookkeeping for the turn currently in flight."""

    index: int = 0
    calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)


def progress_marker(call: ToolCall, active_path: str | None = None) -> str:
    path = str((call.args or {}).get("path") or "").strip()
    if call.name == "read_file":
        return f"\n\n> Reading `{path or '?'}`...\n\n"
    if call.name == "update_file":
        return f"\n\n> Updating `{path or active_path or 'current file'}`...\n\n"
    return f"\n\n> Calling `{call.name}`...\n\n"


class ConversationEngine:
    def __init__(
        self,
        client: CompletionClient,
        runtime: ToolRuntime,
        *,
        max_turns: int | None = None,
    ):
        self.client = client
        self.runtime = runtime
        self.max_turns = max(1, int(max_turns or settings.MAX_TOOL_TURNS))

    async def run(
        self,
        history: list[ChatMessage],
        parts: TurnParts,
        system_context: str,
        ctx: ToolContext,
    ) -> AsyncIterator[str]:
        """Stream the model's answer, running requested tools between turns.

        `history` is read, never modified. The generator stops sending turns as
        soon as the consumer stops iterating; a tool already running finishes
        but its result goes nowhere.
        """
        chat = self.client.open_chat(list(history), self.runtime.declarations(), system_context)
        outgoing: TurnParts = parts
        turn = TurnState()

        while True:
            turn = TurnState(index=turn.index + 1)
            logger.info("engine.turn.start turn=%s", turn.index)

            async with aclosing(chat.send(outgoing)) as events:
                async for event in events:
                    if isinstance(event, TextFragment):
                        if event.text:
                            yield event.text
                    elif isinstance(event, ToolCallBatch):
                        for call in event.calls:
                            turn.calls.append(call)
                            yield progress_marker(call, ctx.active_path)
                            turn.results.append(await self.runtime.dispatch(call, ctx))
                    elif isinstance(event, StreamError):
                        logger.warning("engine.turn.failed turn=%s err=%s", turn.index, event.message)
                        raise LLMUpstreamError(event.message)
                    elif isinstance(event, StreamEnd):
                        break

            logger.info("engine.turn.done turn=%s tool_calls=%s", turn.index, len(turn.calls))
            if not turn.calls:
                return
            if turn.index >= self.max_turns:
                logger.warning("engine.turn_cap_reached turns=%s", turn.index)
                yield "\n\nI made too many tool calls without reaching a final answer. Please narrow the request."
                return
            outgoing = list(turn.results)
