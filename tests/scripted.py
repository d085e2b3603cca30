"""A scripted provider adapter and event builders for driving the runtime without a network."""

import asyncio
import json
from collections.abc import Callable, Sequence
from typing import Any

from chatcore.errors import GatewayError
from chatcore.models.llm import GatewayEvent, LLMMessage, LLMUsage, ModelDescriptor, ToolSpec

Turn = list[GatewayEvent] | GatewayError | Callable[[Sequence[LLMMessage], str | None], Any]


def reply(text: str, chunks: int = 1) -> list[GatewayEvent]:
    """A plain text reply split into ``chunks`` token events."""
    if chunks <= 1 or len(text) <= 1:
        tokens = [text] if text else []
    else:
        size = max(1, len(text) // chunks)
        tokens = [text[i : i + size] for i in range(0, len(text), size)]
    return [
        *(GatewayEvent.token(token) for token in tokens),
        GatewayEvent.finish("end_turn", LLMUsage(input_tokens=10, output_tokens=max(1, len(tokens)))),
    ]


def tool_use(*calls: tuple[str, str, dict[str, Any] | str], text: str = "") -> list[GatewayEvent]:
    """A reply requesting tool calls given as (id, name, arguments)."""
    events = [GatewayEvent.token(text)] if text else []
    for call_id, name, arguments in calls:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        events.append(GatewayEvent.tool_call_start(call_id, name))
        # Split the arguments to exercise delta concatenation
        middle = len(raw) // 2
        events.append(GatewayEvent.tool_call_delta(call_id, raw[:middle]))
        events.append(GatewayEvent.tool_call_delta(call_id, raw[middle:]))
        events.append(GatewayEvent.tool_call_end(call_id))
    events.append(GatewayEvent.finish("tool_use", LLMUsage(input_tokens=10, output_tokens=5)))
    return events


class ScriptedAdapter:
    """Provider adapter that replays scripted turns.

    Each turn is a list of events, a ``GatewayError`` raised before any
    event, or a callable ``(messages, system_prompt)`` returning either.
    With ``respond`` set, every call is answered by it instead of the script.
    ``delays`` holds per-system-prompt pauses (seconds) before a turn starts.
    """

    def __init__(
        self,
        script: Sequence[Turn] = (),
        respond: Callable[..., Any] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.script = list(script)
        self.respond = respond
        self.delays = dict(delays or {})
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def stream(
        self,
        descriptor: ModelDescriptor,
        messages: Sequence[LLMMessage],
        tools: Sequence[ToolSpec] | None = None,
        system_prompt: str | None = None,
    ):
        self.calls.append(
            {"model": descriptor.model_id, "messages": list(messages), "tools": tools, "system_prompt": system_prompt}
        )
        if delay := self.delays.get(system_prompt or ""):
            await asyncio.sleep(delay)
        if self.respond is not None:
            turn = self.respond(messages, system_prompt)
        else:
            assert self.script, "ScriptedAdapter ran out of turns"
            turn = self.script.pop(0)
        if callable(turn):
            turn = turn(messages, system_prompt)
        if isinstance(turn, GatewayError):
            raise turn
        for event in turn:
            yield event

    async def aclose(self) -> None:
        self.closed = True

    @property
    def last_user_input(self) -> str:
        return self.calls[-1]["messages"][-1].content

