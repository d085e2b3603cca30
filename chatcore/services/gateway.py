"""Model gateway: one cancellable streaming interface over every provider adapter."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field

from chatcore.clients.anthropic import AnthropicAdapter, AnthropicConfig
from chatcore.clients.base import ProviderAdapter
from chatcore.clients.openai import OpenAIAdapter, OpenAIConfig
from chatcore.errors import GatewayError, Malformed, ProviderUnavailable
from chatcore.models.llm import (
    GatewayEvent,
    GatewayEventKind,
    LLMMessage,
    LLMToolCall,
    LLMUsage,
    ModelDescriptor,
    Provider,
    ToolSpec,
)
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class GatewayConfig:
    """Provider credentials and adapter settings.

    Keys are injected by the caller (or read from the environment by the
    adapters) and never logged.
    """

    anthropic_api_key: str | None = field(default=None, repr=False)
    openai_api_key: str | None = field(default=None, repr=False)
    anthropic: AnthropicConfig = field(default_factory=AnthropicConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)


AdapterFactory = Callable[[GatewayConfig], ProviderAdapter]

ADAPTER_FACTORIES: dict[Provider, AdapterFactory] = {
    Provider.ANTHROPIC: lambda config: AnthropicAdapter(api_key=config.anthropic_api_key, config=config.anthropic),
    Provider.OPENAI: lambda config: OpenAIAdapter(api_key=config.openai_api_key, config=config.openai),
}


class GatewayStream:
    """Cancellable handle over one provider call.

    A producer task pumps adapter events into a queue; iterating the handle
    drains it. Exactly one terminal event (``finish`` or ``error``) is
    delivered, and nothing after it.
    """

    def __init__(self, source: AsyncIterator[GatewayEvent], *, label: str = "gateway"):
        self.label = label
        self._queue: asyncio.Queue[GatewayEvent | None] = asyncio.Queue()
        self._finished = False
        self._task = asyncio.create_task(self._pump(source), name=f"gateway-stream:{label}")

    async def _pump(self, source: AsyncIterator[GatewayEvent]) -> None:
        terminal = False
        try:
            async for event in source:
                self._queue.put_nowait(event)
                if event.is_terminal:
                    terminal = True
                    break
            if not terminal:
                logger.error(f"Stream from {self.label} ended without a terminal event")
                self._queue.put_nowait(GatewayEvent.failure(Malformed("Stream ended without a finish event")))
        except GatewayError as e:
            logger.warning(f"Stream from {self.label} failed: {e.kind}: {e}")
            self._queue.put_nowait(GatewayEvent.failure(e))
        except Exception as e:
            logger.error(f"Unexpected error in stream from {self.label}: {e}", exc_info=True)
            self._queue.put_nowait(GatewayEvent.failure(ProviderUnavailable(str(e) or type(e).__name__)))
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
            self._queue.put_nowait(None)

    def __aiter__(self) -> "GatewayStream":
        return self

    async def __anext__(self) -> GatewayEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            self._finished = True
            raise StopAsyncIteration
        if event.is_terminal:
            self._finished = True
        return event

    def cancel(self) -> None:
        """Abort the provider call. Iteration ends after already-queued events."""
        if not self._task.done():
            logger.debug(f"Cancelling stream from {self.label}")
            self._task.cancel()
            self._queue.put_nowait(None)

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    async def __aenter__(self) -> "GatewayStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.cancel()


@dataclass
class StreamResult:
    text: str
    tool_calls: list[LLMToolCall]
    stop_reason: str | None
    usage: LLMUsage


class StreamAccumulator:
    """Collects text and concatenates tool-call argument deltas."""

    def __init__(self) -> None:
        self.text = ""
        self.stop_reason: str | None = None
        self.usage = LLMUsage()
        self.error: GatewayError | None = None
        self._tool_names: dict[str, str] = {}
        self._tool_arguments: dict[str, list[str]] = {}

    def add(self, event: GatewayEvent) -> None:
        match event.kind:
            case GatewayEventKind.TOKEN:
                self.text += event.text
            case GatewayEventKind.TOOL_CALL_START:
                self._tool_names[event.tool_call_id] = event.tool_name or ""
                self._tool_arguments[event.tool_call_id] = []
            case GatewayEventKind.TOOL_CALL_DELTA:
                if event.tool_call_id not in self._tool_arguments:
                    raise Malformed(f"Argument delta for unknown tool call {event.tool_call_id}")
                self._tool_arguments[event.tool_call_id].append(event.text)
            case GatewayEventKind.TOOL_CALL_END:
                pass
            case GatewayEventKind.FINISH:
                self.stop_reason = event.stop_reason
                self.usage.add(event.usage)
            case GatewayEventKind.ERROR:
                self.error = event.error

    def tool_calls(self) -> list[LLMToolCall]:
        """Assemble completed tool calls.

        Raises:
            Malformed: If a call's concatenated arguments are not a JSON object
        """
        calls = []
        for call_id, name in self._tool_names.items():
            raw = "".join(self._tool_arguments[call_id]).strip()
            try:
                arguments = json.loads(raw) if raw else {}
            except json.JSONDecodeError as e:
                raise Malformed(f"Tool call {name} has invalid JSON arguments: {e}") from e
            if not isinstance(arguments, dict):
                raise Malformed(f"Tool call {name} arguments are not an object")
            calls.append(LLMToolCall(id=call_id, name=name, arguments=arguments))
        return calls

    def result(self) -> StreamResult:
        if self.error is not None:
            raise self.error
        return StreamResult(
            text=self.text, tool_calls=self.tool_calls(), stop_reason=self.stop_reason, usage=self.usage
        )


class ModelGateway:
    """Dispatches calls to the adapter registered for the model's provider."""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
    ):
        self.config = config or GatewayConfig()
        self._adapters: dict[Provider, ProviderAdapter] = dict(adapters or {})

    def adapter_for(self, provider: Provider) -> ProviderAdapter:
        """Get (creating on first use) the adapter for ``provider``."""
        adapter = self._adapters.get(provider)
        if adapter is None:
            adapter = ADAPTER_FACTORIES[provider](self.config)
            self._adapters[provider] = adapter
        return adapter

    def call(
        self,
        descriptor: ModelDescriptor,
        messages: Sequence[LLMMessage],
        tools: Sequence[ToolSpec] | None = None,
        system_prompt: str | None = None,
    ) -> GatewayStream:
        """Open a streaming call.

        Args:
            descriptor: Model to call
            messages: Conversation history, oldest first
            tools: Tool schemas advertised to the model
            system_prompt: Optional system prompt

        Returns:
            A cancellable stream of gateway events

        Raises:
            ValueError: If ``messages`` is empty
        """
        if not messages:
            raise ValueError("At least one message is required")
        if tools and not descriptor.capabilities.tool_calling:
            logger.warning(f"Model {descriptor.model_id} does not support tool calling, tools dropped")
            tools = None

        logger.info(f"Calling {descriptor.provider}/{descriptor.model_id} with {len(messages)} messages")
        return GatewayStream(
            self._open(descriptor, list(messages), tools, system_prompt),
            label=f"{descriptor.provider}/{descriptor.model_id}",
        )

    async def _open(
        self,
        descriptor: ModelDescriptor,
        messages: list[LLMMessage],
        tools: Sequence[ToolSpec] | None,
        system_prompt: str | None,
    ) -> AsyncIterator[GatewayEvent]:
        adapter = self.adapter_for(descriptor.provider)
        events = adapter.stream(descriptor, messages, tools=tools, system_prompt=system_prompt)
        try:
            async for event in events:
                yield event
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
