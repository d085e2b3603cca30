"""Anthropic streaming adapter with rate limiting and error mapping."""

import os
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from chatcore.clients.base import ProviderRateLimiter, TokenEstimator
from chatcore.errors import (
    AuthError,
    GatewayError,
    Malformed,
    ProviderUnavailable,
    error_from_status,
    parse_retry_after,
)
from chatcore.models.llm import GatewayEvent, LLMMessage, LLMUsage, ModelDescriptor, Provider, ToolSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

PROVIDER = Provider.ANTHROPIC.value


@dataclass
class AnthropicConfig:
    """Configuration for the Anthropic adapter."""

    temperature: float = 0.1
    timeout_s: float = 60.0

    # Token limits for truncation
    max_conversation_tokens: int = 200_000
    token_headroom: int = 2000  # Reserve tokens for response

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class AnthropicAdapter:
    """Streams Claude responses as normalized gateway events."""

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        client: AsyncAnthropic | None = None,
    ):
        """Initialize the adapter.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Adapter configuration
            client: Preconfigured SDK client, mainly for tests
        """
        self.config = config or AnthropicConfig()
        if client is None:
            api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise AuthError("ANTHROPIC_API_KEY environment variable is required", provider=PROVIDER)
            # Retries are owned by the retry controller
            client = AsyncAnthropic(api_key=api_key, max_retries=0, timeout=self.config.timeout_s)
        self.client = client
        self.rate_limiter = ProviderRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        self.estimator = TokenEstimator()

    async def stream(
        self,
        descriptor: ModelDescriptor,
        messages: Sequence[LLMMessage],
        tools: Sequence[ToolSpec] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[GatewayEvent]:
        max_context = min(self.config.max_conversation_tokens, descriptor.capabilities.max_tokens)
        truncated = self.estimator.truncate(
            messages, max_context - self.config.token_headroom, system_prompt=system_prompt, tools=tools
        )
        estimated_tokens = self.estimator.estimate_request(truncated, system_prompt, tools)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens, PROVIDER)

        params: dict[str, Any] = {
            "model": descriptor.model_id,
            "max_tokens": descriptor.max_output_tokens,
            "temperature": descriptor.temperature if descriptor.temperature is not None else self.config.temperature,
            "messages": to_anthropic_messages(truncated),
            "stream": True,
        }
        if system_prompt:
            params["system"] = system_prompt
        if tools:
            params["tools"] = [tool.model_dump() for tool in tools]

        logger.debug(
            f"Making Anthropic API call with model: {descriptor.model_id}, "
            f"{len(truncated)} messages, {len(tools) if tools else 0} tools"
        )

        try:
            response_stream = await self.client.messages.create(**params)
        except anthropic.APIError as e:
            raise map_anthropic_error(e) from e

        usage = LLMUsage()
        stop_reason: str | None = None
        tool_blocks: dict[int, str] = {}
        try:
            async for event in response_stream:
                match event.type:
                    case "message_start":
                        usage.input_tokens = event.message.usage.input_tokens
                    case "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            tool_blocks[event.index] = block.id
                            yield GatewayEvent.tool_call_start(block.id, block.name)
                        elif block.type == "text" and block.text:
                            yield GatewayEvent.token(block.text)
                    case "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield GatewayEvent.token(delta.text)
                        elif delta.type == "input_json_delta":
                            tool_call_id = tool_blocks.get(event.index)
                            if tool_call_id is None:
                                raise Malformed("Tool input delta for unknown content block", provider=PROVIDER)
                            yield GatewayEvent.tool_call_delta(tool_call_id, delta.partial_json)
                    case "content_block_stop":
                        if event.index in tool_blocks:
                            yield GatewayEvent.tool_call_end(tool_blocks[event.index])
                    case "message_delta":
                        stop_reason = event.delta.stop_reason
                        if event.usage is not None:
                            usage.output_tokens = event.usage.output_tokens
                    case "message_stop":
                        logger.debug(f"Response finished - Stop reason: {stop_reason}")
                        yield GatewayEvent.finish(stop_reason, usage)
                        return
                    case _:
                        logger.debug(f"Ignoring stream event: {event.type}")
        except anthropic.APIError as e:
            raise map_anthropic_error(e) from e
        finally:
            await response_stream.close()

    async def aclose(self) -> None:
        await self.client.close()


def map_anthropic_error(error: anthropic.APIError) -> GatewayError:
    """Translate an SDK exception into the gateway error taxonomy."""
    if isinstance(error, anthropic.APIConnectionError):
        return ProviderUnavailable(f"Connection to Anthropic failed: {error}", provider=PROVIDER)
    if isinstance(error, anthropic.APIStatusError):
        logger.debug(f"Anthropic error body: {error.body}")
        retry_after_ms = parse_retry_after(error.response.headers.get("retry-after"))
        return error_from_status(
            error.status_code,
            f"Anthropic returned HTTP {error.status_code}",
            provider=PROVIDER,
            retry_after_ms=retry_after_ms,
        )
    return Malformed(f"Unexpected Anthropic response: {error}", provider=PROVIDER)


def to_anthropic_messages(messages: Sequence[LLMMessage]) -> list[dict[str, Any]]:
    """Convert provider-agnostic messages into the Messages API shape.

    Tool results become ``tool_result`` blocks on a user turn; consecutive
    results are merged into one turn.
    """
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue

        if message.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
                "is_error": message.is_error,
            }
            previous = converted[-1] if converted else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if message.role == "assistant" and message.tool_calls:
            content: list[dict[str, Any]] = []
            if message.content:
                content.append({"type": "text", "text": message.content})
            content.extend(
                {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
                for call in message.tool_calls
            )
            converted.append({"role": "assistant", "content": content})
            continue

        converted.append({"role": message.role, "content": message.content})

    return converted
