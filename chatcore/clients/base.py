"""Shared pieces of the provider adapters: the adapter protocol, rate limiting and token estimation."""

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

import tiktoken
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from chatcore.models.llm import GatewayEvent, LLMMessage, ModelDescriptor, ToolSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


class ProviderAdapter(Protocol):
    """Normalized streaming capability every provider implements.

    ``stream`` yields ``GatewayEvent``s in generation order and ends with a
    ``finish`` event. Failures are raised as typed ``GatewayError``s.
    """

    def stream(
        self,
        descriptor: ModelDescriptor,
        messages: Sequence[LLMMessage],
        tools: Sequence[ToolSpec] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[GatewayEvent]: ...

    async def aclose(self) -> None: ...


class ProviderRateLimiter:
    """Client-side request and token rate limiter using the limits library."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str) -> None:
        """Wait until the request fits within the request and token windows."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_reset(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=max(1, estimated_tokens)):
            await self._wait_for_reset(self.token_limit, token_identifier, "Token")

    async def _wait_for_reset(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class TokenEstimator:
    """Approximate token counts, used for rate limiting and history truncation."""

    def __init__(self, encoding: str = "cl100k_base"):
        try:
            self.tokenizer: tiktoken.Encoding | None = tiktoken.get_encoding(encoding)
        except Exception:
            logger.warning(f"Tokenizer {encoding} unavailable, falling back to character estimate")
            self.tokenizer = None

    def estimate(self, text: str) -> int:
        try:
            return len(self.tokenizer.encode(text)) if self.tokenizer else len(text) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(text) // 4

    def estimate_message(self, message: LLMMessage) -> int:
        text = message.content
        for call in message.tool_calls:
            text += call.name + str(call.arguments)
        return self.estimate(text)

    def estimate_request(
        self, messages: Sequence[LLMMessage], system_prompt: str | None, tools: Sequence[ToolSpec] | None
    ) -> int:
        total = self.estimate(system_prompt or "")
        total += self.estimate_tools(tools)
        return total + sum(self.estimate_message(m) for m in messages)

    def estimate_tools(self, tools: Sequence[ToolSpec] | None) -> int:
        if not tools:
            return 0
        return self.estimate("".join(tool.name + tool.description + str(tool.input_schema) for tool in tools))

    def truncate(
        self,
        messages: Sequence[LLMMessage],
        max_tokens: int,
        system_prompt: str | None = None,
        tools: Sequence[ToolSpec] | None = None,
    ) -> list[LLMMessage]:
        """Drop the oldest messages until the conversation fits in ``max_tokens``.

        The newest message is always kept, and the result never starts with a
        tool or assistant message.
        """
        if not messages:
            return []

        available_tokens = max_tokens - self.estimate(system_prompt or "") - self.estimate_tools(tools)

        truncated: list[LLMMessage] = []
        current_tokens = 0
        for message in reversed(messages):
            message_tokens = self.estimate_message(message)
            if truncated and current_tokens + message_tokens > available_tokens:
                break
            truncated.insert(0, message)
            current_tokens += message_tokens

        if len(truncated) < len(messages):
            while len(truncated) > 1 and truncated[0].role != "user":
                truncated.pop(0)
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated
