"""OpenAI-compatible chat-completions adapter streaming server-sent events over httpx."""

import json
import os
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from chatcore.clients.base import ProviderRateLimiter, TokenEstimator
from chatcore.errors import AuthError, Malformed, ProviderUnavailable, error_from_status, parse_retry_after
from chatcore.models.llm import GatewayEvent, LLMMessage, LLMUsage, ModelDescriptor, Provider, ToolSpec
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

PROVIDER = Provider.OPENAI.value


@dataclass
class OpenAIConfig:
    """Configuration for the OpenAI-compatible adapter."""

    base_url: str = "https://api.openai.com/v1"
    timeout_s: float = 60.0
    temperature: float = 0.1
    token_headroom: int = 2000
    requests_per_minute: int = 60
    tokens_per_minute: int = 90_000


class OpenAIAdapter:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        config: OpenAIConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or OpenAIConfig()
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise AuthError("OPENAI_API_KEY environment variable is required", provider=PROVIDER)
        self.client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_s,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self.rate_limiter = ProviderRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        self.estimator = TokenEstimator()

    async def stream(
        self,
        descriptor: ModelDescriptor,
        messages: Sequence[LLMMessage],
        tools: Sequence[ToolSpec] | None = None,
        system_prompt: str | None = None,
    ) -> AsyncIterator[GatewayEvent]:
        truncated = self.estimator.truncate(
            messages,
            descriptor.capabilities.max_tokens - self.config.token_headroom,
            system_prompt=system_prompt,
            tools=tools,
        )
        await self.rate_limiter.check_rate_limit(
            self.estimator.estimate_request(truncated, system_prompt, tools), PROVIDER
        )

        payload: dict[str, Any] = {
            "model": descriptor.model_id,
            "messages": to_openai_messages(truncated, system_prompt),
            "max_tokens": descriptor.max_output_tokens,
            "temperature": descriptor.temperature if descriptor.temperature is not None else self.config.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in tools
            ]

        logger.debug(f"Making OpenAI-compatible call with model: {descriptor.model_id}, {len(truncated)} messages")

        try:
            async with self.client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.debug(f"OpenAI error body: {body[:500]!r}")
                    raise error_from_status(
                        response.status_code,
                        f"OpenAI returned HTTP {response.status_code}",
                        provider=PROVIDER,
                        retry_after_ms=parse_retry_after(response.headers.get("retry-after")),
                    )

                parser = _ChunkParser()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line.removeprefix("data:").strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except json.JSONDecodeError as e:
                        raise Malformed(f"Invalid JSON in stream chunk: {e}", provider=PROVIDER) from e
                    for event in parser.feed(data):
                        yield event

                for event in parser.close():
                    yield event
                yield GatewayEvent.finish(parser.stop_reason, parser.usage)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"Request to OpenAI timed out: {e}", provider=PROVIDER) from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Connection to OpenAI failed: {e}", provider=PROVIDER) from e

    async def aclose(self) -> None:
        await self.client.aclose()


class _ChunkParser:
    """Turns chat-completion chunks into gateway events."""

    def __init__(self) -> None:
        self.stop_reason: str | None = None
        self.usage = LLMUsage()
        self._open_calls: dict[int, str] = {}

    def feed(self, data: dict[str, Any]) -> list[GatewayEvent]:
        if not isinstance(data, dict):
            raise Malformed("Stream chunk is not an object", provider=PROVIDER)

        events: list[GatewayEvent] = []
        if usage := data.get("usage"):
            self.usage = LLMUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            )

        choices = data.get("choices") or []
        if not choices:
            return events

        choice = choices[0]
        delta = choice.get("delta") or {}
        if content := delta.get("content"):
            events.append(GatewayEvent.token(content))

        for call in delta.get("tool_calls") or []:
            index = call.get("index", 0)
            function = call.get("function") or {}
            if index not in self._open_calls:
                if not call.get("id") or not function.get("name"):
                    raise Malformed("Tool call chunk without id or name", provider=PROVIDER)
                self._open_calls[index] = call["id"]
                events.append(GatewayEvent.tool_call_start(call["id"], function["name"]))
            if arguments := function.get("arguments"):
                events.append(GatewayEvent.tool_call_delta(self._open_calls[index], arguments))

        if finish_reason := choice.get("finish_reason"):
            self.stop_reason = "tool_use" if finish_reason == "tool_calls" else finish_reason
            events.extend(self.close())

        return events

    def close(self) -> list[GatewayEvent]:
        events = [GatewayEvent.tool_call_end(call_id) for call_id in self._open_calls.values()]
        self._open_calls.clear()
        return events


def to_openai_messages(messages: Sequence[LLMMessage], system_prompt: str | None) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == "tool":
            converted.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content})
        elif message.role == "assistant" and message.tool_calls:
            converted.append(
                {
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                        }
                        for call in message.tool_calls
                    ],
                }
            )
        else:
            converted.append({"role": message.role, "content": message.content})

    return converted
