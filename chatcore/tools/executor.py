"""Tool executor: validates and runs batches of model-requested tool calls."""

import asyncio
import json
import time
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import ValidationError

from chatcore.errors import ErrorKind
from chatcore.models.messages import ToolCall, ToolResult
from chatcore.tools.registry import ToolsRegistry
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)

ExecutionMode = Literal["parallel", "sequential"]


class ToolExecutor:
    """Runs tool calls against a registry.

    Failures never raise: every call produces a ``ToolResult``, with
    ``error_kind`` set when validation, execution or the timeout failed.
    """

    def __init__(self, registry: ToolsRegistry, default_timeout_s: float | None = 30.0):
        self.registry = registry
        self.default_timeout_s = default_timeout_s

    async def execute(self, calls: Sequence[ToolCall], mode: ExecutionMode = "parallel") -> list[ToolResult]:
        """Execute a batch of tool calls.

        Args:
            calls: Tool calls in the order the model emitted them
            mode: ``parallel`` waits for every call to settle; ``sequential`` runs
                them in order and stops after a failure of a ``halts_on_error`` tool

        Returns:
            Results in call order
        """
        if not calls:
            return []

        logger.info(f"Executing {len(calls)} tool call(s) in {mode} mode")

        if mode == "parallel":
            return list(await asyncio.gather(*(self.execute_one(call) for call in calls)))

        results: list[ToolResult] = []
        for call in calls:
            result = await self.execute_one(call)
            results.append(result)

            tool = self.registry.get_tool(call.tool_name)
            if not result.ok and tool is not None and tool.halts_on_error:
                logger.warning(f"Tool {call.tool_name} failed and halts the batch")
                break

        return results

    async def execute_one(self, call: ToolCall) -> ToolResult:
        """Execute a single tool call."""
        start = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        tool = self.registry.get_tool(call.tool_name)
        if tool is None:
            available = ", ".join(self.registry.get_tool_names()) or "none"
            logger.error(f"Unknown tool requested: {call.tool_name}")
            return self._failure(
                call, ErrorKind.INVALID_INPUT, f"Unknown tool {call.tool_name}. Available tools: {available}", elapsed()
            )

        try:
            arguments = self._decode_arguments(call.raw_input)
            parsed = tool.parse_input(arguments)
        except (ValueError, ValidationError) as e:
            # pydantic's ValidationError is a ValueError; json errors are too
            logger.warning(f"Invalid input for tool {call.tool_name}: {e}")
            return self._failure(call, ErrorKind.INVALID_INPUT, str(e), elapsed())

        timeout_s = tool.timeout_s if tool.timeout_s is not None else self.default_timeout_s
        logger.debug(f"Executing tool: {call.tool_name} with input: {arguments}")

        try:
            async with asyncio.timeout(timeout_s):
                output = await tool.handler(parsed)
        except TimeoutError:
            logger.error(f"Tool {call.tool_name} timed out after {timeout_s}s")
            return self._failure(call, ErrorKind.TIMEOUT, f"Timed out after {timeout_s}s", elapsed())
        except Exception as e:
            logger.error(f"Tool {call.tool_name} failed: {e}", exc_info=True)
            return self._failure(call, ErrorKind.EXECUTION_ERROR, str(e) or type(e).__name__, elapsed())

        content = output if isinstance(output, str) else json.dumps(output, default=str)
        logger.debug(f"Tool {call.tool_name} succeeded: {content[:100]}...")
        return ToolResult(
            id=call.id,
            tool_name=call.tool_name,
            output=output,
            content=content,
            duration_ms=elapsed(),
        )

    @staticmethod
    def _decode_arguments(raw_input: str | dict[str, Any]) -> dict[str, Any]:
        if isinstance(raw_input, dict):
            return raw_input
        if not raw_input.strip():
            return {}
        decoded = json.loads(raw_input)
        if not isinstance(decoded, dict):
            raise ValueError("Tool input must be a JSON object")
        return decoded

    @staticmethod
    def _failure(call: ToolCall, kind: ErrorKind, message: str, duration_ms: float) -> ToolResult:
        return ToolResult(
            id=call.id,
            tool_name=call.tool_name,
            content=f"Error ({kind}): {message}",
            error_kind=kind,
            error_message=message,
            duration_ms=duration_ms,
        )