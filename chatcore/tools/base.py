"""Tool definitions shared by the registry and executor."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from chatcore.models.llm import ToolSpec

ToolHandler = Callable[[BaseModel], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool available to the model.

    Handlers receive only their validated input model, never store or
    gateway internals.
    """

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    halts_on_error: bool = False
    timeout_s: float | None = None

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Validate raw model-supplied arguments against the input schema."""
        return self.input_schema_class.model_validate(raw_input)

    def to_spec(self) -> ToolSpec:
        schema = self.input_schema_class.model_json_schema()
        return ToolSpec(name=self.name, description=self.description, input_schema=schema)
