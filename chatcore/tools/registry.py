"""Tools registry for managing model-callable tools."""

from collections.abc import Iterable

from chatcore.errors import DuplicateToolError
from chatcore.models.llm import ToolSpec
from chatcore.tools.base import ToolDefinition
from chatcore.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry of tool definitions, populated once at startup."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry.

        Raises:
            DuplicateToolError: If a tool with the same name already exists
        """
        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool {tool.name}")

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def get_specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        """Get advertised schemas, optionally restricted to ``names``."""
        if names is None:
            return [tool.to_spec() for tool in self._tools.values()]
        return [self._tools[name].to_spec() for name in names if name in self._tools]

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def create_default_registry() -> ToolsRegistry:
    """Registry holding the built-in tools."""
    from chatcore.tools.builtin import builtin_tools

    return ToolsRegistry(builtin_tools())
