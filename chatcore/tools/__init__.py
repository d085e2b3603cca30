"""Tools the model may call mid-generation."""

from chatcore.tools.base import ToolDefinition
from chatcore.tools.executor import ToolExecutor
from chatcore.tools.registry import ToolsRegistry, create_default_registry

__all__ = ["ToolDefinition", "ToolExecutor", "ToolsRegistry", "create_default_registry"]
