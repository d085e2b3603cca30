"""Reusable agent definitions, looked up by id."""

from chatcore.agents.defaults import create_default_agent_registry, default_agents
from chatcore.agents.registry import AgentRegistry, resolve_spec

__all__ = ["AgentRegistry", "create_default_agent_registry", "default_agents", "resolve_spec"]
