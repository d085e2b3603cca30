"""CUID-based identifiers."""

from cuid2 import cuid_wrapper

cuid = cuid_wrapper()


def new_id() -> str:
    """Generate a new CUID for conversations, messages, runs and tool calls."""
    return cuid()
