"""Agentic workflow and streaming conversation runtime."""

__version__ = "0.1.0"
