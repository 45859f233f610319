"""Conversation persistence and automatic memory for LLM chat clients."""

__version__ = "0.1.0"
