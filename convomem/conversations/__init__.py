"""Conversation persistence with lazy loading and a bounded cache."""
