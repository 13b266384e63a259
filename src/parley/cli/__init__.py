"""
Parley CLI - interactive chat against a configured backend.
"""

from parley.cli.chat import ChatSession, main

__all__ = ["ChatSession", "main"]
