"""
Bounded buffer of recent transcript excerpts.

The agent loop pushes a short "user: ... / assistant: ..." excerpt after
every turn. A separate self-review process reads the rendered buffer;
from the engine's point of view it is write-only.
"""

import threading
from collections import deque

ENTRY_SEPARATOR = "\n\n---\n\n"


class TranscriptBuffer:
    """Thread-safe ring buffer holding the most recent excerpts."""

    def __init__(self, max_entries: int = 10) -> None:
        self.max_entries = max_entries
        self._entries: deque[str] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def add(self, excerpt: str) -> None:
        with self._lock:
            self._entries.append(excerpt)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def render(self) -> str:
        """All excerpts, oldest first, as one block of text."""
        return ENTRY_SEPARATOR.join(self.snapshot())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def make_excerpt(user_text: str, answer: str, max_chars: int = 1000) -> str:
    """Format one turn the way the self-review reader expects."""
    excerpt = f"user: {user_text}\n\nassistant: {answer}"
    if len(excerpt) > max_chars:
        excerpt = excerpt[:max_chars] + "..."
    return excerpt
