"""
Loop Guard - stops a turn that has stopped making progress.

A model that keeps calling tools can burn the whole inference budget
without ever answering. The guard watches one turn's iterations and
trips, in priority order, when:

1. the iteration count reaches the cap,
2. the assistant text repeats (normalized) twice in a row,
3. the same batch of tool calls repeats (normalized) twice in a row.

A repeat is counted against the immediately preceding iteration, so the
guard trips on the second consecutive repeat: the third identical
occurrence. Argument key order and whitespace are normalized away so
that cosmetically different calls still count as the same action.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from parley.types import ToolCall

logger = logging.getLogger(__name__)

SIGNATURE_SEPARATOR = "|"
REPEAT_LIMIT = 2


class GuardReason(str, Enum):
    """Why the guard tripped."""
    ITERATION_CAP = "iteration_cap"
    REPEATED_TEXT = "repeated_text"
    REPEATED_TOOL_CALLS = "repeated_tool_calls"


@dataclass
class GuardVerdict:
    """Result of checking one iteration."""
    tripped: bool
    reason: GuardReason | None = None
    detail: str = ""


def normalize_text(text: str | None) -> str:
    return (text or "").strip().lower()


def _sort_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _sort_keys(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_sort_keys(v) for v in value]
    return value


def normalize_arguments(arguments: str | None) -> str:
    """
    Canonical form of a tool call's argument text.

    Parses the arguments, sorts keys recursively and re-serializes
    compactly. Text that does not parse falls back to its trimmed form.
    """
    raw = arguments or ""
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw.strip()
    return json.dumps(_sort_keys(parsed), separators=(",", ":"), ensure_ascii=False)


def tool_call_signature(tool_calls: list[ToolCall]) -> str:
    """Fingerprint of one batch of tool calls, in call order."""
    return SIGNATURE_SEPARATOR.join(
        f"{tc.name}:{normalize_arguments(tc.arguments)}" for tc in tool_calls
    )


class LoopGuard:
    """
    Tracks one turn's iterations.

    Create a fresh guard per turn; check() is called once per iteration
    that produced tool calls.
    """

    def __init__(self, max_iterations: int = 25) -> None:
        self.max_iterations = max_iterations
        self.iterations = 0
        self.last_text: str | None = None
        self.text_repeats = 0
        self.last_signature: str | None = None
        self.signature_repeats = 0

    def check(self, content: str | None, tool_calls: list[ToolCall]) -> GuardVerdict:
        """Record one iteration and decide whether the turn must stop."""
        self.iterations += 1

        text = normalize_text(content)
        if text and text == self.last_text:
            self.text_repeats += 1
        else:
            self.text_repeats = 0
        self.last_text = text

        signature = tool_call_signature(tool_calls) if tool_calls else None
        if signature is not None and signature == self.last_signature:
            self.signature_repeats += 1
        else:
            self.signature_repeats = 0
        self.last_signature = signature

        if self.iterations >= self.max_iterations:
            return self._trip(
                GuardReason.ITERATION_CAP,
                f"reached {self.max_iterations} tool iterations",
            )
        if self.text_repeats >= REPEAT_LIMIT:
            return self._trip(
                GuardReason.REPEATED_TEXT,
                f"assistant text repeated {self.text_repeats} times in a row",
            )
        if self.signature_repeats >= REPEAT_LIMIT:
            return self._trip(
                GuardReason.REPEATED_TOOL_CALLS,
                f"identical tool calls repeated {self.signature_repeats} times in a row",
            )
        return GuardVerdict(tripped=False)

    def _trip(self, reason: GuardReason, detail: str) -> GuardVerdict:
        logger.warning(f"Loop guard tripped at iteration {self.iterations}: {detail}")
        return GuardVerdict(tripped=True, reason=reason, detail=detail)
