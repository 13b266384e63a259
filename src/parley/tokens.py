"""
Token estimation.

This is a conservative, tokenizer-agnostic approximation: English text
averages about four characters per token, and rounding up keeps the
estimate on the safe side of the budget. The important thing is that
the budget is ENFORCED, not that the count is exact.
"""

import json
import math
from collections.abc import Iterable

from parley.types import Message

CHARS_PER_TOKEN = 4

# role, separators and other framing the provider adds per message
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate the token count of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for a single message including its overhead."""
    tokens = MESSAGE_OVERHEAD_TOKENS + estimate_tokens(message.content)
    if message.tool_calls:
        tokens += estimate_tokens(json.dumps([tc.to_dict() for tc in message.tool_calls]))
    return tokens


def estimate_total_tokens(messages: Iterable[Message]) -> int:
    """Sum of estimate_message_tokens over a sequence."""
    return sum(estimate_message_tokens(m) for m in messages)
