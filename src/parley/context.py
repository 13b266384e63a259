"""
Context Manager - Fixed-budget prompt builder with a rolling summary.

Conversation history grows without bound but every model call has a hard
token ceiling. Two mechanisms reconcile them:

1. Rolling window: each call sees the pinned prefix (system prompt,
   rolling summary, injected memory) plus the longest recent suffix of
   history that fits the remaining budget.
2. Summarization: once the whole history passes the trigger threshold,
   the older part is folded (with the previous summary) into a new
   summary by a cheaper model, and the folded messages are pruned.

Information does get lost on both paths. The window drops it silently
for one call; summarization compresses it permanently.
"""

import logging
from dataclasses import dataclass

from parley.config import ContextConfig, LLMConfig
from parley.llm import InferenceClient
from parley.rate_limit import SlidingWindowRateLimiter
from parley.tokens import estimate_message_tokens, estimate_total_tokens
from parley.types import ContextStats, Message, Role, SummarizeResult

logger = logging.getLogger(__name__)

# fewer aged-out messages than this are not worth a summarization round-trip
MIN_MESSAGES_TO_SUMMARIZE = 4
SUMMARY_MESSAGE_CHARS = 500

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a summarizer. Create concise, factual summaries of conversations. "
    "Preserve important details and context."
)

SUMMARY_INSTRUCTIONS = """Create a concise running summary of this conversation. Preserve:
- User preferences and decisions
- Important facts, names, and commitments
- Key topics discussed
- Any TODOs or action items

Keep it under 500 words. Focus on information that would be useful for continuing the conversation."""


@dataclass
class ContextBudget:
    """Tracks token budget usage of the last fitted message list."""
    total_budget: int
    used: int
    available: int
    messages_dropped: int = 0

    @property
    def utilization(self) -> float:
        """Percentage of budget used."""
        return self.used / self.total_budget if self.total_budget > 0 else 0.0


def _split_system(history: list[Message]) -> tuple[Message | None, list[Message]]:
    if history and history[0].role == Role.SYSTEM:
        return history[0], history[1:]
    return None, list(history)


def _role_label(role: Role) -> str:
    if role == Role.ASSISTANT:
        return "Assistant"
    if role == Role.USER:
        return "User"
    return role.value


def truncate_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + " ..."


class ContextManager:
    """
    Owns the rolling summary for one conversation and fits history
    into the model's context budget.
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        llm: InferenceClient | None = None,
        summarize_model: str | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        summary: str | None = None,
    ) -> None:
        """
        Args:
            config: Budget parameters
            llm: Client used for summarization (None disables summarization)
            summarize_model: Cheaper model tier for summaries
            rate_limiter: Shared limiter gating the summarization call
            summary: Rolling summary restored from storage
        """
        self.config = config or ContextConfig.from_env()
        self.llm = llm
        self.summarize_model = summarize_model or LLMConfig().summarize_model
        self.rate_limiter = rate_limiter
        self._summary = summary or None
        self.last_budget: ContextBudget | None = None

    @property
    def summary(self) -> str | None:
        return self._summary

    @summary.setter
    def summary(self, value: str | None) -> None:
        self._summary = value or None

    def reset(self) -> None:
        """Forget the rolling summary."""
        self._summary = None
        self.last_budget = None

    def build_messages_for_model(
        self,
        history: list[Message],
        memory_text: str | None = None,
    ) -> list[Message]:
        """
        Fit the history into the context budget.

        The result is the pinned prefix followed by the most recent
        contiguous run of history that fits, in chronological order.
        Selection walks backwards and stops at the first message that
        would exceed either the token budget or the max_turns backstop.

        Args:
            history: Full conversation, system message first if present
            memory_text: Optional long-term memory block to pin

        Returns:
            Messages to send, oldest first
        """
        if not history:
            return []

        system_message, rest = _split_system(history)

        pinned: list[Message] = []
        if system_message is not None:
            pinned.append(system_message)
        if self._summary:
            pinned.append(Message.system(
                f"<conversation_summary>\n{self._summary}\n</conversation_summary>"
            ))
        if memory_text:
            pinned.append(Message.system(memory_text))

        prefix_tokens = estimate_total_tokens(pinned)
        remaining_budget = self.config.available_budget - prefix_tokens

        selected: list[Message] = []
        used = 0
        for msg in reversed(rest):
            msg_tokens = estimate_message_tokens(msg)
            if used + msg_tokens > remaining_budget:
                break
            if len(selected) >= self.config.max_turns:
                break
            selected.append(msg)
            used += msg_tokens
        selected.reverse()

        dropped = len(rest) - len(selected)
        total_used = prefix_tokens + used
        self.last_budget = ContextBudget(
            total_budget=self.config.available_budget,
            used=total_used,
            available=max(0, self.config.available_budget - total_used),
            messages_dropped=dropped,
        )

        if dropped:
            logger.debug(f"Context window left out {dropped} older message(s)")
        logger.debug(
            f"Built {len(pinned) + len(selected)} messages "
            f"(~{total_used} tokens, {self.last_budget.utilization:.0%} of {self.config.available_budget})"
        )

        return pinned + selected

    def maybe_summarize(self, history: list[Message]) -> SummarizeResult:
        """
        Fold older history into the rolling summary when it has grown too large.

        On success the summary is replaced (the previous one is folded in,
        not appended) and the caller should prune messages_to_drop of the
        oldest non-system messages. On any failure nothing changes; the
        check simply runs again next turn.
        """
        if len(history) < self.config.min_recent_messages * 2:
            return SummarizeResult(summarized=False)

        total_tokens = estimate_total_tokens(history)
        if total_tokens < self.config.summarize_trigger_tokens:
            return SummarizeResult(summarized=False)

        if self.llm is None:
            logger.debug("Summarization needed but no client configured")
            return SummarizeResult(summarized=False)

        _, rest = _split_system(history)
        keep = min(self.config.min_recent_messages, len(rest))
        to_summarize = rest[:len(rest) - keep]

        if len(to_summarize) < MIN_MESSAGES_TO_SUMMARIZE:
            return SummarizeResult(summarized=False)

        logger.info(
            f"Summarizing {len(to_summarize)} messages "
            f"(~{total_tokens} tokens > {self.config.summarize_trigger_tokens} trigger)"
        )

        prompt = self._build_summary_prompt(to_summarize)

        try:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            response = self.llm.chat(
                [
                    Message.system(SUMMARIZER_SYSTEM_PROMPT).to_dict(),
                    Message.user(prompt).to_dict(),
                ],
                model=self.summarize_model,
                max_tokens=self.config.summary_max_tokens,
            )
        except Exception as e:
            logger.warning(f"Summarization failed, keeping history as is: {e}")
            return SummarizeResult(summarized=False)

        new_summary = (response.content or "").strip()
        if not new_summary:
            logger.warning("Summarization returned no text, keeping history as is")
            return SummarizeResult(summarized=False)

        capped = truncate_words(new_summary, self.config.summary_max_words)
        if capped != new_summary:
            logger.warning(f"Summary exceeded {self.config.summary_max_words} words, truncated")

        self._summary = capped
        logger.info(f"Summarized {len(to_summarize)} messages into {len(capped)} chars")
        return SummarizeResult(summarized=True, messages_to_drop=len(to_summarize))

    def _build_summary_prompt(self, to_summarize: list[Message]) -> str:
        previous = f"Previous summary:\n{self._summary}\n\n" if self._summary else ""
        lines = []
        for msg in to_summarize:
            content = (msg.content or "")[:SUMMARY_MESSAGE_CHARS] or "[no content]"
            lines.append(f"{_role_label(msg.role)}: {content}")
        transcript = "\n\n".join(lines)
        return f"{previous}New messages to incorporate:\n{transcript}\n\n{SUMMARY_INSTRUCTIONS}"

    def prune_messages(self, history: list[Message], drop_count: int) -> list[Message]:
        """Drop the oldest drop_count non-system messages, keeping the system message."""
        if drop_count <= 0:
            return history

        system_message, rest = _split_system(history)
        remaining = rest[drop_count:]
        result = [system_message, *remaining] if system_message is not None else remaining

        logger.debug(f"Pruned {drop_count} messages, {len(result)} remaining")
        return result

    def get_stats(self, history: list[Message]) -> ContextStats:
        """Diagnostic snapshot; no side effects."""
        return ContextStats(
            message_count=len(history),
            estimated_tokens=estimate_total_tokens(history),
            has_summary=bool(self._summary),
            summary_length=len(self._summary) if self._summary else 0,
        )
