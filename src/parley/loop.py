"""
Agent Loop - the turn-driving state machine.

One chat() call is one turn:

1. Load the stored conversation on first use (or seed a system message)
2. Compact old history into the rolling summary if it has grown too large
3. Append the user message
4. Iterate: fit context -> repair -> rate-limited model call ->
   either a final answer (DONE) or tool calls, which pass the loop guard
   (GUARDED stops the turn) and are executed (CONTINUE)
5. Persist (debounced), push a transcript excerpt, return the answer

Every iteration returns a typed outcome, so tests can drive the loop
with a scripted client. Nothing raises out of chat(): transport failures
degrade to the best text seen so far, and every path leaves the
transcript well-formed (each tool call answered exactly once).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from parley.config import AgentConfig
from parley.context import ContextManager
from parley.guard import LoopGuard
from parley.llm import InferenceClient
from parley.rate_limit import SlidingWindowRateLimiter
from parley.store import ConversationStore, DebouncedWriter
from parley.telemetry import TranscriptBuffer, make_excerpt
from parley.tools import ToolDispatcher
from parley.transcript import (
    close_dangling_tool_calls,
    repair_messages,
    synthesize_error_results,
)
from parley.types import (
    ContextStats,
    IterationOutcome,
    IterationResult,
    Message,
    Role,
    TurnResult,
)

logger = logging.getLogger(__name__)

CONNECTION_APOLOGY = "I ran into a connection issue while processing your request. Please try again."
INCOMPLETE_FALLBACK = "I wasn't able to complete that request. Please try again."
GUARD_APOLOGY = (
    "I kept going around in circles on this one, so I stopped. "
    "Could you rephrase the request or break it into smaller steps?"
)
GUARD_TOOL_ERROR = "stopped because the same actions kept repeating; this call was not executed."

MemoryProvider = Callable[[str, str], str | None]


@dataclass
class TurnState:
    """Per-turn scratch state shared across iterations."""
    memory_text: str | None = None
    best_text: str | None = None
    results: list[IterationResult] = field(default_factory=list)


class AgentLoop:
    """
    Drives one user's conversation.

    An instance owns the user's message list. It does not serialize
    concurrent chat() calls itself; the Coordinator holds a per-user lock
    around every call.
    """

    def __init__(
        self,
        user_id: str,
        llm: InferenceClient,
        tools: ToolDispatcher,
        store: ConversationStore,
        config: AgentConfig | None = None,
        system_prompt: str = "",
        context_manager: ContextManager | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        telemetry: TranscriptBuffer | None = None,
        writer: DebouncedWriter | None = None,
        memory_provider: MemoryProvider | None = None,
    ) -> None:
        """
        Args:
            user_id: Key for persistence and tool dispatch
            llm: Inference client for the primary model
            tools: Dispatcher that runs tool calls
            store: Conversation persistence
            config: Engine configuration
            system_prompt: Seeds new conversations and refreshes stored ones
            context_manager: Override the default (built from config and llm)
            rate_limiter: Shared process-wide limiter
            telemetry: Shared transcript ring buffer
            writer: Shared debounced writer; saves are synchronous without one
            memory_provider: Returns a memory block to pin for a user message
        """
        self.user_id = str(user_id)
        self.llm = llm
        self.tools = tools
        self.store = store
        self.config = config or AgentConfig()
        self.system_prompt = system_prompt
        self.rate_limiter = rate_limiter
        self.telemetry = telemetry
        self.writer = writer
        self.memory_provider = memory_provider
        self.context_manager = context_manager or ContextManager(
            self.config.context,
            llm=llm,
            summarize_model=self.config.llm.summarize_model,
            rate_limiter=rate_limiter,
        )
        self.messages: list[Message] = []
        self._initialized = False

    def initialize(self) -> None:
        """Load the stored conversation once per instance."""
        if self._initialized:
            return

        stored = None
        try:
            stored = self.store.load(self.user_id)
        except Exception as e:
            logger.warning(f"Loading conversation for user {self.user_id} failed, starting fresh: {e}")

        if stored is not None and stored.messages:
            messages = close_dangling_tool_calls(stored.messages)
            if self.system_prompt:
                if messages[0].role == Role.SYSTEM:
                    messages = [Message.system(self.system_prompt), *messages[1:]]
                else:
                    messages = [Message.system(self.system_prompt), *messages]
            self.messages = messages
            self.context_manager.summary = stored.summary
            logger.info(f"Restored {len(messages)} messages for user {self.user_id}")
        else:
            self.messages = [Message.system(self.system_prompt)] if self.system_prompt else []

        self._initialized = True

    def chat(self, user_text: str) -> str:
        """Run one turn and return the answer text."""
        return self.run_turn(user_text).response

    def run_turn(self, user_text: str) -> TurnResult:
        """Run one turn and return the full result."""
        self.initialize()

        summarized = self._maintain_context()

        self.messages.append(Message.user(user_text))
        self._schedule_save()

        state = TurnState(memory_text=self._memory_for(user_text))
        guard = LoopGuard(self.config.loop.max_tool_iterations)

        logger.info(f"Turn started for user {self.user_id} ({len(self.messages)} messages)")

        while True:
            result = self.run_iteration(guard, state)
            state.results.append(result)
            if result.outcome != IterationOutcome.CONTINUE:
                break

        response = self._final_text(result, state)

        self._schedule_save()
        if self.telemetry is not None:
            self.telemetry.add(make_excerpt(
                user_text, response, self.config.loop.transcript_excerpt_chars,
            ))

        logger.info(
            f"Turn finished for user {self.user_id}: {result.outcome.value} "
            f"after {len(state.results)} iteration(s)"
        )
        return TurnResult(
            response=response,
            outcome=result.outcome,
            iterations=len(state.results),
            summarized=summarized,
            iteration_results=state.results,
        )

    def run_iteration(self, guard: LoopGuard, state: TurnState) -> IterationResult:
        """One model call and, if it asked for them, one round of tool calls."""
        fitted = self.context_manager.build_messages_for_model(self.messages, state.memory_text)
        payload = repair_messages(fitted)
        if not payload:
            logger.warning("Nothing left to send after transcript repair, aborting turn")
            return IterationResult(IterationOutcome.ERROR, reason="empty_context")

        schemas = self.tools.get_schemas()

        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        try:
            response = self.llm.chat(
                [m.to_dict() for m in payload],
                tools=schemas or None,
                tool_choice="auto" if schemas else None,
            )
        except Exception as e:
            logger.warning(f"Inference call failed for user {self.user_id}: {e}")
            return IterationResult(IterationOutcome.ERROR, reason=str(e))

        content = response.content or ""
        if content.strip():
            state.best_text = content.strip()

        if not response.has_tool_calls:
            self.messages.append(Message.assistant(content))
            return IterationResult(IterationOutcome.DONE, content=content)

        tool_calls = list(response.tool_calls)
        self.messages.append(Message.assistant(content, tool_calls))

        verdict = guard.check(content, tool_calls)
        if verdict.tripped:
            self.messages.extend(synthesize_error_results(tool_calls, GUARD_TOOL_ERROR))
            self.messages.append(Message.assistant(GUARD_APOLOGY))
            return IterationResult(
                IterationOutcome.GUARDED,
                content=GUARD_APOLOGY,
                tool_calls_made=0,
                reason=verdict.reason.value if verdict.reason else None,
            )

        for tool_call in tool_calls:
            logger.debug(f"Executing tool: {tool_call.name}")
            try:
                result = self.tools.execute(
                    tool_call.name, tool_call.arguments, self.user_id, content or None,
                )
            except Exception as e:
                logger.error(f"Tool dispatcher raised for {tool_call.name}: {e}")
                result = f"error: {e}"
            self.messages.append(Message.tool(tool_call.id, result))

        self._schedule_save()
        return IterationResult(
            IterationOutcome.CONTINUE,
            content=content,
            tool_calls_made=len(tool_calls),
        )

    def _maintain_context(self) -> bool:
        result = self.context_manager.maybe_summarize(self.messages)
        if result.summarized:
            self.messages = self.context_manager.prune_messages(self.messages, result.messages_to_drop)
        return result.summarized

    def _memory_for(self, user_text: str) -> str | None:
        if self.memory_provider is None:
            return None
        try:
            return self.memory_provider(self.user_id, user_text)
        except Exception as e:
            logger.warning(f"Memory lookup failed, continuing without it: {e}")
            return None

    @staticmethod
    def _final_text(result: IterationResult, state: TurnState) -> str:
        if result.outcome == IterationOutcome.DONE:
            return (result.content or "").strip() or state.best_text or INCOMPLETE_FALLBACK
        if result.outcome == IterationOutcome.GUARDED:
            return GUARD_APOLOGY
        if result.reason == "empty_context":
            return INCOMPLETE_FALLBACK
        return state.best_text or CONNECTION_APOLOGY

    def _persist(self, messages: list[Message], summary: str | None) -> None:
        try:
            self.store.save(self.user_id, messages, summary)
        except Exception as e:
            logger.warning(f"Saving conversation for user {self.user_id} failed: {e}")

    def _schedule_save(self) -> None:
        snapshot = list(self.messages)
        summary = self.context_manager.summary
        if self.writer is None:
            self._persist(snapshot, summary)
            return
        self.writer.schedule(self.user_id, lambda: self._persist(snapshot, summary))

    def flush(self) -> None:
        """Write any pending save for this user now."""
        if self.writer is not None:
            self.writer.flush(self.user_id)

    def clear(self) -> None:
        """
        Forget the conversation, keeping only the system message.

        The pending write is cancelled before the stored row is deleted so
        that it cannot land afterwards and bring the old history back.
        """
        if self.writer is not None:
            self.writer.cancel_and_run(self.user_id, self._clear_stored)
        else:
            self._clear_stored()

        self.messages = [Message.system(self.system_prompt)] if self.system_prompt else []
        self.context_manager.reset()
        self._initialized = True
        logger.info(f"Cleared conversation for user {self.user_id}")

    def _clear_stored(self) -> None:
        try:
            self.store.clear(self.user_id)
        except Exception as e:
            logger.warning(f"Clearing stored conversation for user {self.user_id} failed: {e}")

    def stats(self) -> ContextStats:
        self.initialize()
        return self.context_manager.get_stats(self.messages)
