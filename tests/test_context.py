"""
Tests for ContextManager - budget fitting, rolling summary and pruning.
"""

import pytest

from parley.config import ContextConfig
from parley.context import ContextManager, truncate_words
from parley.llm import ChatResponse, LLMError
from parley.types import Message, Role, ToolCall


class FakeSummarizer:
    """Inference client stub that records calls and returns canned summaries."""

    def __init__(self, replies: list[str] | None = None, error: Exception | None = None):
        self.replies = list(replies or ["User likes tea. Discussed travel plans."])
        self.error = error
        self.calls: list[dict] = []

    def chat(self, messages, tools=None, tool_choice=None, model=None, max_tokens=None):
        self.calls.append({"messages": messages, "model": model, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return ChatResponse(content=self.replies.pop(0) if self.replies else "", tool_calls=[])


def make_history(count: int, chars: int = 200, system: str | None = "s" * 100) -> list[Message]:
    history = [Message.system(system)] if system is not None else []
    for i in range(count):
        text = f"{i:04d}" + "x" * (chars - 4)
        history.append(Message.user(text) if i % 2 == 0 else Message.assistant(text))
    return history


class TestConfigDefaults:
    """Tests for derived thresholds."""

    def test_thresholds_derive_from_ceiling(self) -> None:
        config = ContextConfig(max_context_tokens=10000)
        assert config.summarize_trigger_tokens == 7500
        assert config.summarize_target_tokens == 4500

    def test_explicit_thresholds_kept(self) -> None:
        config = ContextConfig(summarize_trigger_tokens=123, summarize_target_tokens=45)
        assert config.summarize_trigger_tokens == 123
        assert config.summarize_target_tokens == 45

    def test_available_budget(self) -> None:
        assert ContextConfig().available_budget == 22000


class TestBuildMessagesForModel:
    """Tests for fitting history into the budget."""

    def test_empty_history(self) -> None:
        assert ContextManager(ContextConfig()).build_messages_for_model([]) == []

    def test_everything_fits_without_turn_cap(self) -> None:
        """200 messages of 200 chars fit in 22000 tokens when max_turns allows it."""
        config = ContextConfig(max_context_tokens=24000, reserved_completion_tokens=2000, max_turns=1000)
        history = make_history(200)
        fitted = ContextManager(config).build_messages_for_model(history)

        assert fitted[0] is history[0]
        assert fitted[1:] == history[1:]

    def test_turn_cap_limits_suffix(self) -> None:
        config = ContextConfig(max_context_tokens=24000, reserved_completion_tokens=2000)
        history = make_history(200)
        fitted = ContextManager(config).build_messages_for_model(history)

        assert len(fitted) == 1 + config.max_turns
        assert fitted[0] is history[0]
        assert fitted[1:] == history[-config.max_turns:]

    def test_longest_suffix_fitting_budget(self) -> None:
        """
        System message: 4 + 25 = 29 tokens. Each history message: 4 + 50 = 54.
        A 1000-token prompt budget leaves 971, which holds 17 messages.
        """
        config = ContextConfig(max_context_tokens=3000, reserved_completion_tokens=2000, max_turns=1000)
        history = make_history(200)
        cm = ContextManager(config)
        fitted = cm.build_messages_for_model(history)

        assert len(fitted) == 18
        assert fitted[0] is history[0]
        assert fitted[1:] == history[-17:]
        assert cm.last_budget is not None
        assert cm.last_budget.messages_dropped == 183
        assert cm.last_budget.used == 29 + 17 * 54
        assert cm.last_budget.utilization == pytest.approx((29 + 17 * 54) / 1000)

    def test_suffix_is_contiguous_and_ordered(self) -> None:
        config = ContextConfig(max_context_tokens=2600, reserved_completion_tokens=2000, max_turns=1000)
        history = make_history(50)
        fitted = ContextManager(config).build_messages_for_model(history)

        tail = fitted[1:]
        start = history.index(tail[0])
        assert history[start:start + len(tail)] == tail
        assert start + len(tail) == len(history)

    def test_selection_stops_at_first_oversized_message(self) -> None:
        """A large message stops the walk even if older small ones would fit."""
        config = ContextConfig(max_context_tokens=400, reserved_completion_tokens=100, max_turns=1000)
        history = [
            Message.system("sys"),
            Message.user("old"),
            Message.user("x" * 2000),
            Message.user("recent"),
        ]
        fitted = ContextManager(config).build_messages_for_model(history)
        assert [m.content for m in fitted] == ["sys", "recent"]

    def test_no_system_message(self) -> None:
        history = make_history(5, system=None)
        fitted = ContextManager(ContextConfig()).build_messages_for_model(history)
        assert fitted == history

    def test_summary_and_memory_pinned(self) -> None:
        cm = ContextManager(ContextConfig(), summary="User is called Ada.")
        history = make_history(3)
        fitted = cm.build_messages_for_model(history, memory_text="Ada prefers metric units.")

        assert fitted[0] is history[0]
        assert fitted[1].role == Role.SYSTEM
        assert fitted[1].content == "<conversation_summary>\nUser is called Ada.\n</conversation_summary>"
        assert fitted[2].role == Role.SYSTEM
        assert fitted[2].content == "Ada prefers metric units."
        assert fitted[3:] == history[1:]

    def test_prefix_tokens_reduce_budget(self) -> None:
        config = ContextConfig(max_context_tokens=3000, reserved_completion_tokens=2000, max_turns=1000)
        history = make_history(200)
        without = ContextManager(config).build_messages_for_model(history)
        with_summary = ContextManager(config, summary="y" * 400).build_messages_for_model(history)
        assert len(with_summary) - 1 < len(without)


class TestMaybeSummarize:
    """Tests for the rolling summary."""

    def test_short_history_never_summarizes(self) -> None:
        """MIN_RECENT_MESSAGES * 2 - 1 messages never trigger, however long."""
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        llm = FakeSummarizer()
        cm = ContextManager(config, llm=llm)
        history = make_history(14, chars=20000)
        assert len(history) == 15

        result = cm.maybe_summarize(history)

        assert result.summarized is False
        assert llm.calls == []

    def test_below_trigger_does_nothing(self) -> None:
        llm = FakeSummarizer()
        cm = ContextManager(ContextConfig(), llm=llm)
        result = cm.maybe_summarize(make_history(30, chars=20))
        assert result.summarized is False
        assert llm.calls == []

    def test_summarizes_older_messages(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        llm = FakeSummarizer()
        cm = ContextManager(config, llm=llm, summarize_model="cheap-model")
        history = make_history(20, chars=400)

        result = cm.maybe_summarize(history)

        assert result.summarized is True
        assert result.messages_to_drop == 12
        assert cm.summary == "User likes tea. Discussed travel plans."
        assert llm.calls[0]["model"] == "cheap-model"
        assert llm.calls[0]["max_tokens"] == config.summary_max_tokens

    def test_prompt_truncates_and_labels_messages(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        llm = FakeSummarizer()
        cm = ContextManager(config, llm=llm)
        cm.maybe_summarize(make_history(20, chars=900))

        prompt = llm.calls[0]["messages"][1]["content"]
        assert "New messages to incorporate:" in prompt
        assert "User: 0000" in prompt
        assert "Assistant: 0001" in prompt
        assert "x" * 496 in prompt
        assert "x" * 497 not in prompt
        assert "Previous summary" not in prompt

    def test_previous_summary_folded_in(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        llm = FakeSummarizer(replies=["second summary"])
        cm = ContextManager(config, llm=llm, summary="first summary")
        cm.maybe_summarize(make_history(20, chars=400))

        prompt = llm.calls[0]["messages"][1]["content"]
        assert prompt.startswith("Previous summary:\nfirst summary")
        assert cm.summary == "second summary"

    def test_failure_leaves_state_unchanged(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        cm = ContextManager(config, llm=FakeSummarizer(error=LLMError("timeout")), summary="kept")
        result = cm.maybe_summarize(make_history(20, chars=400))
        assert result.summarized is False
        assert cm.summary == "kept"

    def test_empty_reply_leaves_state_unchanged(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        cm = ContextManager(config, llm=FakeSummarizer(replies=["   "]))
        assert cm.maybe_summarize(make_history(20, chars=400)).summarized is False
        assert cm.summary is None

    def test_no_client_no_summary(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        assert ContextManager(config).maybe_summarize(make_history(20, chars=400)).summarized is False

    def test_word_cap_backstop(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8, summary_max_words=5)
        cm = ContextManager(config, llm=FakeSummarizer(replies=["one two three four five six seven"]))
        cm.maybe_summarize(make_history(20, chars=400))
        assert cm.summary == "one two three four five ..."

    def test_rate_limiter_consulted(self) -> None:
        class CountingLimiter:
            acquired = 0

            def acquire(self) -> float:
                self.acquired += 1
                return 0.0

        limiter = CountingLimiter()
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        cm = ContextManager(config, llm=FakeSummarizer(), rate_limiter=limiter)
        cm.maybe_summarize(make_history(20, chars=400))
        assert limiter.acquired == 1


class TestPruneMessages:
    """Tests for pruning after a summary."""

    def test_zero_is_identity(self) -> None:
        history = make_history(10)
        assert ContextManager(ContextConfig()).prune_messages(history, 0) == history

    def test_drops_oldest_non_system(self) -> None:
        history = make_history(10)
        pruned = ContextManager(ContextConfig()).prune_messages(history, 4)
        assert pruned[0] is history[0]
        assert pruned[1:] == history[5:]

    def test_without_system_message(self) -> None:
        history = make_history(6, system=None)
        assert ContextManager(ContextConfig()).prune_messages(history, 2) == history[2:]

    def test_summarize_then_prune(self) -> None:
        config = ContextConfig(max_context_tokens=1000, min_recent_messages=8)
        cm = ContextManager(config, llm=FakeSummarizer())
        history = make_history(20, chars=400)
        result = cm.maybe_summarize(history)
        pruned = cm.prune_messages(history, result.messages_to_drop)
        assert len(pruned) == 1 + config.min_recent_messages
        assert pruned[1:] == history[-8:]


class TestGetStats:
    """Tests for the diagnostic snapshot."""

    def test_stats(self) -> None:
        cm = ContextManager(ContextConfig(), summary="abc")
        history = [Message.system("sys"), Message.user("hi")]
        stats = cm.get_stats(history)
        assert stats.message_count == 2
        assert stats.estimated_tokens == 10
        assert stats.has_summary is True
        assert stats.summary_length == 3

    def test_stats_have_no_side_effects(self) -> None:
        cm = ContextManager(ContextConfig())
        history = [Message.user("hi")]
        cm.get_stats(history)
        assert history == [Message.user("hi")]
        assert cm.summary is None


class TestTruncateWords:
    @pytest.mark.parametrize("text,limit,expected", [
        ("a b c", 5, "a b c"),
        ("a b c d", 2, "a b ..."),
        ("", 3, ""),
    ])
    def test_truncate(self, text: str, limit: int, expected: str) -> None:
        assert truncate_words(text, limit) == expected


def test_tool_call_messages_survive_fitting() -> None:
    history = [
        Message.system("sys"),
        Message.user("weather?"),
        Message.assistant("", [ToolCall(id="c1", name="weather", arguments="{}")]),
        Message.tool("c1", "sunny"),
    ]
    fitted = ContextManager(ContextConfig()).build_messages_for_model(history)
    assert fitted == history
