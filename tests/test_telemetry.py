"""
Tests for the transcript excerpt buffer.
"""

from parley.telemetry import ENTRY_SEPARATOR, TranscriptBuffer, make_excerpt


class TestTranscriptBuffer:
    def test_bounded(self) -> None:
        buffer = TranscriptBuffer(max_entries=3)
        for i in range(5):
            buffer.add(f"turn {i}")
        assert buffer.snapshot() == ["turn 2", "turn 3", "turn 4"]
        assert len(buffer) == 3

    def test_render_joins_oldest_first(self) -> None:
        buffer = TranscriptBuffer()
        buffer.add("a")
        buffer.add("b")
        assert buffer.render() == f"a{ENTRY_SEPARATOR}b"
        assert ENTRY_SEPARATOR == "\n\n---\n\n"

    def test_clear(self) -> None:
        buffer = TranscriptBuffer()
        buffer.add("a")
        buffer.clear()
        assert buffer.render() == ""


class TestMakeExcerpt:
    def test_format(self) -> None:
        assert make_excerpt("hi", "hello") == "user: hi\n\nassistant: hello"

    def test_truncated(self) -> None:
        excerpt = make_excerpt("q" * 50, "a" * 50, max_chars=20)
        assert excerpt == "user: " + "q" * 14 + "..."
