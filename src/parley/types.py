"""
Core types for the conversation engine.

These are the data structures that flow between the context manager,
the agent loop and the store. Messages serialize to and from the
OpenAI chat-completions wire format, which is also the persisted format.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """
    A request from the model to execute a tool.

    arguments is the raw argument text exactly as the model produced it.
    Parsing and validation belong to the tool dispatcher, so a malformed
    payload survives here untouched and can be answered with an error.
    """
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Create from OpenAI API format."""
        function = data.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = str(arguments)
        return cls(id=data["id"], name=function.get("name", ""), arguments=arguments)


@dataclass
class Message:
    """
    A single message in the conversation history.

    content may be None for messages that arrived without text (the
    repair pass decides what to do with those before a model call).
    A tool message answers exactly one call, named by tool_call_id.
    """
    role: Role
    content: str | None = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from OpenAI API format."""
        raw_calls = data.get("tool_calls")
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in raw_calls] if raw_calls else None,
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls or None)

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


@dataclass
class StoredConversation:
    """What the conversation store hands back for one user."""
    messages: list[Message]
    summary: str | None = None
    updated_at: float = 0.0


@dataclass
class SummarizeResult:
    """Outcome of a summarization attempt."""
    summarized: bool
    messages_to_drop: int = 0


@dataclass
class ContextStats:
    """Diagnostic snapshot of a conversation's size."""
    message_count: int
    estimated_tokens: int
    has_summary: bool
    summary_length: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_count": self.message_count,
            "estimated_tokens": self.estimated_tokens,
            "has_summary": self.has_summary,
            "summary_length": self.summary_length,
        }


class IterationOutcome(str, Enum):
    """What a single loop iteration decided."""
    CONTINUE = "continue"
    DONE = "done"
    GUARDED = "guarded"
    ERROR = "error"


@dataclass
class IterationResult:
    """Result of one model call plus any tool round-trip it caused."""
    outcome: IterationOutcome
    content: str | None = None
    tool_calls_made: int = 0
    reason: str | None = None


@dataclass
class TurnResult:
    """Final result of one chat() turn."""
    response: str
    outcome: IterationOutcome
    iterations: int
    summarized: bool = False
    iteration_results: list[IterationResult] = field(default_factory=list)
