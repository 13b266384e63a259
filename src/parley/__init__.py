"""
Parley - a conversation orchestration engine for tool-using LLM agents.

The engine drives a multi-turn conversation between a user and a model
that can call tools in a loop until it produces an answer:

1. Fixed context budget: every call is fitted into the model's window
2. Rolling summary: older history is compressed instead of growing forever
3. Guarded tool loop: runaway repetition and iteration blowups are stopped
4. Durable state: conversations persist with one coalesced write per turn
5. Sandboxed coding tasks: tool calls confined to a scratch workspace
"""

__version__ = "0.1.0"

from parley.config import AgentConfig, ContextConfig, LLMConfig, LoopConfig, SandboxConfig, StoreConfig
from parley.context import ContextManager
from parley.coordinator import Coordinator
from parley.guard import LoopGuard, tool_call_signature
from parley.llm import ChatResponse, LLMClient, LLMError
from parley.loop import AgentLoop
from parley.rate_limit import SlidingWindowRateLimiter
from parley.sandbox import SandboxedDispatcher, SandboxedWorkspace, SandboxViolation, sweep_workspaces
from parley.store import (
    ConversationStore,
    DebouncedWriter,
    InMemoryConversationStore,
    SQLConversationStore,
)
from parley.telemetry import TranscriptBuffer
from parley.tokens import estimate_message_tokens, estimate_tokens, estimate_total_tokens
from parley.tools import Tool, ToolDispatcher, ToolRegistry
from parley.types import IterationOutcome, Message, Role, ToolCall, TurnResult

__all__ = [
    "AgentConfig",
    "ContextConfig",
    "LLMConfig",
    "LoopConfig",
    "SandboxConfig",
    "StoreConfig",
    "ContextManager",
    "Coordinator",
    "LoopGuard",
    "tool_call_signature",
    "ChatResponse",
    "LLMClient",
    "LLMError",
    "AgentLoop",
    "SlidingWindowRateLimiter",
    "SandboxedDispatcher",
    "SandboxedWorkspace",
    "SandboxViolation",
    "sweep_workspaces",
    "ConversationStore",
    "DebouncedWriter",
    "InMemoryConversationStore",
    "SQLConversationStore",
    "TranscriptBuffer",
    "estimate_message_tokens",
    "estimate_tokens",
    "estimate_total_tokens",
    "Tool",
    "ToolDispatcher",
    "ToolRegistry",
    "IterationOutcome",
    "Message",
    "Role",
    "ToolCall",
    "TurnResult",
]
