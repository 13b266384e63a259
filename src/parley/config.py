"""
Configuration for the conversation engine.

All configuration is loaded from environment variables once at startup
and treated as read-only afterwards. This keeps the engine portable
across OpenAI-compatible backends without hardcoding any specific values.

The token budget is an estimate, but it MUST be enforced: every model
call is fitted into MAX_CONTEXT_TOKENS minus the completion reservation.
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class LLMConfig:
    """Configuration for the inference client."""
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o"
    summarize_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout: float = 30.0
    max_retries: int = 1
    retry_delay: float = 2.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
            api_key=os.getenv("LLM_API_KEY", ""),
            model=os.getenv("LLM_MODEL", "gpt-4o"),
            summarize_model=os.getenv("SUMMARIZE_MODEL", "gpt-4o-mini"),
            temperature=_env_float("LLM_TEMPERATURE", 0.7),
            max_tokens=_env_int("LLM_MAX_TOKENS", 2000),
            timeout=_env_float("LLM_TIMEOUT", 30.0),
            max_retries=_env_int("LLM_MAX_RETRIES", 1),
            retry_delay=_env_float("LLM_RETRY_DELAY", 2.0),
        )


@dataclass
class ContextConfig:
    """
    Configuration for context management.

    max_context_tokens is the hard ceiling for a model call, of which
    reserved_completion_tokens is kept free for the reply. max_turns is a
    message-count backstop for when the token estimate is off.

    summarize_trigger_tokens and summarize_target_tokens default to 75%
    and 45% of the ceiling when left at zero.
    """
    max_context_tokens: int = 24000
    reserved_completion_tokens: int = 2000
    max_turns: int = 40
    summarize_trigger_tokens: int = 0
    summarize_target_tokens: int = 0
    min_recent_messages: int = 8
    summary_max_words: int = 600
    summary_max_tokens: int = 800

    def __post_init__(self) -> None:
        if self.summarize_trigger_tokens <= 0:
            self.summarize_trigger_tokens = int(self.max_context_tokens * 0.75)
        if self.summarize_target_tokens <= 0:
            self.summarize_target_tokens = int(self.max_context_tokens * 0.45)

    @classmethod
    def from_env(cls) -> "ContextConfig":
        """Load configuration from environment variables."""
        return cls(
            max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", 24000),
            reserved_completion_tokens=_env_int("RESERVED_COMPLETION_TOKENS", 2000),
            max_turns=_env_int("MAX_TURNS", 40),
            summarize_trigger_tokens=_env_int("SUMMARIZE_TRIGGER_TOKENS", 0),
            summarize_target_tokens=_env_int("SUMMARIZE_TARGET_TOKENS", 0),
            min_recent_messages=_env_int("MIN_RECENT_MESSAGES", 8),
            summary_max_words=_env_int("SUMMARY_MAX_WORDS", 600),
            summary_max_tokens=_env_int("SUMMARY_MAX_TOKENS", 800),
        )

    @property
    def available_budget(self) -> int:
        """Tokens available for the prompt (excluding the completion reservation)."""
        return self.max_context_tokens - self.reserved_completion_tokens


@dataclass
class LoopConfig:
    """
    Configuration for the agent loop.

    max_tool_iterations bounds how many model calls one turn may make.
    Tool calls requested by the call that reaches it are not executed.
    """
    max_tool_iterations: int = 25
    rpm_limit: int = 40
    transcript_buffer_size: int = 10
    transcript_excerpt_chars: int = 1000

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 25),
            rpm_limit=_env_int("INFERENCE_RPM_LIMIT", 40),
            transcript_buffer_size=_env_int("TRANSCRIPT_BUFFER_SIZE", 10),
            transcript_excerpt_chars=_env_int("TRANSCRIPT_EXCERPT_CHARS", 1000),
        )


@dataclass
class StoreConfig:
    """Configuration for conversation persistence."""
    database_url: str = "sqlite:///parley.db"
    debounce_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Load configuration from environment variables."""
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///parley.db"),
            debounce_seconds=_env_float("SAVE_DEBOUNCE_SECONDS", 1.0),
        )


def _default_sandbox_root() -> Path:
    return Path(tempfile.gettempdir()) / "parley-sandboxes"


@dataclass
class SandboxConfig:
    """
    Configuration for sandboxed coding workspaces.

    Workspaces are never reaped implicitly; ttl_seconds and max_workspaces
    drive the explicit sweep the coordinator runs at startup and shutdown.
    """
    scratch_root: Path = field(default_factory=_default_sandbox_root)
    ttl_seconds: float = 86400.0
    max_workspaces: int = 50

    @classmethod
    def from_env(cls) -> "SandboxConfig":
        """Load configuration from environment variables."""
        root = os.getenv("SANDBOX_ROOT")
        return cls(
            scratch_root=Path(root) if root else _default_sandbox_root(),
            ttl_seconds=_env_float("SANDBOX_TTL_SECONDS", 86400.0),
            max_workspaces=_env_int("SANDBOX_MAX_WORKSPACES", 50),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the entire engine."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            context=ContextConfig.from_env(),
            loop=LoopConfig.from_env(),
            store=StoreConfig.from_env(),
            sandbox=SandboxConfig.from_env(),
        )
