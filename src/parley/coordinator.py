"""
Coordinator - the process-scoped owner of shared engine state.

Objects that every conversation shares (the inference rate limiter,
the transcript buffer, the debounced writer, the store and the client)
are built once here and handed to each user's AgentLoop, so tests can
run fully isolated instances side by side.

The coordinator also closes the per-user concurrency gap: each user has
a lock, and a second message for the same user waits for the first turn
to finish instead of racing on the same message list. Different users
proceed independently; bounding how many run at once is up to the caller.

A user's loop and lock live until release() drops them, so a long-lived
process serving many users should release the ones that go idle.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from parley.config import AgentConfig
from parley.llm import InferenceClient, LLMClient
from parley.loop import AgentLoop, MemoryProvider
from parley.rate_limit import SlidingWindowRateLimiter
from parley.sandbox import SandboxedDispatcher, SandboxedWorkspace, sweep_workspaces
from parley.store import ConversationStore, DebouncedWriter, InMemoryConversationStore
from parley.telemetry import TranscriptBuffer
from parley.tools import ToolDispatcher, ToolRegistry
from parley.types import ContextStats, TurnResult

logger = logging.getLogger(__name__)


class Coordinator:
    """Routes turns to per-user AgentLoops under a per-user lock."""

    def __init__(
        self,
        llm: InferenceClient,
        tools: ToolDispatcher,
        store: ConversationStore,
        config: AgentConfig | None = None,
        system_prompt: str = "",
        memory_provider: MemoryProvider | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        telemetry: TranscriptBuffer | None = None,
        writer: DebouncedWriter | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.llm = llm
        self.tools = tools
        self.store = store
        self.system_prompt = system_prompt
        self.memory_provider = memory_provider
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(self.config.loop.rpm_limit)
        self.telemetry = telemetry or TranscriptBuffer(self.config.loop.transcript_buffer_size)
        self.writer = writer or DebouncedWriter(self.config.store.debounce_seconds)

        self._loops: dict[str, AgentLoop] = {}
        self._user_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._closed = False

        logger.info(f"Inference limited to {self.config.loop.rpm_limit} requests per minute")
        self.sweep_sandboxes()

    @classmethod
    def from_env(
        cls,
        system_prompt: str = "",
        tools: ToolDispatcher | None = None,
        memory_provider: MemoryProvider | None = None,
    ) -> "Coordinator":
        """Build a coordinator with everything configured from the environment."""
        config = AgentConfig.from_env()
        return cls(
            llm=LLMClient(config.llm),
            tools=tools or ToolRegistry(),
            store=ConversationStore.create(config.store.database_url),
            config=config,
            system_prompt=system_prompt,
            memory_provider=memory_provider,
        )

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.Lock()
            return lock

    def loop_for(self, user_id: str) -> AgentLoop:
        """The user's AgentLoop, created on first use."""
        user_id = str(user_id)
        with self._registry_lock:
            loop = self._loops.get(user_id)
            if loop is None:
                loop = AgentLoop(
                    user_id=user_id,
                    llm=self.llm,
                    tools=self.tools,
                    store=self.store,
                    config=self.config,
                    system_prompt=self.system_prompt,
                    rate_limiter=self.rate_limiter,
                    telemetry=self.telemetry,
                    writer=self.writer,
                    memory_provider=self.memory_provider,
                )
                self._loops[user_id] = loop
            return loop

    @contextmanager
    def _holding(self, user_id: str) -> Iterator[None]:
        # retry if release() retired the lock while we waited on it
        while True:
            lock = self._lock_for(user_id)
            lock.acquire()
            with self._registry_lock:
                current = self._user_locks.get(user_id) is lock
            if current:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def run_turn(self, user_id: str, text: str) -> TurnResult:
        if self._closed:
            raise RuntimeError("Coordinator has been shut down")
        user_id = str(user_id)
        with self._holding(user_id):
            return self.loop_for(user_id).run_turn(text)

    def chat(self, user_id: str, text: str) -> str:
        """Run one turn for a user; concurrent calls for the same user queue."""
        return self.run_turn(user_id, text).response

    def clear(self, user_id: str) -> None:
        user_id = str(user_id)
        with self._holding(user_id):
            self.loop_for(user_id).clear()

    def stats(self, user_id: str) -> ContextStats:
        user_id = str(user_id)
        with self._holding(user_id):
            return self.loop_for(user_id).stats()

    def release(self, user_id: str) -> bool:
        """
        Write the user's pending save and drop their loop and lock.

        The next message reloads the conversation from the store.

        Returns:
            False if a turn for the user is in flight (nothing is dropped)
        """
        user_id = str(user_id)
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                self._loops.pop(user_id, None)
                return True
            if not lock.acquire(blocking=False):
                return False
            try:
                self.writer.flush(user_id)
                self._loops.pop(user_id, None)
                del self._user_locks[user_id]
            finally:
                lock.release()
        logger.debug(f"Released idle conversation for user {user_id}")
        return True

    @property
    def active_users(self) -> list[str]:
        with self._registry_lock:
            return list(self._loops)

    def create_workspace(self) -> SandboxedWorkspace:
        """A fresh sandbox under the configured scratch root."""
        return SandboxedWorkspace(self.config.sandbox.scratch_root)

    def sandboxed_tools(self, workspace: SandboxedWorkspace) -> SandboxedDispatcher:
        """This coordinator's tools, confined to one workspace."""
        return SandboxedDispatcher(self.tools, workspace)

    def coding_loop(self, user_id: str, workspace: SandboxedWorkspace, system_prompt: str = "") -> AgentLoop:
        """
        A one-off loop for an autonomous coding task.

        It shares the rate limiter and transcript buffer but keeps its
        own in-memory history and runs every tool call inside the workspace.
        """
        return AgentLoop(
            user_id=str(user_id),
            llm=self.llm,
            tools=self.sandboxed_tools(workspace),
            store=InMemoryConversationStore(),
            config=self.config,
            system_prompt=system_prompt,
            rate_limiter=self.rate_limiter,
            telemetry=self.telemetry,
        )

    def sweep_sandboxes(self) -> int:
        cfg = self.config.sandbox
        try:
            removed = sweep_workspaces(cfg.scratch_root, cfg.ttl_seconds, cfg.max_workspaces)
        except OSError as e:
            logger.warning(f"Sandbox sweep failed: {e}")
            return 0
        return len(removed)

    def shutdown(self) -> None:
        """Flush pending saves and release resources. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        logger.info("Shutting down: flushing pending conversation saves")
        self.writer.close()
        self.sweep_sandboxes()
        self.store.close()
        close = getattr(self.llm, "close", None)
        if callable(close):
            close()

    def __enter__(self) -> "Coordinator":
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()
