"""
LLM Client - Abstraction over the inference backend.

This client works with any OpenAI-compatible chat-completions API
(OpenAI itself, vLLM, Ollama, hosted proxies). The abstraction is thin:
it sends an ordered message list plus optional tool declarations and
returns one completion with optional text and ordered tool calls.

Every call carries its own timeout. Timeouts, transport errors, 429 and
503 responses are retried a bounded number of times; anything that still
fails surfaces as LLMError, which callers treat as recoverable.
"""

import logging
import time
from typing import Any, Protocol

import httpx

from parley.config import LLMConfig
from parley.types import ToolCall

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0


class LLMError(Exception):
    """Error from the LLM client."""
    pass


class InferenceClient(Protocol):
    """What the context manager and the agent loop need from a backend."""

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> "ChatResponse": ...


class LLMClient:
    """
    Synchronous client for OpenAI-compatible LLM APIs.

    The primary model answers the conversation; callers pass
    model=config.summarize_model to route summarization to the cheaper tier.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client with configuration.

        Args:
            config: LLM configuration (model, API key, timeouts, retries)
            transport: Optional httpx transport, used by tests to stub the backend
        """
        self.config = config or LLMConfig.from_env()
        self.max_retries = self.config.max_retries
        self.retry_delay = self.config.retry_delay

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=self.config.timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> "ChatResponse":
        """
        Send a chat completion request with automatic retry on transient errors.

        Args:
            messages: The fitted conversation in OpenAI format
            tools: Optional list of tool declarations
            tool_choice: Optional tool choice mode ("auto" for the agent loop)
            model: Override the configured model (summarization tier)
            max_tokens: Override the configured completion cap

        Returns:
            ChatResponse with the assistant's response

        Raises:
            LLMError: If all retries are exhausted, the status is not retryable,
                or the payload cannot be parsed
        """
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }

        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice

        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                time.sleep(self.retry_delay)

            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt + 1})")

            try:
                response = self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e
                continue
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429:
                    self._wait_for_rate_limit(e.response)
                    last_error = e
                    continue

                if e.response.status_code == 503:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                    last_error = e
                    continue

                logger.error(f"HTTP error: {e.response.status_code} - {e.response.text}")
                raise LLMError(f"HTTP {e.response.status_code}: {e.response.text}") from e
            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e
                continue
            except ValueError as e:
                raise LLMError(f"Malformed response body: {e}") from e

            return ChatResponse.from_api_response(data)

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(f"Request failed after {self.max_retries + 1} attempts: {last_error}") from last_error

    def _wait_for_rate_limit(self, response: httpx.Response) -> None:
        retry_after = response.headers.get("Retry-After")
        wait_time = self.retry_delay
        if retry_after:
            try:
                wait_time = float(retry_after)
            except ValueError:
                pass
        logger.warning(f"Rate limited by provider. Waiting {wait_time}s")
        time.sleep(wait_time)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class ChatResponse:
    """
    Response from a chat completion request.

    This wraps the API response and provides convenient access to
    the content and any tool calls.
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None,
        finish_reason: str = "stop",
        raw_response: dict[str, Any] | None = None,
    ) -> None:
        self.content = content or ""
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.raw_response = raw_response or {}

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Malformed completion payload: {e}") from e

        content = message.get("content")
        finish_reason = choice.get("finish_reason") or "stop"

        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            try:
                tool_calls.append(ToolCall.from_dict(tc))
            except (KeyError, TypeError) as e:
                raise LLMError(f"Malformed tool call in completion: {e}") from e

        return cls(
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response includes tool calls."""
        return len(self.tool_calls) > 0

    @property
    def is_complete(self) -> bool:
        """Check if this is a complete response (no tool calls pending)."""
        return not self.has_tool_calls and self.finish_reason == "stop"
