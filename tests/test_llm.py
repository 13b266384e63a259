"""
Tests for the LLM client against a stubbed transport.
"""

import json

import httpx
import pytest

from parley.config import LLMConfig
from parley.llm import ChatResponse, LLMClient, LLMError


def completion(content: str | None = "Hello!", tool_calls: list[dict] | None = None, finish: str = "stop") -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"choices": [{"message": message, "finish_reason": finish}]}


def make_client(handler, max_retries: int = 2) -> LLMClient:
    config = LLMConfig(
        base_url="http://llm.test/v1",
        api_key="secret",
        model="main-model",
        max_retries=max_retries,
        retry_delay=0.0,
    )
    return LLMClient(config, transport=httpx.MockTransport(handler))


class TestChatResponse:
    """Tests for payload parsing."""

    def test_text_response(self) -> None:
        response = ChatResponse.from_api_response(completion("Hi"))
        assert response.content == "Hi"
        assert response.tool_calls == []
        assert response.is_complete

    def test_tool_calls_keep_raw_arguments(self) -> None:
        data = completion(None, [{
            "id": "call_1",
            "type": "function",
            "function": {"name": "search", "arguments": '{"q": "cats"'},
        }], finish="tool_calls")
        response = ChatResponse.from_api_response(data)

        assert response.content == ""
        assert response.has_tool_calls
        assert response.tool_calls[0].id == "call_1"
        assert response.tool_calls[0].name == "search"
        assert response.tool_calls[0].arguments == '{"q": "cats"'
        assert not response.is_complete

    def test_malformed_payload(self) -> None:
        with pytest.raises(LLMError):
            ChatResponse.from_api_response({"choices": []})
        with pytest.raises(LLMError):
            ChatResponse.from_api_response({"choices": [{"message": {"tool_calls": [{"function": {}}]}}]})


class TestLLMClient:
    """Tests for request building, retries and failures."""

    def test_request_payload(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/chat/completions"
            assert request.headers["Authorization"] == "Bearer secret"
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=completion())

        client = make_client(handler)
        tools = [{"type": "function", "function": {"name": "t", "description": "", "parameters": {}}}]
        response = client.chat([{"role": "user", "content": "hi"}], tools=tools, tool_choice="auto")

        assert response.content == "Hello!"
        assert seen[0]["model"] == "main-model"
        assert seen[0]["tools"] == tools
        assert seen[0]["tool_choice"] == "auto"

    def test_model_override_and_no_tools(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=completion("summary"))

        client = make_client(handler)
        client.chat([{"role": "user", "content": "x"}], model="cheap-model", max_tokens=800)

        assert seen[0]["model"] == "cheap-model"
        assert seen[0]["max_tokens"] == 800
        assert "tools" not in seen[0]
        assert "tool_choice" not in seen[0]

    def test_retries_on_503(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 2:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=completion("recovered"))

        assert make_client(handler).chat([]).content == "recovered"
        assert len(attempts) == 2

    def test_retries_on_429_with_retry_after(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"}, text="slow down")
            return httpx.Response(200, json=completion("ok"))

        assert make_client(handler).chat([]).content == "ok"
        assert len(attempts) == 2

    def test_retries_on_timeout_then_gives_up(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(LLMError, match="after 3 attempts"):
            make_client(handler, max_retries=2).chat([])
        assert len(attempts) == 3

    def test_transport_error_is_llm_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LLMError):
            make_client(handler, max_retries=0).chat([])

    def test_client_error_not_retried(self) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(400, text="bad request")

        with pytest.raises(LLMError, match="HTTP 400"):
            make_client(handler).chat([])
        assert len(attempts) == 1

    def test_non_json_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>oops</html>")

        with pytest.raises(LLMError):
            make_client(handler).chat([])

    def test_context_manager_closes(self) -> None:
        with make_client(lambda request: httpx.Response(200, json=completion())) as client:
            client.chat([])
        assert client._client.is_closed
