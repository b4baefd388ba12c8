from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from cynosure_bridge.engine.types import SamplingParams, StreamEvent, TranslatedQuery
from cynosure_bridge.errors import TerminalBackendError, TransportError
from cynosure_bridge.invokers.direct_api import DirectApiInvoker


def _query(**overrides: Any) -> TranslatedQuery:
    values: dict[str, Any] = {
        "prompt": "Human: hi",
        "system_prompt": "Be brief.",
        "max_turns": 5,
        "working_directory": ".",
        "model": "claude-3-5-sonnet-20241022",
        "requested_model": "gpt-4o",
        "api_messages": [{"role": "user", "content": "hi"}],
    }
    values.update(overrides)
    return TranslatedQuery(**values)


def _invoker(handler: Callable[[httpx.Request], httpx.Response]) -> DirectApiInvoker:
    return DirectApiInvoker(
        api_key="sk-test",
        base_url="https://anthropic.test/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def _drain(events: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    return [event async for event in events]


def test_invoke_posts_messages_payload_and_maps_response() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["payload"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "claude-3-5-sonnet-20241022",
                "content": [
                    {"type": "text", "text": "Hello!"},
                    {"type": "tool_use", "name": "search", "input": {"q": "x"}},
                ],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 12, "output_tokens": 3},
            },
        )

    result = asyncio.run(
        _invoker(handler).invoke(_query(sampling=SamplingParams(top_p=0.5)))
    )

    assert seen["url"] == "https://anthropic.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["payload"] == {
        "model": "claude-3-5-sonnet-20241022",
        "max_tokens": 2048,
        "temperature": 0.7,
        "messages": [{"role": "user", "content": "hi"}],
        "top_p": 0.5,
        "system": "Be brief.",
    }
    assert [message.kind for message in result.messages] == ["text", "tool_use"]
    assert result.messages[0].text == "Hello!"
    assert result.messages[1].tool is not None
    assert result.messages[1].tool.name == "search"
    assert result.usage is not None
    assert result.usage.total_tokens == 15
    assert result.finished
    assert result.invoker == "direct_api"


def test_invoke_marks_max_tokens_stop_as_unfinished() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"content": [{"type": "text", "text": "cut"}], "stop_reason": "max_tokens"},
        )

    result = asyncio.run(_invoker(handler).invoke(_query()))

    assert not result.finished
    assert result.usage is None


def test_credit_error_is_terminal_and_keeps_provider_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={
                "type": "error",
                "error": {
                    "type": "invalid_request_error",
                    "message": "Your credit balance is too low to access the API.",
                },
            },
        )

    with pytest.raises(TerminalBackendError) as excinfo:
        asyncio.run(_invoker(handler).invoke(_query()))

    assert "Your credit balance is too low" in excinfo.value.message
    assert excinfo.value.invoker == "direct_api"


def test_overloaded_error_is_transport() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            529, json={"error": {"type": "overloaded_error", "message": "Overloaded"}}
        )

    with pytest.raises(TransportError, match="Overloaded"):
        asyncio.run(_invoker(handler).invoke(_query()))


def test_connection_failure_is_transport() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError, match="connection refused"):
        asyncio.run(_invoker(handler).invoke(_query()))


def _sse(*events: dict[str, Any]) -> bytes:
    return "".join(
        f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
    ).encode("utf-8")


def test_stream_yields_each_text_delta_then_terminal_usage() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["payload"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 9}}},
                {"type": "content_block_start", "index": 0},
                {"type": "ping"},
                {
                    "type": "content_block_delta",
                    "delta": {"type": "text_delta", "text": "Hel"},
                },
                {
                    "type": "content_block_delta",
                    "delta": {"type": "text_delta", "text": "lo"},
                },
                {
                    "type": "message_delta",
                    "delta": {"stop_reason": "end_turn"},
                    "usage": {"output_tokens": 2},
                },
                {"type": "message_stop"},
            ),
        )

    events = asyncio.run(_drain(_invoker(handler).stream(_query())))

    assert seen["payload"]["stream"] is True
    assert [event.message.text for event in events if event.message] == ["Hel", "lo"]
    terminal = events[-1]
    assert terminal.finished
    assert terminal.finish_reason == "stop"
    assert terminal.usage is not None
    assert terminal.usage.prompt_tokens == 9
    assert terminal.usage.completion_tokens == 2
    assert terminal.usage.total_tokens == 11


def test_stream_error_event_is_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {
                    "type": "error",
                    "error": {"type": "overloaded_error", "message": "Overloaded"},
                }
            ),
        )

    with pytest.raises(TransportError, match="Overloaded"):
        asyncio.run(_drain(_invoker(handler).stream(_query())))


def test_stream_http_error_with_invalid_key_is_terminal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            401,
            json={
                "error": {"type": "authentication_error", "message": "invalid x-api-key"}
            },
        )

    with pytest.raises(TerminalBackendError):
        asyncio.run(_drain(_invoker(handler).stream(_query())))
