from __future__ import annotations

import json
import time
from typing import Any, AsyncGenerator, AsyncIterator, Iterable

from cynosure_bridge.engine.model_mapper import map_backend_to_openai
from cynosure_bridge.engine.types import ContentMessage, InvocationResult, StreamEvent
from cynosure_bridge.utils.token_utils import estimate_usage

EMPTY_RESPONSE_PLACEHOLDER = "No response generated"
TOOL_TRACE_HEADER = "--- Tool Usage ---"
TOOL_TRACE_FOOTER = "--- End Tool Usage ---"


def combined_text(result: InvocationResult) -> str:
    return "\n\n".join(message.text for message in result.text_messages())


def format_tool_usage(messages: Iterable[ContentMessage]) -> str:
    entries: list[str] = []
    for message in messages:
        if message.kind == "tool_use":
            name = message.tool.name if message.tool else "unknown"
            tool_input = message.tool.input if message.tool else None
            entries.append(f"Tool: {name}\nInput: {json.dumps(tool_input, indent=2)}")
        elif message.kind == "tool_result":
            entries.append(f"Result: {message.text}")
    if not entries:
        return ""
    body = "\n\n".join(entries)
    return f"\n\n{TOOL_TRACE_HEADER}\n{body}\n{TOOL_TRACE_FOOTER}\n\n"


def _response_model(result: InvocationResult, model: str | None) -> str:
    if model and model.strip():
        return model.strip()
    return map_backend_to_openai(result.backend_model)


def build_chat_completion(
    result: InvocationResult,
    *,
    model: str | None = None,
    prompt_text: str | None = None,
    include_tool_trace: bool = False,
    created: int | None = None,
) -> dict[str, Any]:
    """Render an invocation result as an OpenAI ``chat.completion`` object.

    When the backend reported no usage, token counts are estimated from text
    lengths and are approximate.
    """
    content = combined_text(result)
    usage = result.usage or estimate_usage(content, prompt_text)
    if not content:
        content = EMPTY_RESPONSE_PLACEHOLDER
    if include_tool_trace:
        content += format_tool_usage(result.messages)

    return {
        "id": result.conversation_id,
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": _response_model(result, model),
        "system_fingerprint": result.session_id or result.invoker,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "logprobs": None,
                "finish_reason": "stop" if result.finished else "length",
            }
        ],
        "usage": usage.to_dict(),
    }


def chat_completion_chunk(
    chunk_id: str,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
    created: int | None = None,
) -> dict[str, Any]:
    return {
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "logprobs": None,
                "finish_reason": finish_reason,
            }
        ],
    }


def _content_delta(text: str, *, first: bool) -> dict[str, Any]:
    if first:
        return {"role": "assistant", "content": text}
    return {"content": text}


def build_stream_chunks(
    result: InvocationResult, *, model: str | None = None
) -> list[dict[str, Any]]:
    chunk_id = result.conversation_id
    response_model = _response_model(result, model)
    created = int(time.time())
    texts = [message.text for message in result.text_messages()] or [
        EMPTY_RESPONSE_PLACEHOLDER
    ]

    chunks = [
        chat_completion_chunk(
            chunk_id,
            response_model,
            _content_delta(text, first=index == 0),
            created=created,
        )
        for index, text in enumerate(texts)
    ]
    chunks.append(
        chat_completion_chunk(
            chunk_id, response_model, {}, finish_reason="stop", created=created
        )
    )
    return chunks


async def iter_stream_chunks(
    events: AsyncIterator[StreamEvent],
    *,
    conversation_id: str,
    model: str,
) -> AsyncGenerator[dict[str, Any], None]:
    created = int(time.time())
    emitted = False
    finish_reason = "stop"
    async for event in events:
        if event.finished:
            finish_reason = event.finish_reason or "stop"
            continue
        message = event.message
        if message is None or message.kind != "text" or not message.text:
            continue
        yield chat_completion_chunk(
            conversation_id,
            model,
            _content_delta(message.text, first=not emitted),
            created=created,
        )
        emitted = True

    if not emitted:
        yield chat_completion_chunk(
            conversation_id,
            model,
            _content_delta(EMPTY_RESPONSE_PLACEHOLDER, first=True),
            created=created,
        )
    yield chat_completion_chunk(
        conversation_id, model, {}, finish_reason=finish_reason, created=created
    )
