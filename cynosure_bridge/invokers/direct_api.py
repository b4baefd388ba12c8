from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from cynosure_bridge.engine.types import (
    ContentMessage,
    InvocationResult,
    StreamEvent,
    ToolDescriptor,
    TranslatedQuery,
    Usage,
)
from cynosure_bridge.errors import TransportError, classify_backend_error

logger = logging.getLogger("uvicorn.error")

MESSAGES_PATH = "/v1/messages"
INCOMPLETE_STOP_REASONS = {"max_tokens"}


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    error_type = exc.__class__.__name__.strip() or "RequestError"
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "request", None)
    if isinstance(request, httpx.Request):
        details["request_url"] = str(request.url)
    return details


def _provider_error_message(status_code: int | None, body: Any) -> str:
    error_type = "api_error"
    message = ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            raw_type = error.get("type")
            raw_message = error.get("message")
            if isinstance(raw_type, str) and raw_type.strip():
                error_type = raw_type.strip()
            if isinstance(raw_message, str):
                message = raw_message.strip()
    elif isinstance(body, (bytes, str)):
        message = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        message = message.strip()
    status = f"status {status_code}, " if status_code is not None else ""
    return f"Anthropic API error ({status}{error_type}): {message or 'no details'}"


def _parse_json_body(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class DirectApiInvoker:
    name = "direct_api"
    supports_images = True

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        api_version: str = "2023-06-01",
        default_max_tokens: int = 2048,
        default_temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        connect_timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=max(0.1, float(connect_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=128, max_keepalive_connections=32),
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @property
    def url(self) -> str:
        return f"{self._base_url}{MESSAGES_PATH}"

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": self._api_version,
            "content-type": "application/json",
        }

    def build_payload(self, query: TranslatedQuery, *, stream: bool) -> dict[str, Any]:
        sampling = query.sampling
        payload: dict[str, Any] = {
            "model": query.model,
            "max_tokens": sampling.max_tokens or self.default_max_tokens,
            "temperature": (
                sampling.temperature
                if sampling.temperature is not None
                else self.default_temperature
            ),
            "messages": query.api_messages,
        }
        if sampling.top_p is not None:
            payload["top_p"] = sampling.top_p
        if query.system_prompt:
            payload["system"] = query.system_prompt
        if stream:
            payload["stream"] = True
        return payload

    async def invoke(self, query: TranslatedQuery) -> InvocationResult:
        try:
            response = await self.client.post(
                self.url,
                headers=self._headers(),
                json=self.build_payload(query, stream=False),
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "direct_api_request_error url=%s error_type=%s error=%s",
                details.get("request_url", self.url),
                details["error_type"],
                details["error"],
            )
            raise TransportError(
                f"Anthropic API request failed: {details['error']}",
                invoker=self.name,
                is_timeout=details["is_timeout"],
            ) from exc

        body = _parse_json_body(response.content)
        if response.status_code >= 400:
            raise classify_backend_error(
                _provider_error_message(response.status_code, body),
                invoker=self.name,
            )
        if not isinstance(body, dict):
            raise TransportError(
                "Anthropic API returned a non-JSON response body.", invoker=self.name
            )
        return self._to_result(query, body)

    def _to_result(self, query: TranslatedQuery, body: dict[str, Any]) -> InvocationResult:
        messages: list[ContentMessage] = []
        for block in body.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str):
                    messages.append(ContentMessage(kind="text", text=text))
            elif block_type == "tool_use":
                name = block.get("name") if isinstance(block.get("name"), str) else "unknown"
                tool_input = block.get("input") or {}
                messages.append(
                    ContentMessage(
                        kind="tool_use",
                        text=f"Tool: {name}\nInput: {json.dumps(tool_input, indent=2)}",
                        tool=ToolDescriptor(name=name, input=tool_input),
                    )
                )

        usage: Usage | None = None
        raw_usage = body.get("usage")
        if isinstance(raw_usage, dict):
            input_tokens = int(raw_usage.get("input_tokens") or 0)
            output_tokens = int(raw_usage.get("output_tokens") or 0)
            usage = Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )

        model = body.get("model")
        return InvocationResult(
            messages=messages,
            usage=usage,
            backend_model=model if isinstance(model, str) and model else query.model,
            conversation_id=query.conversation_id,
            finished=body.get("stop_reason") not in INCOMPLETE_STOP_REASONS,
            invoker=self.name,
        )

    async def stream(self, query: TranslatedQuery) -> AsyncIterator[StreamEvent]:
        input_tokens: int | None = None
        output_tokens: int | None = None
        stop_reason: str | None = None
        try:
            async with self.client.stream(
                "POST",
                self.url,
                headers=self._headers(),
                json=self.build_payload(query, stream=True),
            ) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise classify_backend_error(
                        _provider_error_message(
                            response.status_code, _parse_json_body(raw)
                        ),
                        invoker=self.name,
                    )

                async for event in self._iter_sse_data_json(response):
                    event_type = event.get("type")
                    if event_type == "message_start":
                        message = event.get("message")
                        if isinstance(message, dict):
                            usage = message.get("usage")
                            if isinstance(usage, dict):
                                input_tokens = int(usage.get("input_tokens") or 0)
                        continue
                    if event_type == "content_block_delta":
                        delta = event.get("delta")
                        if (
                            isinstance(delta, dict)
                            and delta.get("type") == "text_delta"
                            and isinstance(delta.get("text"), str)
                            and delta["text"]
                        ):
                            yield StreamEvent(
                                message=ContentMessage(kind="text", text=delta["text"])
                            )
                        continue
                    if event_type == "message_delta":
                        delta = event.get("delta")
                        if isinstance(delta, dict) and isinstance(
                            delta.get("stop_reason"), str
                        ):
                            stop_reason = delta["stop_reason"]
                        usage = event.get("usage")
                        if isinstance(usage, dict):
                            output_tokens = int(usage.get("output_tokens") or 0)
                        continue
                    if event_type == "error":
                        raise classify_backend_error(
                            _provider_error_message(None, event), invoker=self.name
                        )
                    if event_type == "message_stop":
                        break
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "direct_api_stream_error url=%s error_type=%s error=%s",
                details.get("request_url", self.url),
                details["error_type"],
                details["error"],
            )
            raise TransportError(
                f"Anthropic API stream failed: {details['error']}",
                invoker=self.name,
                is_timeout=details["is_timeout"],
            ) from exc

        usage_result: Usage | None = None
        if input_tokens is not None and output_tokens is not None:
            usage_result = Usage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            )
        yield StreamEvent(
            finished=True,
            finish_reason="length" if stop_reason in INCOMPLETE_STOP_REASONS else "stop",
            usage=usage_result,
        )

    @staticmethod
    async def _iter_sse_data_json(
        response: httpx.Response,
    ) -> AsyncIterator[dict[str, Any]]:
        async for line in response.aiter_lines():
            if not line or not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if not payload or payload == "[DONE]":
                continue
            try:
                parsed = json.loads(payload)
            except ValueError:
                continue
            if isinstance(parsed, dict):
                yield parsed
