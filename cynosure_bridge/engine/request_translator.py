from __future__ import annotations

import logging
from typing import Any

from cynosure_bridge.engine.model_mapper import ModelMapper, map_openai_to_backend
from cynosure_bridge.engine.types import SamplingParams, TranslatedQuery
from cynosure_bridge.errors import ValidationError
from cynosure_bridge.schemas import ChatCompletionRequest, ChatMessage, ImagePart, TextPart

logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_TURNS = 5
DEFAULT_IMAGE_MEDIA_TYPE = "image/jpeg"
IMAGE_NOTE_TEMPLATE = (
    "[Note: {count} image(s) were included but cannot be processed by the CLI backend]"
)


def derive_max_turns(message_count: int, base: int = DEFAULT_MAX_TURNS) -> int:
    if message_count > 10:
        return max(base, 10)
    if message_count > 5:
        return max(base, 7)
    return base


def role_label(message: ChatMessage) -> str:
    if message.role == "user":
        return "Human"
    if message.role == "assistant":
        return "Assistant"
    if message.role == "function":
        return f"Function {message.name or 'function'}"
    return "System"


def flatten_content(content: str | list[Any] | None) -> str:
    """Render message content as prompt text; images become a placeholder note."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    texts = [part.text for part in content if isinstance(part, TextPart)]
    image_count = sum(1 for part in content if isinstance(part, ImagePart))
    text = " ".join(texts)
    if image_count:
        note = IMAGE_NOTE_TEMPLATE.format(count=image_count)
        text = f"{text} {note}" if text else note
    return text


def image_source(url: str) -> dict[str, str]:
    normalized = url.strip()
    if normalized.startswith("data:"):
        header, _, data = normalized.partition(",")
        media_type = header[len("data:") :].split(";", 1)[0].strip()
        return {
            "type": "base64",
            "media_type": media_type or DEFAULT_IMAGE_MEDIA_TYPE,
            "data": data,
        }
    if normalized.startswith(("http://", "https://")):
        return {"type": "url", "url": normalized}
    return {
        "type": "base64",
        "media_type": DEFAULT_IMAGE_MEDIA_TYPE,
        "data": normalized,
    }


def to_api_content(content: str | list[Any] | None) -> str | list[dict[str, Any]]:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    blocks: list[dict[str, Any]] = []
    for part in content:
        if isinstance(part, TextPart):
            if part.text:
                blocks.append({"type": "text", "text": part.text})
            continue
        if isinstance(part, ImagePart):
            blocks.append({"type": "image", "source": image_source(part.image_url.url)})
    if not blocks:
        return flatten_content(content)
    return blocks


def to_api_message(message: ChatMessage) -> dict[str, Any]:
    content = to_api_content(message.content)
    if message.role == "function":
        prefix = f"{role_label(message)}: "
        if isinstance(content, str):
            content = prefix + content
        else:
            content = [{"type": "text", "text": prefix.strip()}, *content]
    return {
        "role": "assistant" if message.role == "assistant" else "user",
        "content": content,
    }


def translate_request(
    request: ChatCompletionRequest,
    *,
    working_directory: str,
    base_max_turns: int = DEFAULT_MAX_TURNS,
    mapper: ModelMapper | None = None,
) -> TranslatedQuery:
    messages = list(request.messages or [])
    if not messages:
        raise ValidationError("Missing required field: messages must not be empty.")

    system_prompt: str | None = None
    system_index: int | None = None
    for index, message in enumerate(messages):
        if message.role == "system":
            system_prompt = flatten_content(message.content)
            system_index = index
            break

    turns: list[str] = []
    api_messages: list[dict[str, Any]] = []
    for index, message in enumerate(messages):
        if index == system_index:
            continue
        if message.role == "system":
            # Only the first system message becomes the system prompt; later
            # ones are kept in place as ordinary turns.
            logger.debug("additional_system_message_as_turn index=%d", index)
        turns.append(f"{role_label(message)}: {flatten_content(message.content)}")
        api_messages.append(to_api_message(message))

    max_turns = request.max_turns or derive_max_turns(len(messages), base_max_turns)
    backend_model = (
        mapper.to_backend(request.model)
        if mapper is not None
        else map_openai_to_backend(request.model)
    )

    return TranslatedQuery(
        prompt="\n\n".join(turns),
        system_prompt=system_prompt,
        max_turns=max_turns,
        working_directory=working_directory,
        model=backend_model,
        requested_model=request.model,
        api_messages=api_messages,
        sampling=SamplingParams(
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            top_p=request.top_p,
        ),
    )
