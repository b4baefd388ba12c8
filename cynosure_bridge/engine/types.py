from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Literal

MessageKind = Literal["text", "tool_use", "tool_result", "error"]


def generate_id(prefix: str = "chatcmpl") -> str:
    return f"{prefix}-{secrets.token_urlsafe(12).replace('-', '').replace('_', '')[:16]}"


@dataclass(slots=True)
class SamplingParams:
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None


@dataclass(slots=True)
class TranslatedQuery:
    prompt: str
    system_prompt: str | None
    max_turns: int
    working_directory: str
    model: str
    requested_model: str
    api_messages: list[dict[str, Any]] = field(default_factory=list)
    sampling: SamplingParams = field(default_factory=SamplingParams)
    conversation_id: str = field(default_factory=generate_id)

    @property
    def estimation_text(self) -> str:
        if self.system_prompt:
            return f"{self.system_prompt}\n\n{self.prompt}"
        return self.prompt


@dataclass(slots=True)
class ToolDescriptor:
    name: str
    input: Any = None
    output: Any = None


@dataclass(slots=True)
class ContentMessage:
    kind: MessageKind
    text: str
    tool: ToolDescriptor | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class Metadata:
    session_id: str | None = None
    cost: float | None = None
    duration_seconds: float | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def usage(self) -> Usage | None:
        if (
            self.prompt_tokens is None
            or self.completion_tokens is None
            or self.total_tokens is None
        ):
            return None
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
        )


@dataclass(slots=True)
class InvocationResult:
    messages: list[ContentMessage]
    backend_model: str
    conversation_id: str
    finished: bool
    usage: Usage | None = None
    invoker: str | None = None
    session_id: str | None = None
    metadata: Metadata | None = None

    def text_messages(self) -> list[ContentMessage]:
        return [message for message in self.messages if message.kind == "text"]


@dataclass(slots=True)
class StreamEvent:
    """One increment of a backend stream.

    Partial events carry ``message``; the terminal event has ``finished`` set
    and may carry exact ``usage`` when the backend reported it.
    """

    message: ContentMessage | None = None
    finished: bool = False
    finish_reason: str | None = None
    usage: Usage | None = None
    session_id: str | None = None
