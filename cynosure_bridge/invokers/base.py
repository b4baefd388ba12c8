from __future__ import annotations

from typing import AsyncIterator, Protocol

from cynosure_bridge.engine.types import InvocationResult, StreamEvent, TranslatedQuery


class Invoker(Protocol):
    """One strategy for executing a translated query against the backend."""

    name: str
    supports_images: bool

    async def invoke(self, query: TranslatedQuery) -> InvocationResult: ...

    def stream(self, query: TranslatedQuery) -> AsyncIterator[StreamEvent]: ...
