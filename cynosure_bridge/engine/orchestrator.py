from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator, Callable

from cynosure_bridge.engine.types import InvocationResult, StreamEvent, TranslatedQuery, Usage
from cynosure_bridge.errors import BridgeError, TransportError
from cynosure_bridge.invocation_metrics import InvocationMetrics
from cynosure_bridge.invokers.base import Invoker
from cynosure_bridge.invokers.direct_api import DirectApiInvoker
from cynosure_bridge.invokers.subprocess_cli import SubprocessInvoker
from cynosure_bridge.settings import Settings

logger = logging.getLogger("uvicorn.error")

AuditHook = Callable[[dict[str, Any]], None]


def should_fallback(error: BaseException, secondary: Invoker | None) -> bool:
    """Only transport-class failures move to the other invoker.

    Terminal backend errors (credentials, billing) and validation errors are
    surfaced as-is because a different transport cannot fix them.
    """
    return secondary is not None and isinstance(error, TransportError)


def _timeout_error(invoker: Invoker, timeout_seconds: float) -> TransportError:
    return TransportError(
        f"{invoker.name} request timed out after {timeout_seconds:g}s. Please try again.",
        invoker=invoker.name,
        is_timeout=True,
    )


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, TransportError) and error.is_timeout


def _usage_fields(usage: Usage | None) -> dict[str, Any]:
    return usage.to_dict() if usage is not None else {}


class InvocationOrchestrator:
    def __init__(
        self,
        primary: Invoker,
        secondary: Invoker | None = None,
        *,
        timeout_seconds: float = 60.0,
        audit_hook: AuditHook | None = None,
        metrics: InvocationMetrics | None = None,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self._audit_hook = audit_hook
        self.metrics = metrics

    @property
    def primary_name(self) -> str:
        return self.primary.name

    @property
    def fallback_name(self) -> str | None:
        return self.secondary.name if self.secondary is not None else None

    async def close(self) -> None:
        for invoker in (self.primary, self.secondary):
            close = getattr(invoker, "close", None)
            if close is not None:
                await close()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    def _record_attempt(
        self, invoker: Invoker, query: TranslatedQuery, *, attempt: int, stream: bool
    ) -> None:
        if self.metrics is not None:
            self.metrics.record_attempt(invoker.name)
        logger.info(
            "invocation_attempt conversation_id=%s invoker=%s attempt=%d stream=%s model=%s",
            query.conversation_id,
            invoker.name,
            attempt,
            stream,
            query.model,
        )
        self._audit(
            "invocation_attempt",
            conversation_id=query.conversation_id,
            invoker=invoker.name,
            attempt=attempt,
            stream=stream,
            model=query.model,
            requested_model=query.requested_model,
        )

    def _record_fallback(
        self, error: BridgeError, query: TranslatedQuery, *, stream: bool
    ) -> None:
        assert self.secondary is not None
        if self.metrics is not None:
            self.metrics.record_fallback(
                self.primary.name, self.secondary.name, timeout=_is_timeout(error)
            )
        logger.warning(
            "invocation_fallback conversation_id=%s from=%s to=%s stream=%s error=%s",
            query.conversation_id,
            self.primary.name,
            self.secondary.name,
            stream,
            error.message,
        )
        self._audit(
            "invocation_fallback",
            conversation_id=query.conversation_id,
            from_invoker=self.primary.name,
            to_invoker=self.secondary.name,
            stream=stream,
            error_type=error.error_type,
            error=error.message,
        )

    def _record_success(
        self,
        invoker: Invoker,
        query: TranslatedQuery,
        *,
        started: float,
        stream: bool,
        usage: Usage | None,
        session_id: str | None = None,
    ) -> None:
        latency_ms = (time.perf_counter() - started) * 1000.0
        if self.metrics is not None:
            self.metrics.record_success(invoker.name, latency_ms)
        logger.info(
            "invocation_succeeded conversation_id=%s invoker=%s stream=%s latency_ms=%.2f",
            query.conversation_id,
            invoker.name,
            stream,
            latency_ms,
        )
        self._audit(
            "invocation_succeeded",
            conversation_id=query.conversation_id,
            invoker=invoker.name,
            stream=stream,
            latency_ms=round(latency_ms, 3),
            session_id=session_id,
            **_usage_fields(usage),
        )

    def _record_failure(
        self, invoker: Invoker, error: BaseException, query: TranslatedQuery, *, stream: bool
    ) -> None:
        error_type = (
            error.error_type if isinstance(error, BridgeError) else type(error).__name__
        )
        if self.metrics is not None:
            self.metrics.record_failure(
                invoker.name, error_type, timeout=_is_timeout(error)
            )
        logger.warning(
            "invocation_failed conversation_id=%s invoker=%s stream=%s error_type=%s error=%s",
            query.conversation_id,
            invoker.name,
            stream,
            error_type,
            error,
        )
        self._audit(
            "invocation_failed",
            conversation_id=query.conversation_id,
            invoker=invoker.name,
            stream=stream,
            error_type=error_type,
            error=str(error),
        )

    async def _attempt(
        self, invoker: Invoker, query: TranslatedQuery, *, attempt: int
    ) -> InvocationResult:
        self._record_attempt(invoker, query, attempt=attempt, stream=False)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                invoker.invoke(query), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            raise _timeout_error(invoker, self.timeout_seconds) from exc
        self._record_success(
            invoker,
            query,
            started=started,
            stream=False,
            usage=result.usage,
            session_id=result.session_id,
        )
        return result

    async def invoke(self, query: TranslatedQuery) -> InvocationResult:
        try:
            return await self._attempt(self.primary, query, attempt=1)
        except BridgeError as exc:
            if not should_fallback(exc, self.secondary):
                self._record_failure(self.primary, exc, query, stream=False)
                raise
            self._record_fallback(exc, query, stream=False)

        assert self.secondary is not None
        try:
            return await self._attempt(self.secondary, query, attempt=2)
        except BridgeError as exc:
            self._record_failure(self.secondary, exc, query, stream=False)
            raise

    async def _stream_attempt(
        self, invoker: Invoker, query: TranslatedQuery, *, attempt: int
    ) -> AsyncIterator[StreamEvent]:
        self._record_attempt(invoker, query, attempt=attempt, stream=True)
        started = time.perf_counter()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        iterator = invoker.stream(query)
        usage: Usage | None = None
        session_id: str | None = None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise _timeout_error(invoker, self.timeout_seconds)
                try:
                    event = await asyncio.wait_for(anext(iterator), timeout=remaining)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    raise _timeout_error(invoker, self.timeout_seconds) from exc
                if event.finished:
                    usage = event.usage
                    session_id = event.session_id
                yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        self._record_success(
            invoker,
            query,
            started=started,
            stream=True,
            usage=usage,
            session_id=session_id,
        )

    async def stream(
        self, query: TranslatedQuery
    ) -> AsyncGenerator[StreamEvent, None]:
        yielded = False
        try:
            async with contextlib.aclosing(
                self._stream_attempt(self.primary, query, attempt=1)
            ) as events:
                async for event in events:
                    yielded = True
                    yield event
            return
        except BridgeError as exc:
            # Once content reached the consumer a second backend would
            # duplicate it.
            if yielded or not should_fallback(exc, self.secondary):
                self._record_failure(self.primary, exc, query, stream=True)
                raise
            self._record_fallback(exc, query, stream=True)

        assert self.secondary is not None
        try:
            async with contextlib.aclosing(
                self._stream_attempt(self.secondary, query, attempt=2)
            ) as events:
                async for event in events:
                    yield event
        except BridgeError as exc:
            self._record_failure(self.secondary, exc, query, stream=True)
            raise


def build_invokers(settings: Settings) -> tuple[Invoker, Invoker | None]:
    cli = SubprocessInvoker(executable=settings.claude_cli_path)
    if not settings.has_api_credentials:
        return cli, None

    direct = DirectApiInvoker(
        api_key=(settings.anthropic_api_key or "").strip(),
        base_url=settings.anthropic_base_url,
        api_version=settings.anthropic_version,
        default_max_tokens=settings.default_max_tokens,
        default_temperature=settings.default_temperature,
        timeout_seconds=settings.invocation_timeout_seconds,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
    )
    return direct, (cli if settings.cli_available else None)


def build_orchestrator(
    settings: Settings,
    *,
    audit_hook: AuditHook | None = None,
    metrics: InvocationMetrics | None = None,
) -> InvocationOrchestrator:
    primary, secondary = build_invokers(settings)
    return InvocationOrchestrator(
        primary,
        secondary,
        timeout_seconds=settings.invocation_timeout_seconds,
        audit_hook=audit_hook,
        metrics=metrics,
    )
