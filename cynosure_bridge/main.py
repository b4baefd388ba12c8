from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)

from cynosure_bridge.engine.embeddings import EMBEDDING_MODELS, build_embeddings_response
from cynosure_bridge.engine.model_mapper import ModelMapper
from cynosure_bridge.engine.orchestrator import InvocationOrchestrator, build_orchestrator
from cynosure_bridge.engine.request_translator import translate_request
from cynosure_bridge.engine.response_translator import (
    build_chat_completion,
    iter_stream_chunks,
)
from cynosure_bridge.engine.types import TranslatedQuery
from cynosure_bridge.errors import BridgeError, ValidationError, openai_error_body
from cynosure_bridge.gateway.audit import JsonlAuditLogger
from cynosure_bridge.gateway.auth import Authenticator
from cynosure_bridge.invocation_metrics import InvocationMetrics
from cynosure_bridge.schemas import ChatCompletionRequest, EmbeddingsRequest
from cynosure_bridge.settings import Settings, get_settings

SERVICE_NAME = "cynosure-bridge"
MODEL_CREATED_TS = 1686935002
UNMATCHED_ENDPOINT = "unmatched"

app = FastAPI(
    title="Cynosure Bridge",
    description="OpenAI-compatible gateway in front of the Claude CLI and Anthropic API.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _endpoint_label(request: Request) -> str:
    path = request.url.path
    known = {getattr(route, "path", None) for route in app.router.routes}
    return path if path in known else UNMATCHED_ENDPOINT


@app.middleware("http")
async def request_metrics_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_metrics: InvocationMetrics | None = getattr(app.state, "metrics", None)
    if request_metrics is None:
        return await call_next(request)

    endpoint = _endpoint_label(request)
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        request_metrics.record_request(
            endpoint,
            success=False,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        raise
    request_metrics.record_request(
        endpoint,
        success=response.status_code < 400,
        duration_ms=(time.perf_counter() - started) * 1000.0,
    )
    return response


def _load_model_mapper(settings: Settings) -> ModelMapper:
    if not settings.model_map_path:
        return ModelMapper()
    mapper = ModelMapper.from_yaml(settings.model_map_path)
    logger.info(
        "model_map_loaded path=%s models=%d",
        settings.model_map_path,
        len(mapper.chat_models()),
    )
    return mapper


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.model_mapper = _load_model_mapper(settings)
    app.state.audit_logger = audit_logger
    app.state.metrics = InvocationMetrics()
    app.state.orchestrator = build_orchestrator(
        settings, audit_hook=audit_logger.log, metrics=app.state.metrics
    )
    orchestrator: InvocationOrchestrator = app.state.orchestrator
    logger.info(
        (
            "startup complete primary_invoker=%s fallback_invoker=%s "
            "working_directory=%s audit_log_enabled=%s audit_log_path=%s"
        ),
        orchestrator.primary_name,
        orchestrator.fallback_name,
        settings.resolved_working_directory,
        settings.audit_log_enabled,
        settings.audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    orchestrator: InvocationOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    orchestrator: InvocationOrchestrator = app.state.orchestrator
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "primary_invoker": orchestrator.primary_name,
        "fallback_invoker": orchestrator.fallback_name,
    }


def _build_models_response(mapper: ModelMapper) -> dict[str, Any]:
    data: list[dict[str, Any]] = [
        {
            "id": model_id,
            "object": "model",
            "created": MODEL_CREATED_TS,
            "owned_by": SERVICE_NAME,
            "backend_model": backend_model,
        }
        for model_id, backend_model in sorted(mapper.chat_models().items())
    ]
    data.extend(
        {
            "id": model_id,
            "object": "model",
            "created": MODEL_CREATED_TS,
            "owned_by": SERVICE_NAME,
            "dimensions": dimensions,
        }
        for model_id, dimensions in EMBEDDING_MODELS.items()
    )
    return {"object": "list", "data": data}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return _build_models_response(app.state.model_mapper)


def _prometheus_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prometheus_labels(labels: dict[str, str] | None) -> str:
    if not labels:
        return ""
    rendered = ",".join(
        f'{key}="{_prometheus_escape(str(value))}"'
        for key, value in sorted(labels.items())
    )
    return "{" + rendered + "}"


def _append_prometheus_metric(
    lines: list[str],
    declared: set[str],
    *,
    name: str,
    metric_type: str,
    help_text: str,
    value: float | int,
    labels: dict[str, str] | None = None,
) -> None:
    if name not in declared:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} {metric_type}")
        declared.add(name)
    lines.append(f"{name}{_prometheus_labels(labels)} {float(value):.6f}")


def _render_prometheus_metrics(
    metrics: InvocationMetrics, audit_logger: JsonlAuditLogger | None
) -> str:
    lines: list[str] = []
    declared: set[str] = set()

    for endpoint, counters in sorted(metrics.requests.items()):
        labels = {"endpoint": endpoint}
        for name, help_text, value in (
            (
                "bridge_http_requests_total",
                "HTTP requests received by endpoint.",
                counters.total,
            ),
            (
                "bridge_http_requests_successful_total",
                "HTTP requests answered with a status below 400.",
                counters.successful,
            ),
            (
                "bridge_http_requests_failed_total",
                "HTTP requests answered with an error status.",
                counters.failed,
            ),
            (
                "bridge_http_request_duration_ms_sum",
                "Sum of HTTP request durations (ms) until response start.",
                counters.duration_sum_ms,
            ),
        ):
            _append_prometheus_metric(
                lines,
                declared,
                name=name,
                metric_type="counter",
                help_text=help_text,
                value=value,
                labels=labels,
            )
        _append_prometheus_metric(
            lines,
            declared,
            name="bridge_http_request_duration_ms_avg",
            metric_type="gauge",
            help_text="Average HTTP request duration (ms) until response start.",
            value=counters.avg_duration_ms,
            labels=labels,
        )

    for name, help_text, values in (
        (
            "bridge_invocation_attempts_total",
            "Backend invocation attempts by invoker.",
            metrics.attempts,
        ),
        (
            "bridge_invocation_successes_total",
            "Successful backend invocations by invoker.",
            metrics.successes,
        ),
        (
            "bridge_invocation_timeouts_total",
            "Backend invocations that hit the invocation timeout.",
            metrics.timeouts,
        ),
        (
            "bridge_invocation_latency_ms_sum",
            "Sum of successful invocation latencies (ms) by invoker.",
            metrics.latency_sum_ms,
        ),
    ):
        for invoker, value in sorted(values.items()):
            _append_prometheus_metric(
                lines,
                declared,
                name=name,
                metric_type="counter",
                help_text=help_text,
                value=value,
                labels={"invoker": invoker},
            )

    for (invoker, error_type), value in sorted(metrics.failures.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="bridge_invocation_failures_total",
            metric_type="counter",
            help_text="Backend invocation errors by invoker and error type.",
            value=value,
            labels={"invoker": invoker, "error_type": error_type},
        )

    for (from_invoker, to_invoker), value in sorted(metrics.fallbacks.items()):
        _append_prometheus_metric(
            lines,
            declared,
            name="bridge_invocation_fallbacks_total",
            metric_type="counter",
            help_text="Fallbacks from the primary to the secondary invoker.",
            value=value,
            labels={"from_invoker": from_invoker, "to_invoker": to_invoker},
        )

    if audit_logger is not None:
        _append_prometheus_metric(
            lines,
            declared,
            name="bridge_audit_records_dropped",
            metric_type="gauge",
            help_text="Audit records dropped since the last drop report.",
            value=audit_logger.dropped_records,
        )

    return "\n".join(lines) + "\n"


@app.get("/metrics")
async def metrics() -> Response:
    settings: Settings = app.state.settings
    if not settings.observability_metrics_enabled:
        return JSONResponse(
            status_code=404,
            content=openai_error_body(
                "Metrics endpoint is disabled.", error_type="not_found_error"
            ),
        )
    payload = _render_prometheus_metrics(
        app.state.metrics, getattr(app.state, "audit_logger", None)
    )
    return PlainTextResponse(
        content=payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def _sse_event(payload: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


async def _stream_chat_completion(
    orchestrator: InvocationOrchestrator,
    body: ChatCompletionRequest,
    query: TranslatedQuery,
) -> StreamingResponse:
    events = orchestrator.stream(query)
    chunks = iter_stream_chunks(
        events,
        conversation_id=query.conversation_id,
        model=body.model,
    )
    # Failures before the first chunk still get a proper HTTP status.
    first_chunk = await anext(chunks)

    async def event_stream() -> AsyncIterator[bytes]:
        try:
            yield _sse_event(first_chunk)
            async for chunk in chunks:
                yield _sse_event(chunk)
        except BridgeError as exc:
            logger.warning(
                "chat_stream_interrupted conversation_id=%s error_type=%s error=%s",
                query.conversation_id,
                exc.error_type,
                exc.message,
            )
            yield _sse_event(openai_error_body(exc.message, exc.error_type))
        finally:
            await chunks.aclose()
            await events.aclose()
        yield b"data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/v1/chat/completions")
async def chat_completions(body: ChatCompletionRequest) -> Response:
    settings: Settings = app.state.settings
    orchestrator: InvocationOrchestrator = app.state.orchestrator
    query = translate_request(
        body,
        working_directory=settings.resolved_working_directory,
        base_max_turns=settings.default_max_turns,
        mapper=app.state.model_mapper,
    )

    if body.stream:
        return await _stream_chat_completion(orchestrator, body, query)

    result = await orchestrator.invoke(query)
    return JSONResponse(
        content=build_chat_completion(
            result,
            model=body.model,
            prompt_text=query.estimation_text,
            include_tool_trace=settings.include_tool_trace,
        )
    )


@app.post("/v1/embeddings")
async def embeddings(body: EmbeddingsRequest) -> dict[str, Any]:
    texts = [body.input] if isinstance(body.input, str) else list(body.input)
    if not texts or not any(texts):
        raise ValidationError("Missing required field: input")
    return build_embeddings_response(texts, body.model)


@app.post("/v1/completions")
async def completions() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=openai_error_body(
            "Legacy completions endpoint not supported. Use /v1/chat/completions instead.",
            error_type="invalid_request_error",
            code="deprecated_endpoint",
        ),
    )


@app.exception_handler(BridgeError)
async def bridge_error_handler(_: Request, exc: BridgeError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=openai_error_body(exc.message, exc.error_type),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    _: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request body.")
    return JSONResponse(
        status_code=400,
        content=openai_error_body(
            f"{location}: {message}" if location else message,
            error_type="invalid_request_error",
            param=location or None,
        ),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error error=%s", exc)
    return JSONResponse(
        status_code=500,
        content=openai_error_body("Internal server error.", error_type="internal_error"),
    )


def run() -> None:
    import uvicorn

    uvicorn.run("cynosure_bridge.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
