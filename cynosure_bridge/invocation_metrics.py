from __future__ import annotations

from collections import Counter
from dataclasses import dataclass


@dataclass(slots=True)
class RequestCounters:
    total: int = 0
    successful: int = 0
    failed: int = 0
    duration_sum_ms: float = 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.duration_sum_ms / self.total if self.total else 0.0


class InvocationMetrics:
    """In-process counters for HTTP endpoints and backend invocations.

    Everything is updated from the event loop thread, so no locking is done.
    Endpoint keys are route templates and invoker keys come from a fixed set,
    which keeps the label space bounded.
    """

    def __init__(self) -> None:
        self._requests: dict[str, RequestCounters] = {}
        self._attempts: Counter[str] = Counter()
        self._successes: Counter[str] = Counter()
        self._failures: Counter[tuple[str, str]] = Counter()
        self._timeouts: Counter[str] = Counter()
        self._fallbacks: Counter[tuple[str, str]] = Counter()
        self._latency_sum_ms: dict[str, float] = {}

    def record_request(self, endpoint: str, *, success: bool, duration_ms: float) -> None:
        counters = self._requests.setdefault(endpoint, RequestCounters())
        counters.total += 1
        counters.duration_sum_ms += max(0.0, duration_ms)
        if success:
            counters.successful += 1
        else:
            counters.failed += 1

    def record_attempt(self, invoker: str) -> None:
        self._attempts[invoker] += 1

    def record_success(self, invoker: str, latency_ms: float) -> None:
        self._successes[invoker] += 1
        self._latency_sum_ms[invoker] = self._latency_sum_ms.get(invoker, 0.0) + max(
            0.0, latency_ms
        )

    def record_failure(self, invoker: str, error_type: str, *, timeout: bool = False) -> None:
        self._failures[(invoker, error_type)] += 1
        if timeout:
            self._timeouts[invoker] += 1

    def record_fallback(
        self, from_invoker: str, to_invoker: str, *, timeout: bool = False
    ) -> None:
        self._fallbacks[(from_invoker, to_invoker)] += 1
        if timeout:
            self._timeouts[from_invoker] += 1

    @property
    def requests(self) -> dict[str, RequestCounters]:
        return dict(self._requests)

    @property
    def attempts(self) -> dict[str, int]:
        return dict(self._attempts)

    @property
    def successes(self) -> dict[str, int]:
        return dict(self._successes)

    @property
    def failures(self) -> dict[tuple[str, str], int]:
        return dict(self._failures)

    @property
    def timeouts(self) -> dict[str, int]:
        return dict(self._timeouts)

    @property
    def fallbacks(self) -> dict[tuple[str, str], int]:
        return dict(self._fallbacks)

    @property
    def latency_sum_ms(self) -> dict[str, float]:
        return dict(self._latency_sum_ms)
