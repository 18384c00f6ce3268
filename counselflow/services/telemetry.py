from __future__ import annotations

import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


class Telemetry:
    """Process-scoped request, integration and counter samples.

    State lives for the lifetime of the process and is never shared across
    workers; reset() clears everything and exists for tests and ops tooling.
    """

    def __init__(self, *, max_requests: int = 20000, max_external: int = 10000) -> None:
        self._lock = threading.Lock()
        self._requests: Deque[RequestSample] = deque(maxlen=max_requests)
        self._external: Deque[ExternalCallSample] = deque(maxlen=max_external)
        self._counters: dict[str, int] = defaultdict(int)

    def record_request(self, *, path: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests.append(
                RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
            )

    def record_external_call(self, *, integration: str, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._external.append(
                ExternalCallSample(
                    ts=time.time(),
                    integration=integration,
                    latency_ms=latency_ms,
                    success=success,
                )
            )

    def increment_counter(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def counters_snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def p95_latency(self, window_s: int, *, path_prefix: str | None = None) -> float | None:
        cutoff = time.time() - window_s
        with self._lock:
            samples = [sample for sample in self._requests if sample.ts >= cutoff]
        if path_prefix:
            samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
        if not samples:
            return None
        latencies = sorted(sample.latency_ms for sample in samples)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        return latencies[idx]

    def external_failure_count(self, integration: str) -> int:
        with self._lock:
            return sum(1 for sample in self._external if sample.integration == integration and not sample.success)

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
            self._external.clear()
            self._counters.clear()


_telemetry = Telemetry()


def get_telemetry() -> Telemetry:
    return _telemetry


def increment_counter(name: str, value: int = 1) -> None:
    _telemetry.increment_counter(name, value)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _telemetry.record_external_call(integration=integration, latency_ms=latency_ms, success=success)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _telemetry.record_request(path=path, status_code=status_code, latency_ms=latency_ms)
