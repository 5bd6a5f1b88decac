from __future__ import annotations

import math
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


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for SLO calculations.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counter_value(name: str) -> int:
    return _counters.get(name, 0)


def external_call_stats(integration: str, window_s: int) -> dict[str, float | int | None]:
    # Summarize one integration's calls in the window for the health endpoint.
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.integration == integration and s.ts >= cutoff]
    if not samples:
        return {"calls": 0, "error_rate": None, "p95_ms": None}
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    failures = sum(1 for sample in samples if not sample.success)
    return {"calls": len(samples), "error_rate": failures / len(samples), "p95_ms": latencies[idx]}


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
