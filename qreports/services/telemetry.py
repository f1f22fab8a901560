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
    route_class: str
    status_code: int
    latency_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, route_class: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for ops visibility.
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            route_class=route_class,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )
    _counters["requests_total"] += 1
    _counters[f"responses_{status_code // 100}xx_total"] += 1


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def p95_latency(window_s: int, *, route_class: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = sorted(
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (route_class is None or sample.route_class == route_class)
    )
    if not latencies:
        return None
    index = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[index]


def reset_telemetry() -> None:
    # Tests reset counters to assert on deltas.
    _request_samples.clear()
    _counters.clear()
    _gauges.clear()
