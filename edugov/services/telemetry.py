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
class ReviewSample:
    ts: float
    review_seconds: float
    within_slo: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_review_samples: Deque[ReviewSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for SLO calculations.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_flag_review(*, review_seconds: float, slo_seconds: float) -> None:
    # Flag report-to-resolution time is the moderation SLO input.
    within = review_seconds <= slo_seconds
    _review_samples.append(ReviewSample(ts=time.time(), review_seconds=review_seconds, within_slo=within))
    increment_counter("flag_reviews_total")
    if not within:
        increment_counter("flag_reviews_slo_breached_total")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _percentile(values: list[float], q: float) -> float:
    values = sorted(values)
    idx = max(0, math.ceil(q * len(values)) - 1)
    return values[idx]


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if path_prefix:
        samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
    if not samples:
        return None
    return _percentile([sample.latency_ms for sample in samples], 0.95)


def flag_review_stats(window_s: int) -> dict[str, float | int | None]:
    # Summarize review latency and SLO attainment for the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _review_samples if sample.ts >= cutoff]
    if not samples:
        return {"count": 0, "p50_s": None, "p95_s": None, "within_slo_ratio": None}
    durations = [sample.review_seconds for sample in samples]
    within = sum(1 for sample in samples if sample.within_slo)
    return {
        "count": len(samples),
        "p50_s": _percentile(durations, 0.5),
        "p95_s": _percentile(durations, 0.95),
        "within_slo_ratio": within / len(samples),
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Test hook.
    _request_samples.clear()
    _review_samples.clear()
    _counters.clear()
