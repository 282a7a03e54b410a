from __future__ import annotations

from edugov.services.telemetry import (
    counters_snapshot,
    flag_review_stats,
    p95_latency,
    record_flag_review,
    record_request,
)


def test_flag_review_slo_tracking() -> None:
    record_flag_review(review_seconds=60, slo_seconds=7200)
    record_flag_review(review_seconds=9000, slo_seconds=7200)
    stats = flag_review_stats(3600)
    assert stats["count"] == 2
    assert stats["within_slo_ratio"] == 0.5
    counters = counters_snapshot()
    assert counters["flag_reviews_total"] == 2
    assert counters["flag_reviews_slo_breached_total"] == 1


def test_request_latency_percentile_by_prefix() -> None:
    for latency in range(1, 21):
        record_request(path="/v1/admin/content", status_code=200, latency_ms=float(latency))
    record_request(path="/v1/health", status_code=200, latency_ms=500.0)
    assert p95_latency(60, path_prefix="/v1/admin") == 19.0
    assert p95_latency(60, path_prefix="/v1/missing") is None
