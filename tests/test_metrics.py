import json
import os

import pytest

from vulnintel.services.metrics import (
    KIND_FETCH,
    KIND_GENERATION,
    KIND_RETRY,
    MAX_LABEL_CARDINALITY,
    MetricsFacade,
    estimate_cost,
)


def test_estimate_cost_uses_longest_prefix():
    # gpt-4o-mini must not be priced as gpt-4o or gpt-4
    assert estimate_cost("gpt-4o-mini-2024-07-18", 1000, 1000) == pytest.approx(0.00075)
    assert estimate_cost("gpt-4o", 1000, 0) == pytest.approx(0.005)
    assert estimate_cost("some-local-model", 1000, 1000) == pytest.approx(0.003)


def test_snapshot_aggregates_rates_and_usage():
    m = MetricsFacade()
    m.record_event(KIND_RETRY, "nvd", status=503, duration_ms=10, attempt=1)
    m.record_event(KIND_FETCH, "nvd", status=200, duration_ms=30, attempt=2)
    m.record_event(KIND_FETCH, "nvd", status=200, duration_ms=0, cached=True)
    m.record_generation("openai", "gpt-4-turbo", phase="synthesize", duration_ms=900, tokens_in=1000, tokens_out=500)
    m.record_generation("openai", "gpt-3.5-turbo", phase="extract", duration_ms=0, status="fallback", fallback=True)

    snap = m.snapshot()

    assert snap["cache_hit_rate"] == 0.5
    assert snap["retry_rate"] == 1.0
    assert snap["fallback_rates"] == {"synthesize": 0.0, "extract": 1.0}
    assert snap["llm_usage"]["gpt-4-turbo"]["tokens_out"] == 500
    assert "gpt-3.5-turbo" not in snap["llm_usage"]
    assert snap["total_cost"] == pytest.approx(0.025)
    assert snap["latency"][KIND_FETCH]["p50"] == 30.0


def test_percentiles_interpolate():
    m = MetricsFacade()
    for ms in (10, 20, 30, 40):
        m.record_event(KIND_FETCH, "x", status=200, duration_ms=ms)
    dist = m.get_latency_distributions()[KIND_FETCH]
    assert dist["p50"] == 25.0
    assert dist["p99"] == pytest.approx(39.7)


def test_counter_label_cardinality_is_capped():
    m = MetricsFacade()
    for i in range(MAX_LABEL_CARDINALITY + 5):
        m.increment("source_failures", f"src{i}")
    assert len(m.get_counters()["source_failures"]) == MAX_LABEL_CARDINALITY


def test_jsonl_sink_round_trip(tmp_path):
    sink = str(tmp_path / "metrics")
    writer = MetricsFacade()
    writer.configure_sink(sink)
    writer.record_event(KIND_FETCH, "api.first.org", status=200, duration_ms=12.5, attempt=1)
    writer.record_generation("claude", "claude-3-haiku-20240307", phase="extract", duration_ms=50, tokens_in=10, tokens_out=5)
    writer.record_error({"component": "output", "category": "FILE_IO_ERROR", "message": "disk full"})

    with open(os.path.join(sink, "api-calls.jsonl"), encoding="utf-8") as fh:
        line = json.loads(fh.readline())
    assert line["endpoint"] == "api.first.org" and "timestamp" in line

    with open(os.path.join(sink, "api-calls.jsonl"), "a", encoding="utf-8") as fh:
        fh.write("not json\n")

    reader = MetricsFacade()
    assert reader.load_jsonl(sink) == 3
    assert [e.kind for e in reader.events()] == [KIND_FETCH, KIND_GENERATION]
    assert reader.errors()[0]["message"] == "disk full"
    assert reader.get_llm_usage()["claude-3-haiku-20240307"]["calls"] == 1


def test_emission_never_raises_on_bad_input():
    m = MetricsFacade()
    assert m.record_event(KIND_FETCH, "x", status=200, duration_ms="not a number") is None
    assert m.events() == []
