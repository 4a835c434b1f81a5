"""Metrics collaborator.

In-process instrumentation for fetches, retries and generation calls.
Public methods swallow their own failures so instrumentation never breaks a
fetch or a generation; the core only emits, it never reads events back to
make decisions.

Features:
 - Event recording in a bounded ring buffer (FIFO)
 - Percentiles (p50/p95/p99) per event kind
 - Counters with optional label tuples (cardinality capped)
 - Cache hit rate, retry rate, fallback rate, LLM usage and cost
 - Optional JSONL sink (api-calls.jsonl, generations.jsonl, errors.jsonl)
"""

from __future__ import annotations

import json
import os
import threading
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

MAX_EVENTS = 5000
MAX_LABEL_CARDINALITY = 50

KIND_FETCH = "fetch"
KIND_RETRY = "retry"
KIND_GENERATION = "generation"

_lock = threading.RLock()

# USD per 1K tokens; keys match model ids by prefix
COST_PER_1K_TOKENS: Dict[str, Dict[str, float]] = {
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.005, "output": 0.015},
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "claude-3-opus": {"input": 0.015, "output": 0.075},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
    "gemini-2.0-flash": {"input": 0.0001, "output": 0.0004},
    "gemini-2.0-pro": {"input": 0.00125, "output": 0.005},
    "gemini-pro": {"input": 0.00025, "output": 0.0005},
    "default": {"input": 0.001, "output": 0.002},
}


def estimate_cost(model: Optional[str], tokens_in: int, tokens_out: int) -> float:
    """Estimated USD cost, matching the longest known model prefix."""
    rates = COST_PER_1K_TOKENS["default"]
    if model:
        best = ""
        for prefix in COST_PER_1K_TOKENS:
            if model.startswith(prefix) and len(prefix) > len(best):
                best = prefix
        if best:
            rates = COST_PER_1K_TOKENS[best]
    cost = (tokens_in / 1000.0) * rates["input"] + (tokens_out / 1000.0) * rates["output"]
    return round(cost, 6)


@dataclass
class MetricEvent:
    ts: float
    kind: str
    endpoint: str
    status: Union[int, str, None]
    duration_ms: float
    cached: bool = False
    attempt: Optional[int] = None
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    cost: Optional[float] = None
    model: Optional[str] = None
    estimated: Optional[bool] = None
    fallback: bool = False
    phase: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.ts))
        return {k: v for k, v in data.items() if v is not None}


class MetricsFacade:
    def __init__(self, sink_dir: Optional[str] = None):
        self._events: Deque[MetricEvent] = deque(maxlen=MAX_EVENTS)
        self._errors: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)
        self._counters: Dict[str, Dict[Tuple[str, ...], int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._label_values: Dict[str, set] = defaultdict(set)
        self._sink_dir = sink_dir

    # ────────────────────────────────────────────────────────────
    #  Emission
    # ────────────────────────────────────────────────────────────

    def configure_sink(self, sink_dir: Optional[str]) -> None:
        """Enable (or disable with None) JSONL persistence of events."""
        with _lock:
            self._sink_dir = sink_dir
        if sink_dir:
            os.makedirs(sink_dir, exist_ok=True)

    def record_event(
        self,
        kind: str,
        endpoint: str,
        *,
        status: Union[int, str, None],
        duration_ms: float,
        cached: bool = False,
        attempt: Optional[int] = None,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
        cost: Optional[float] = None,
        model: Optional[str] = None,
        estimated: Optional[bool] = None,
        fallback: bool = False,
        phase: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[MetricEvent]:
        try:
            event = MetricEvent(
                ts=time.time(),
                kind=kind,
                endpoint=endpoint,
                status=status,
                duration_ms=max(0.0, float(duration_ms)),
                cached=cached,
                attempt=attempt,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cost=cost,
                model=model,
                estimated=estimated,
                fallback=fallback,
                phase=phase,
                error=error,
            )
            with _lock:
                self._events.append(event)
            self._write_jsonl(
                "generations.jsonl" if kind == KIND_GENERATION else "api-calls.jsonl",
                event.to_dict(),
            )
            return event
        except Exception:
            logger.debug("Metric emission failed", kind=kind, exc_info=True)
            return None

    def record_generation(
        self,
        backend: str,
        model: str,
        *,
        phase: str,
        duration_ms: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        estimated: bool = False,
        status: str = "ok",
        fallback: bool = False,
        error: Optional[str] = None,
    ) -> Optional[MetricEvent]:
        cost = estimate_cost(model, tokens_in, tokens_out) if status == "ok" else None
        return self.record_event(
            KIND_GENERATION,
            backend,
            status=status,
            duration_ms=duration_ms,
            tokens_in=tokens_in if status == "ok" else None,
            tokens_out=tokens_out if status == "ok" else None,
            cost=cost,
            model=model,
            estimated=estimated if status == "ok" else None,
            fallback=fallback,
            phase=phase,
            error=error,
        )

    def record_error(self, payload: Dict[str, Any]) -> None:
        try:
            entry = dict(payload)
            entry.setdefault("timestamp", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
            with _lock:
                self._errors.append(entry)
            self.increment("errors", str(entry.get("category", "UNKNOWN_ERROR")))
            self._write_jsonl("errors.jsonl", entry)
        except Exception:
            logger.debug("Error metric emission failed", exc_info=True)

    def increment(
        self,
        name: str,
        *label_values: str,
        amount: int = 1,
    ) -> None:
        try:
            with _lock:
                if label_values:
                    for v in label_values:
                        if len(self._label_values[name]) < MAX_LABEL_CARDINALITY:
                            self._label_values[name].add(v)
                        elif v not in self._label_values[name]:
                            return
                key = tuple(label_values) if label_values else tuple()
                self._counters[name][key] += amount
        except Exception:
            logger.debug("Counter increment failed", counter=name, exc_info=True)

    def _write_jsonl(self, filename: str, payload: Dict[str, Any]) -> None:
        sink = self._sink_dir
        if not sink:
            return
        try:
            line = json.dumps(payload, default=str)
            with _lock:
                with open(os.path.join(sink, filename), "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except OSError as e:
            logger.warning("Metrics sink write failed", file=filename, error=str(e))

    # ────────────────────────────────────────────────────────────
    #  Read side (dashboards, CLI `stats`, tests)
    # ────────────────────────────────────────────────────────────

    def events(self, kind: Optional[str] = None) -> List[MetricEvent]:
        with _lock:
            return [e for e in self._events if kind is None or e.kind == kind]

    def errors(self) -> List[Dict[str, Any]]:
        with _lock:
            return list(self._errors)

    def _percentiles(self, values: List[float]) -> Dict[str, float]:
        if not values:
            return {"p50": 0.0, "p95": 0.0, "p99": 0.0}
        values_sorted = sorted(values)

        def pct(p: float) -> float:
            k = (len(values_sorted) - 1) * (p / 100.0)
            f = int(k)
            c = min(f + 1, len(values_sorted) - 1)
            if f == c:
                return float(values_sorted[f])
            return float(values_sorted[f] + (values_sorted[c] - values_sorted[f]) * (k - f))

        return {
            "p50": round(pct(50), 2),
            "p95": round(pct(95), 2),
            "p99": round(pct(99), 2),
        }

    def get_latency_distributions(self) -> Dict[str, Dict[str, float]]:
        by_kind: Dict[str, List[float]] = defaultdict(list)
        with _lock:
            for ev in self._events:
                if not ev.cached:
                    by_kind[ev.kind].append(ev.duration_ms)
        return {kind: self._percentiles(vals) for kind, vals in by_kind.items()}

    def get_cache_hit_rate(self) -> float:
        hits = total = 0
        with _lock:
            for ev in self._events:
                if ev.kind == KIND_FETCH:
                    total += 1
                    if ev.cached:
                        hits += 1
        return round(hits / total, 4) if total else 0.0

    def get_retry_rate(self) -> float:
        """Retried attempts per network request (cached fetches excluded)."""
        retries = requests = 0
        with _lock:
            for ev in self._events:
                if ev.kind == KIND_RETRY:
                    retries += 1
                elif ev.kind == KIND_FETCH and not ev.cached:
                    requests += 1
        return round(retries / requests, 4) if requests else 0.0

    def get_fallback_rates(self) -> Dict[str, float]:
        counts: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        with _lock:
            for ev in self._events:
                if ev.kind != KIND_GENERATION:
                    continue
                key = ev.phase or "unknown"
                counts[key][1] += 1
                if ev.fallback:
                    counts[key][0] += 1
        return {
            phase: round((fb[0] / fb[1]) if fb[1] else 0.0, 4)
            for phase, fb in counts.items()
        }

    def get_llm_usage(self) -> Dict[str, Any]:
        usage: Dict[str, Dict[str, Any]] = defaultdict(
            lambda: {"calls": 0, "tokens_in": 0, "tokens_out": 0, "cost": 0.0, "estimated_calls": 0}
        )
        with _lock:
            for ev in self._events:
                if ev.kind != KIND_GENERATION or not ev.model or ev.status != "ok":
                    continue
                u = usage[ev.model]
                u["calls"] += 1
                u["tokens_in"] += ev.tokens_in or 0
                u["tokens_out"] += ev.tokens_out or 0
                u["cost"] = round(u["cost"] + (ev.cost or 0.0), 6)
                if ev.estimated:
                    u["estimated_calls"] += 1
        return dict(usage)

    def get_counters(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        with _lock:
            for name, bucket in self._counters.items():
                out[name] = {"|".join(lbl): val for lbl, val in bucket.items()}
        return out

    def snapshot(self) -> Dict[str, Any]:
        usage = self.get_llm_usage()
        return {
            "latency": self.get_latency_distributions(),
            "cache_hit_rate": self.get_cache_hit_rate(),
            "retry_rate": self.get_retry_rate(),
            "fallback_rates": self.get_fallback_rates(),
            "llm_usage": usage,
            "total_cost": round(sum(u["cost"] for u in usage.values()), 6),
            "counters": self.get_counters(),
            "errors": len(self.errors()),
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }

    def load_jsonl(self, sink_dir: str) -> int:
        """Replay persisted events and errors from ``sink_dir``; returns lines loaded."""
        loaded = 0
        fields = set(MetricEvent.__dataclass_fields__)
        for filename in ("api-calls.jsonl", "generations.jsonl", "errors.jsonl"):
            path = os.path.join(sink_dir, filename)
            if not os.path.exists(path):
                continue
            with open(path, "r", encoding="utf-8") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                        if filename == "errors.jsonl":
                            with _lock:
                                self._errors.append(data)
                        else:
                            event = MetricEvent(**{k: v for k, v in data.items() if k in fields})
                            with _lock:
                                self._events.append(event)
                    except (ValueError, TypeError) as e:
                        logger.debug("Skipping bad metrics line", file=filename, error=str(e))
                        continue
                    loaded += 1
        return loaded

    def reset(self) -> None:
        with _lock:
            self._events.clear()
            self._errors.clear()
            self._counters.clear()
            self._label_values.clear()


metrics = MetricsFacade()
