"""
In-process metrics for extraction runs

Counters, gauges and latency histograms keyed by name plus sorted labels, with
JSON and Prometheus text export. ``OntologyMetrics`` names the series the
engine records; everything else goes through the module-level helpers.
"""
from __future__ import annotations

import json
import threading
import time
from bisect import bisect_left
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Tuple

Labels = Optional[Dict[str, str]]


class Histogram:
    """Cumulative-bucket latency histogram"""

    DEFAULT_BUCKETS = (0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 60.0)

    def __init__(self, buckets: Optional[List[float]] = None):
        self.buckets = sorted(buckets or self.DEFAULT_BUCKETS)
        # Last slot is +Inf
        self.counts = [0] * (len(self.buckets) + 1)
        self.total = 0.0
        self.count = 0
        self.min: Optional[float] = None
        self.max: Optional[float] = None

    def observe(self, value: float) -> None:
        self.counts[bisect_left(self.buckets, value)] += 1
        self.total += value
        self.count += 1
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def quantile(self, q: float) -> float:
        """Upper bound of the bucket holding the q-th observation"""
        if self.count == 0:
            return 0.0
        rank = q * self.count
        seen = 0
        for bound, n in zip(self.buckets, self.counts):
            seen += n
            if seen >= rank:
                return bound
        return self.max or 0.0

    def cumulative(self) -> List[Tuple[str, int]]:
        running = 0
        out = []
        for bound, n in zip(self.buckets + [float("inf")], self.counts):
            running += n
            out.append(("+Inf" if bound == float("inf") else repr(bound), running))
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "sum": round(self.total, 6),
            "min": self.min,
            "max": self.max,
            "p50": self.quantile(0.5),
            "p95": self.quantile(0.95),
        }


def series_key(name: str, labels: Labels = None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f'{k}="{v}"' for k, v in sorted(labels.items())) + "}"


class MetricsCollector:
    """
    Process-wide, thread-safe metric store

    Every ``MetricsCollector()`` call returns the same instance; ``configure``
    applies a MetricsConfig.
    """

    _instance: Optional["MetricsCollector"] = None
    _instance_lock = threading.Lock()

    def __new__(cls) -> "MetricsCollector":
        with cls._instance_lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._setup()
                cls._instance = instance
        return cls._instance

    def _setup(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Histogram] = {}
        self.enabled = True
        self.latency_histograms = True
        self.token_counts = True

    def configure(self, config: Any) -> None:
        """Apply a MetricsConfig"""
        self.enabled = config.enabled
        self.latency_histograms = config.include_latency_histograms
        self.token_counts = config.include_token_counts

    def counter(self, name: str, value: float = 1.0, labels: Labels = None) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._counters[series_key(name, labels)] += value

    def gauge(self, name: str, value: float, labels: Labels = None) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._gauges[series_key(name, labels)] = value

    def histogram(self, name: str, value: float, labels: Labels = None) -> None:
        if not self.enabled or not self.latency_histograms:
            return
        key = series_key(name, labels)
        with self._lock:
            hist = self._histograms.get(key)
            if hist is None:
                hist = self._histograms[key] = Histogram()
            hist.observe(value)

    def timer(self, name: str, seconds: float, labels: Labels = None) -> None:
        self.histogram(f"{name}_seconds", seconds, labels)

    @contextmanager
    def time_operation(self, name: str, labels: Labels = None) -> Generator[None, None, None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.timer(name, time.perf_counter() - started, labels)

    def get_counter(self, name: str, labels: Labels = None) -> float:
        with self._lock:
            return self._counters.get(series_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: Labels = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(series_key(name, labels))

    def get_histogram(self, name: str, labels: Labels = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            hist = self._histograms.get(series_key(name, labels))
            return hist.to_dict() if hist else None

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {k: h.to_dict() for k, h in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

    def export_json(self) -> str:
        return json.dumps(self.get_metrics(), indent=2, default=str)

    def export_prometheus(self) -> str:
        """Prometheus text exposition format"""
        lines: List[str] = []
        typed = set()

        def declare(key: str, kind: str) -> str:
            base = key.split("{", 1)[0]
            if base not in typed:
                typed.add(base)
                lines.append(f"# TYPE {base} {kind}")
            return base

        with self._lock:
            for key, value in sorted(self._counters.items()):
                declare(key, "counter")
                lines.append(f"{key} {value}")
            for key, value in sorted(self._gauges.items()):
                declare(key, "gauge")
                lines.append(f"{key} {value}")
            for key, hist in sorted(self._histograms.items()):
                base = declare(key, "histogram")
                labels = key[len(base) + 1:-1] if "{" in key else ""
                for bound, count in hist.cumulative():
                    le = f'le="{bound}"'
                    lines.append(f"{base}_bucket{{{labels + ',' if labels else ''}{le}}} {count}")
                suffix = f"{{{labels}}}" if labels else ""
                lines.append(f"{base}_sum{suffix} {hist.total}")
                lines.append(f"{base}_count{suffix} {hist.count}")
        return "\n".join(lines)


def get_metrics_collector() -> MetricsCollector:
    return MetricsCollector()


def counter(name: str, value: float = 1.0, labels: Labels = None) -> None:
    get_metrics_collector().counter(name, value, labels)


def gauge(name: str, value: float, labels: Labels = None) -> None:
    get_metrics_collector().gauge(name, value, labels)


def histogram(name: str, value: float, labels: Labels = None) -> None:
    get_metrics_collector().histogram(name, value, labels)


def timer(name: str, seconds: float, labels: Labels = None) -> None:
    get_metrics_collector().timer(name, seconds, labels)


@contextmanager
def time_operation(name: str, labels: Labels = None) -> Generator[None, None, None]:
    with get_metrics_collector().time_operation(name, labels):
        yield


class OntologyMetrics:
    """Series recorded by the extraction engine"""

    @staticmethod
    def record_llm_call(duration: float, model_id: str, input_tokens: int, output_tokens: int,
                        success: bool = True) -> None:
        collector = get_metrics_collector()
        outcome = "success" if success else "error"
        collector.timer("llm_call", duration, {"model": model_id})
        collector.counter("llm_calls_total", 1.0, {"model": model_id, "outcome": outcome})
        if collector.token_counts:
            collector.counter("llm_tokens_total", float(input_tokens), {"model": model_id, "direction": "input"})
            collector.counter("llm_tokens_total", float(output_tokens), {"model": model_id, "direction": "output"})

    @staticmethod
    def record_node(node_name: str, duration: float, status: str) -> None:
        timer("dag_node", duration, {"node": node_name})
        counter("dag_nodes_total", 1.0, {"node": node_name, "status": status})

    @staticmethod
    def record_node_retry(node_name: str) -> None:
        counter("dag_node_retries_total", 1.0, {"node": node_name})

    @staticmethod
    def set_active_dags(count: int) -> None:
        gauge("dag_active", float(count))

    @staticmethod
    def record_classification(path: str) -> None:
        counter("columns_classified_total", 1.0, {"path": path})

    @staticmethod
    def record_phase(phase: str, duration: float, items: int) -> None:
        timer("feature_phase", duration, {"phase": phase})
        counter("feature_phase_items_total", float(items), {"phase": phase})

    @staticmethod
    def record_candidate(detection_method: str, status: str) -> None:
        counter("relationship_candidates_total", 1.0, {"method": detection_method, "status": status})

    @staticmethod
    def record_rejection(reason: str) -> None:
        counter("relationship_rejections_total", 1.0, {"reason": reason})

    @staticmethod
    def record_profiling_query(duration: float, db_type: str, query_type: str) -> None:
        timer("profiling_query", duration, {"db": db_type, "query": query_type})

    @staticmethod
    def record_error(error_type: str, category: str) -> None:
        counter("errors_total", 1.0, {"type": error_type, "category": category})
