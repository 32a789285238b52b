"""
In-process metrics rendered in Prometheus text format.

Counters for decisions, fallbacks, store errors and prompts; one histogram
for access-check latency. Values live in memory and reset on restart.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\"", "\\\"")


def _render_labels(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in zip(names, values)) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _header(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        super().__init__(name, help_text, label_names)
        self._values: Dict[LabelValues, float] = {}

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())

    def export(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for key in sorted(self._values):
                lines.append(f"{self.name}{_render_labels(self.label_names, key)} {self._values[key]}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, help_text: str = "", buckets: Sequence[float] = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0)):
        super().__init__(name, help_text)
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self._counts[i] += 1

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def export(self) -> List[str]:
        lines = self._header()
        with self._lock:
            for bound, count in zip(self.buckets, self._counts):
                lines.append(f'{self.name}_bucket{{le="{bound}"}} {count}')
            lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
            lines.append(f"{self.name}_sum {self._sum}")
            lines.append(f"{self.name}_count {self._count}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._counts = [0] * len(self.buckets)
            self._sum = 0.0
            self._count = 0


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            return self._metrics.setdefault(metric.name, metric)

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter(name, help_text, label_names))

    def histogram(self, name: str, help_text: str = "", buckets: Sequence[float] = (0.005, 0.01, 0.05, 0.1, 0.5, 1.0)) -> Histogram:
        return self._register(Histogram(name, help_text, buckets))

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by route template and status", ["method", "route", "status"]
)
access_decisions_total = METRICS.counter(
    "access_decisions_total", "Access decisions by outcome", ["allowed", "reason"]
)
access_fallback_total = METRICS.counter(
    "access_fallback_total", "Fail-open decisions by the stage that failed", ["stage"]
)
access_check_seconds = METRICS.histogram("access_check_seconds", "Access check latency")
usage_store_errors_total = METRICS.counter(
    "usage_store_errors_total", "Usage counter store failures by operation", ["operation"]
)
prompts_total = METRICS.counter("prompts_total", "Upgrade prompt outcomes", ["trigger", "action"])


_OPAQUE_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse numeric and UUID-like segments to :id for unmatched routes."""
    segments = [":id" if _OPAQUE_SEGMENT.match(segment) else segment for segment in path.split("/") if segment]
    return "/" + "/".join(segments)
