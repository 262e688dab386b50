"""In-process counters, gauges and sample windows for the copy trader."""

from __future__ import annotations

import math
import re
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
_QUANTILES = (0.5, 0.9, 0.99)


def prometheus_name(name: str, namespace: str = "") -> str:
    """``auto_sell_executed.take_profit`` -> ``<ns>_auto_sell_executed_take_profit``."""

    cleaned = _INVALID_CHARS.sub("_", name) or "_"
    if namespace:
        cleaned = f"{namespace}_{cleaned}"
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    return cleaned


def _quantile(ordered: List[float], q: float) -> float:
    index = max(int(math.ceil(q * len(ordered))) - 1, 0)
    return ordered[min(index, len(ordered) - 1)]


@dataclass(slots=True)
class _SampleWindow:
    values: Deque[float]
    total: float = 0.0
    count: int = 0

    def add(self, value: float) -> None:
        self.values.append(value)
        self.total += value
        self.count += 1

    def summary(self) -> Dict[str, float]:
        ordered = sorted(self.values)
        stats: Dict[str, float] = {"count": float(self.count), "sum": self.total}
        if ordered:
            stats["avg"] = sum(ordered) / len(ordered)
            for q in _QUANTILES:
                stats[f"p{int(q * 100)}"] = _quantile(ordered, q)
        return stats


@dataclass
class MetricsRegistry:
    """Thread-safe: jobs record from worker threads as well as the event loop.

    Sample windows keep the most recent ``window`` observations for quantiles
    while ``count``/``sum`` cover the whole process lifetime.
    """

    namespace: str = "copy_trader"
    window: int = 1024
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _counters: Dict[str, float] = field(default_factory=dict, init=False)
    _gauges: Dict[str, float] = field(default_factory=dict, init=False)
    _samples: Dict[str, _SampleWindow] = field(default_factory=dict, init=False)

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            window = self._samples.get(name)
            if window is None:
                window = self._samples[name] = _SampleWindow(deque(maxlen=self.window))
            window.add(float(value))

    def samples(self, name: str) -> List[float]:
        with self._lock:
            window = self._samples.get(name)
            return list(window.values) if window else []

    @contextmanager
    def time(self, name: str) -> Iterator[None]:
        """Observe the wall-clock seconds spent inside the block, even on error."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "samples": {name: window.summary() for name, window in self._samples.items()},
            }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []
        for kind, values in (("counter", snap["counters"]), ("gauge", snap["gauges"])):
            for name, value in sorted(values.items()):
                metric = prometheus_name(name, self.namespace)
                lines.append(f"# TYPE {metric} {kind}")
                lines.append(f"{metric} {value}")
        for name, stats in sorted(snap["samples"].items()):
            metric = prometheus_name(name, self.namespace)
            lines.append(f"# TYPE {metric} summary")
            for q in _QUANTILES:
                key = f"p{int(q * 100)}"
                if key in stats:
                    lines.append(f'{metric}{{quantile="{q}"}} {stats[key]}')
            lines.append(f"{metric}_sum {stats['sum']}")
            lines.append(f"{metric}_count {int(stats['count'])}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry", "prometheus_name"]
