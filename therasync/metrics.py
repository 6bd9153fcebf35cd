"""
therasync — Cache Metrics.

Simple in-memory registry for cache hits, misses, evictions and mutation
outcomes. Renders in Prometheus text format for scraping or debugging.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field

_HISTOGRAM_MAX_OBSERVATIONS = 1000
PREFIX = "therasync_"

# Counters every registry reports, even at zero.
STANDARD_COUNTERS: tuple[str, ...] = (
    "cache_hits",
    "cache_misses",
    "fetch_errors",
    "evictions",
    "mutations_committed",
    "mutations_rolled_back",
    "prefetch_failures",
)


@dataclass
class MetricsRegistry:
    """In-memory counters, gauges and capped histograms (no external deps)."""

    _counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _histograms: dict[str, deque[float]] = field(
        default_factory=lambda: defaultdict(lambda: deque(maxlen=_HISTOGRAM_MAX_OBSERVATIONS))
    )
    _hist_count: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _hist_sum: dict[str, float] = field(default_factory=lambda: defaultdict(float))
    _gauges: dict[str, float] = field(default_factory=lambda: defaultdict(float))

    def inc(self, name: str, labels: dict[str, str] | None = None, value: int = 1) -> None:
        """Increment a counter."""
        self._counters[self._key(name, labels)] += value

    def observe(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        """Record a histogram observation (capped circular buffer)."""
        key = self._key(name, labels)
        self._histograms[key].append(value)
        self._hist_count[key] += 1
        self._hist_sum[key] += value

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        self._gauges[self._key(name, labels)] = value

    def get(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self._counters.get(self._key(name, labels), 0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        return self._gauges.get(self._key(name, labels), 0.0)

    def count(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Number of observations recorded for a histogram."""
        return self._hist_count.get(self._key(name, labels), 0)

    def hit_rate(self) -> float:
        hits = self.get("cache_hits")
        total = hits + self.get("cache_misses")
        return hits / total if total else 0.0

    def _key(self, name: str, labels: dict[str, str] | None = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    # ─── Prometheus rendering ─────────────────────────────────────

    def to_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []
        counters = dict(self._counters)
        for name in STANDARD_COUNTERS:
            counters.setdefault(name, 0)

        seen: set[str] = set()
        for key, value in sorted(counters.items()):
            base_name = PREFIX + key.split("{")[0]
            if base_name not in seen:
                lines.append(f"# TYPE {base_name} counter")
                seen.add(base_name)
            lines.append(f"{PREFIX}{key} {value}")

        for key, value in sorted(self._gauges.items()):
            base_name = PREFIX + key.split("{")[0]
            if base_name not in seen:
                lines.append(f"# TYPE {base_name} gauge")
                seen.add(base_name)
            lines.append(f"{PREFIX}{key} {value:.2f}")

        for key in sorted(self._histograms):
            base_name = PREFIX + key.split("{")[0]
            if base_name not in seen:
                lines.append(f"# TYPE {base_name} summary")
                seen.add(base_name)
            count = self._hist_count.get(key, 0)
            total = self._hist_sum.get(key, 0.0)
            if count > 0:
                lines.append(f"{PREFIX}{key}_count {count}")
                lines.append(f"{PREFIX}{key}_sum {total:.4f}")

        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        self._histograms.clear()
        self._hist_count.clear()
        self._hist_sum.clear()
        self._gauges.clear()
