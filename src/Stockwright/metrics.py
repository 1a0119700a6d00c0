"""Process-local counters and latency histograms.

Metric names reuse the dotted log-event vocabulary (``gateway.call.timeout``,
``pipeline.turn.executed``) so a counter can be matched to its log line.
Nothing here is exported over the network; ``stockwright run --debug`` dumps a
snapshot when the session ends.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

LATENCY_BOUNDS_MS: tuple[int, ...] = (5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000, 15000)


@dataclass
class _Histogram:
    bounds: tuple[int, ...]
    buckets: Counter[str] = field(default_factory=Counter)
    total: int = 0
    samples: int = 0

    def record(self, value: int) -> None:
        label = next((f"le_{b}" for b in self.bounds if value <= b), f"gt_{self.bounds[-1]}")
        self.buckets[label] += 1
        self.total += value
        self.samples += 1

    def flatten(self, name: str) -> dict[str, int]:
        flat = {f"histo.{name}.{label}": n for label, n in self.buckets.items()}
        flat[f"histo.{name}.sum"] = self.total
        flat[f"histo.{name}.count"] = self.samples
        return flat


_counts: Counter[str] = Counter()
_latencies: dict[str, _Histogram] = {}


def inc_counter(name: str, value: int = 1) -> None:
    _counts[name] += int(value)


def get_counter(name: str) -> int:
    return _counts[name]


def observe_histogram(name: str, value: int, *, buckets: list[int] | None = None) -> None:
    """Add one sample; ``buckets`` only applies the first time a name is seen."""
    hist = _latencies.get(name)
    if hist is None:
        hist = _latencies[name] = _Histogram(tuple(buckets) if buckets else LATENCY_BOUNDS_MS)
    hist.record(int(value))


def get_histogram(name: str) -> dict[str, int]:
    hist = _latencies.get(name)
    return dict(hist.buckets) if hist else {}


def get_counters() -> dict[str, int]:
    """Snapshot of every counter, with histograms flattened under ``histo.``."""
    snapshot = {k: v for k, v in _counts.items() if v}
    for name, hist in _latencies.items():
        snapshot.update(hist.flatten(name))
    return snapshot


def reset_counters() -> None:
    _counts.clear()
    _latencies.clear()
