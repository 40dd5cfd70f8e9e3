"""In-process metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

from bisect import bisect_left
from typing import Callable, Dict, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: dict[str, object]) -> LabelKey:
    return tuple(sorted((name, str(value)) for name, value in labels.items()))


def _format_labels(key: LabelKey) -> str:
    pairs = [f'{name}="{value}"' for name, value in key]
    return "{" + ",".join(pairs) + "}" if pairs else ""


def _header(metric, kind: str) -> list[str]:
    return [f"# HELP {metric.name} {metric.description}", f"# TYPE {metric.name} {kind}"]


def _join(lines: list[str]) -> str:
    return "\n".join(lines) + "\n"


class Counter:
    """Monotonic counter; each distinct label set is its own series."""

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._series: Dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: object) -> None:
        key = _label_key(labels)
        self._series[key] = self._series.get(key, 0.0) + amount

    def value(self, **labels: object) -> float:
        return self._series.get(_label_key(labels), 0.0)

    def total(self) -> float:
        return sum(self._series.values())

    def render(self) -> str:
        lines = _header(self, "counter")
        if not self._series:
            lines.append(f"{self.name} 0.0")
        for key in sorted(self._series):
            lines.append(f"{self.name}{_format_labels(key)} {self._series[key]}")
        return _join(lines)


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def render(self) -> str:
        value = self._supplier() if self._supplier else self._value
        return _join(_header(self, "gauge") + [f"{self.name} {value}"])


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._bounds = sorted(buckets)
        # One slot per bound plus the implicit +Inf slot; counts are not cumulative.
        self._slots = [0] * (len(self._bounds) + 1)
        self._sum = 0.0

    @property
    def count(self) -> int:
        return sum(self._slots)

    def observe(self, value: float) -> None:
        self._slots[bisect_left(self._bounds, value)] += 1
        self._sum += value

    def render(self) -> str:
        lines = _header(self, "histogram")
        running = 0
        for bound, slot in zip(self._bounds + [float("inf")], self._slots):
            running += slot
            label = "+Inf" if bound == float("inf") else bound
            lines.append(f'{self.name}_bucket{{le="{label}"}} {running}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {running}")
        return _join(lines)


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        self._metrics[getattr(metric, "name")] = metric
        return metric

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
