"""In-process metrics rendered in the Prometheus text exposition format.

Metrics may declare label names; every update must then supply exactly those
labels, and each distinct label set is rendered as its own sample.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _label_text(key: LabelKey, extra: Optional[Tuple[str, str]] = None) -> str:
    pairs = list(key) + ([extra] if extra else [])
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(sorted(labelnames))

    def _key(self, labels: Dict[str, object]) -> LabelKey:
        if tuple(sorted(labels)) != self.labelnames:
            raise ValueError(f"{self.name} expects labels {self.labelnames}, got {tuple(sorted(labels))}")
        return tuple((name, str(labels[name])) for name in self.labelnames)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def render(self) -> str:
        raise NotImplementedError


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "", labelnames: Iterable[str] = ()) -> None:
        super().__init__(name, description, labelnames)
        self._values: Dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: object) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: object) -> float:
        return self._values.get(self._key(labels), 0.0)

    def render(self) -> str:
        samples = self._values or ({} if self.labelnames else {(): 0.0})
        lines = self._header() + [f"{self.name}{_label_text(key)} {value}" for key, value in samples.items()]
        return "\n".join(lines) + "\n"


class Gauge(_Metric):
    """Single-series gauge; ``supplier`` reads the value lazily at render time."""

    kind = "gauge"

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        super().__init__(name, description)
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def value(self) -> float:
        return float(self._supplier()) if self._supplier else self._value

    def render(self) -> str:
        return "\n".join(self._header() + [f"{self.name} {self.value()}"]) + "\n"


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, buckets: Iterable[float], description: str = "") -> None:
        super().__init__(name, description)
        self._bounds = sorted(buckets)
        self._bucket_counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._bounds):
            if value <= bound:
                self._bucket_counts[index] += 1

    @property
    def count(self) -> int:
        return self._count

    def render(self) -> str:
        lines = self._header()
        for bound, hits in zip(self._bounds, self._bucket_counts):
            lines.append(f"{self.name}_bucket{_label_text((), ('le', str(bound)))} {hits}")
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}

    def register(self, metric):
        # module reloads re-register by name; the first instance keeps its samples
        return self._metrics.setdefault(metric.name, metric)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()
