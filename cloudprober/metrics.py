"""Metric values and the EventMetrics container passed between probes,
servers and surfacers."""

from __future__ import annotations

import abc
import bisect
import enum
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Union


class Kind(enum.Enum):
    """How the metrics of an EventMetrics evolve over time."""

    CUMULATIVE = "CUMULATIVE"
    GAUGE = "GAUGE"


def _format_float(value: float) -> str:
    """Shortest decimal form of a float, without a trailing '.0'."""
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == int(value) and abs(value) < 1e16:
        return str(int(value))
    return repr(value)


@dataclass(frozen=True)
class Int:
    """An integer metric value."""

    value: int = 0

    def __int__(self) -> int:
        return self.value

    def __float__(self) -> float:
        return float(self.value)

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class Float:
    """A floating point metric value."""

    value: float = 0.0

    def __int__(self) -> int:
        return int(self.value)

    def __float__(self) -> float:
        return self.value

    def __str__(self) -> str:
        return f"{self.value:.3f}"


@dataclass(frozen=True)
class String:
    """A string metric value; its text form is the quoted string."""

    value: str = ""

    def __str__(self) -> str:
        return f'"{self.value}"'


NumValue = Union[Int, Float]


class Map:
    """A set of numeric values keyed by string, e.g. response codes."""

    def __init__(self, map_name: str, default_value: NumValue) -> None:
        self.map_name = map_name
        self._default = default_value
        self._values: dict[str, NumValue] = {}

    def inc_key(self, key: str) -> None:
        """Increment the value of key by one."""
        self.inc_key_by(key, type(self._default)(1))

    def inc_key_by(self, key: str, delta: NumValue) -> None:
        """Increment the value of key by delta."""
        current = self._values.get(key, self._default)
        self._values[key] = type(self._default)(current.value + delta.value)

    def keys(self) -> list[str]:
        """Map keys in sorted order."""
        return sorted(self._values)

    def get_key(self, key: str) -> NumValue | None:
        return self._values.get(key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Map):
            return NotImplemented
        return self.map_name == other.map_name and self._values == other._values

    def __repr__(self) -> str:
        return f"Map({self.map_name!r}, {self._values!r})"

    def __str__(self) -> str:
        parts = "".join(f",{k}:{self._values[k]}" for k in self.keys())
        return f"map:{self.map_name}{parts}"


class Distribution:
    """A histogram of samples over explicit bucket lower bounds."""

    def __init__(self, lower_bounds: list[float]) -> None:
        self.lower_bounds: list[float] = [-math.inf] + sorted(float(b) for b in lower_bounds)
        self.bucket_counts: list[int] = [0] * len(self.lower_bounds)
        self.sum = 0.0
        self.count = 0

    def add_sample(self, sample: float) -> None:
        index = bisect.bisect_right(self.lower_bounds, sample) - 1
        self.bucket_counts[index] += 1
        self.sum += sample
        self.count += 1

    def stackdriver_typed_value(self) -> dict:
        """The distribution as a monitoring API TypedValue structure."""
        mean = self.sum / self.count if self.count else 0.0
        return {
            "distributionValue": {
                "bucketOptions": {
                    "explicitBuckets": {"bounds": list(self.lower_bounds[1:])},
                },
                "bucketCounts": list(self.bucket_counts),
                "count": self.count,
                "mean": mean,
            }
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Distribution):
            return NotImplemented
        return (
            self.lower_bounds == other.lower_bounds
            and self.bucket_counts == other.bucket_counts
            and self.sum == other.sum
            and self.count == other.count
        )

    def __repr__(self) -> str:
        return f"Distribution({self})"

    def __str__(self) -> str:
        bounds = ",".join(_format_float(b) for b in self.lower_bounds)
        counts = ",".join(str(c) for c in self.bucket_counts)
        return (
            f"dist:sum:{_format_float(self.sum)}|count:{self.count}"
            f"|lb:{bounds}|bc:{counts}"
        )


Value = Union[Int, Float, String, Map, Distribution]


class EventMetrics:
    """A timestamped group of labelled metrics, kept in insertion order."""

    def __init__(self, timestamp: datetime, kind: Kind = Kind.CUMULATIVE) -> None:
        self.timestamp = timestamp
        self.kind = kind
        self._metrics: dict[str, Value] = {}
        self._labels: dict[str, str] = {}

    def add_metric(self, name: str, value: Value) -> "EventMetrics":
        self._metrics[name] = value
        return self

    def add_label(self, key: str, value: str) -> "EventMetrics":
        self._labels[key] = value
        return self

    def metric(self, name: str) -> Value | None:
        return self._metrics.get(name)

    def label(self, key: str) -> str:
        return self._labels.get(key, "")

    def metrics_keys(self) -> list[str]:
        return list(self._metrics)

    def labels_keys(self) -> list[str]:
        return list(self._labels)

    def __repr__(self) -> str:
        return f"EventMetrics({self})"

    def __str__(self) -> str:
        labels = ",".join(f"{k}={v}" for k, v in self._labels.items())
        values = " ".join(f"{k}={v}" for k, v in self._metrics.items())
        return f"{int(self.timestamp.timestamp())} labels={labels} {values}"


class Surfacer(abc.ABC):
    """Something that takes EventMetrics and sends them to a monitoring system."""

    @abc.abstractmethod
    def write(self, em: EventMetrics) -> None:
        """Accept one EventMetrics for surfacing."""