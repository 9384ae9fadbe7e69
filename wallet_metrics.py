"""Streaming metrics aggregation for load test runs.

Series are created on first use and are independent of each other: every
series guards its own state with its own lock, so concurrent writers on
different series never contend.
"""

from __future__ import annotations

import math
import operator
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

TREND_STATS = ("min", "avg", "med", "p(90)", "p(95)", "max")

_THRESHOLD_RE = re.compile(r"^\s*(avg|min|med|max|rate|count|value|p\((\d+(?:\.\d+)?)\))\s*(<=|>=|==|<|>)\s*(-?\d+(?:\.\d+)?)\s*$")
_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
}


def percentile(sorted_samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile of an ascending sequence, ``p`` in [0, 1]."""

    if not sorted_samples:
        raise ValueError("percentile of an empty sequence")
    n = len(sorted_samples)
    index = math.ceil(p * n) - 1
    return sorted_samples[min(max(index, 0), n - 1)]


class Trend:
    kind = "trend"

    def __init__(self, name: str) -> None:
        self.name = name
        self._samples: List[float] = []
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def values(self) -> Dict[str, Optional[float]]:
        with self._lock:
            samples = sorted(self._samples)
        if not samples:
            return {stat: None for stat in TREND_STATS} | {"count": 0}
        return {
            "min": samples[0],
            "avg": sum(samples) / len(samples),
            "med": percentile(samples, 0.5),
            "p(90)": percentile(samples, 0.90),
            "p(95)": percentile(samples, 0.95),
            "max": samples[-1],
            "count": len(samples),
        }

    def stat(self, name: str) -> Optional[float]:
        match = re.fullmatch(r"p\((\d+(?:\.\d+)?)\)", name)
        if match:
            with self._lock:
                samples = sorted(self._samples)
            return percentile(samples, float(match.group(1)) / 100) if samples else None
        return self.values().get(name)


class Rate:
    kind = "rate"

    def __init__(self, name: str) -> None:
        self.name = name
        self._matches = 0
        self._total = 0
        self._lock = threading.Lock()

    def add(self, is_match: bool) -> None:
        with self._lock:
            self._total += 1
            if is_match:
                self._matches += 1

    def values(self) -> Dict[str, Any]:
        with self._lock:
            matches, total = self._matches, self._total
        return {
            "rate": matches / total if total else None,
            "passes": matches,
            "fails": total - matches,
        }

    def stat(self, name: str) -> Optional[float]:
        return self.values().get(name)


class Counter:
    kind = "counter"

    def __init__(self, name: str) -> None:
        self.name = name
        self._count = 0
        self._lock = threading.Lock()

    def add(self, amount: int = 1) -> None:
        with self._lock:
            self._count += amount

    def values(self) -> Dict[str, Any]:
        with self._lock:
            return {"count": self._count}

    def stat(self, name: str) -> Optional[float]:
        return self.values().get(name)


class Gauge:
    kind = "gauge"

    def __init__(self, name: str) -> None:
        self.name = name
        self._value: Optional[float] = None
        self._min: Optional[float] = None
        self._max: Optional[float] = None
        self._lock = threading.Lock()

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value
            self._min = value if self._min is None else min(self._min, value)
            self._max = value if self._max is None else max(self._max, value)

    def values(self) -> Dict[str, Any]:
        with self._lock:
            return {"value": self._value, "min": self._min, "max": self._max}

    def stat(self, name: str) -> Optional[float]:
        return self.values().get(name)


_KINDS = {cls.kind: cls for cls in (Trend, Rate, Counter, Gauge)}


@dataclass(frozen=True)
class Threshold:
    """Post-run pass/fail gate on one statistic of one series."""

    series: str
    expression: str
    stat: str
    op: str
    limit: float

    @classmethod
    def parse(cls, series: str, expression: str) -> "Threshold":
        match = _THRESHOLD_RE.match(expression)
        if not match:
            raise ValueError(f"Invalid threshold for {series}: {expression!r}")
        stat, _, op, limit = match.groups()
        return cls(series=series, expression=expression.strip(), stat=stat, op=op, limit=float(limit))

    def check(self, observed: Optional[float]) -> bool:
        if observed is None:
            return True
        return _OPERATORS[self.op](observed, self.limit)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: Optional[float]
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "series": self.threshold.series,
            "threshold": self.threshold.expression,
            "observed": self.observed,
            "passed": self.passed,
        }


def parse_thresholds(raw: Mapping[str, Iterable[str]]) -> List[Threshold]:
    """Parse a ``{series: [expression, ...]}`` mapping."""

    if not isinstance(raw, Mapping):
        raise ValueError("thresholds must map series names to expressions")
    thresholds = []
    for series, expressions in raw.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, (list, tuple)) or not all(isinstance(e, str) for e in expressions):
            raise ValueError(f"Thresholds for {series} must be an expression or a list of expressions, got {expressions!r}")
        thresholds.extend(Threshold.parse(series, expr) for expr in expressions)
    return thresholds


class MetricsAggregator:
    """Per-run registry of named metric series."""

    def __init__(self) -> None:
        self._series: Dict[str, Any] = {}

    def _get(self, name: str, kind: str):
        series = self._series.get(name)
        if series is None:
            series = self._series.setdefault(name, _KINDS[kind](name))
        if series.kind != kind:
            raise TypeError(f"Series '{name}' is a {series.kind}, not a {kind}")
        return series

    def record_latency(self, name: str, milliseconds: float) -> None:
        self._get(name, "trend").add(milliseconds)

    def record_outcome(self, name: str, is_match: bool) -> None:
        self._get(name, "rate").add(is_match)

    def increment(self, name: str, amount: int = 1) -> None:
        self._get(name, "counter").add(amount)

    def set_gauge(self, name: str, value: float) -> None:
        self._get(name, "gauge").set(value)

    def series(self, name: str):
        return self._series.get(name)

    def summarize(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {"type": series.kind, "values": series.values()}
            for name, series in sorted(self._series.items())
        }

    def evaluate(self, thresholds: Iterable[Threshold]) -> List[ThresholdResult]:
        results = []
        for threshold in thresholds:
            series = self._series.get(threshold.series)
            observed = series.stat(threshold.stat) if series is not None else None
            results.append(ThresholdResult(threshold, observed, threshold.check(observed)))
        return results
