"""Scenario catalog for the wallet load generator.

A scenario is an ordered list of ramp stages. Concurrency is ramped linearly
from the previous stage's target to the current stage's target over the
stage duration, which gives a continuous piecewise-linear load curve.
"""

from __future__ import annotations

import bisect
import math
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class UnknownScenarioError(ValueError):
    """Raised when a scenario name is not present in the catalog."""

    def __init__(self, name: str, known: Iterable[str]) -> None:
        self.name = name
        self.known = sorted(known)
        super().__init__(f"Unknown scenario '{name}' (known: {', '.join(self.known)})")


def parse_duration(value: Any) -> float:
    """Return seconds for values like ``90``, ``"30s"``, ``"2m"`` or ``"1m30s"``."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        if not text:
            raise ValueError("Duration cannot be empty")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}") from None
    if seconds < 0:
        raise ValueError(f"Duration cannot be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class ScenarioStage:
    """One linear segment of the load curve."""

    duration_seconds: float
    target_concurrency: int

    def __post_init__(self) -> None:
        if self.duration_seconds < 0:
            raise ValueError("duration_seconds cannot be negative")
        if self.target_concurrency < 0:
            raise ValueError("target_concurrency cannot be negative")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ScenarioStage":
        if not isinstance(raw, Mapping):
            raise ValueError(f"Stage must be a mapping with duration and target, got {raw!r}")
        missing = [key for key in ("duration", "target") if key not in raw]
        if missing:
            raise ValueError(f"Stage is missing {', '.join(missing)}")
        try:
            target = int(raw["target"])
        except (TypeError, ValueError):
            raise ValueError(f"Stage target must be an integer, got {raw['target']!r}") from None
        return cls(duration_seconds=parse_duration(raw["duration"]), target_concurrency=target)


@dataclass(frozen=True)
class Scenario:
    """Named, immutable ramp profile."""

    name: str
    stages: Tuple[ScenarioStage, ...]
    start_concurrency: int = 0
    think_time: Optional[Tuple[float, float]] = None
    description: str = ""
    boundaries: Tuple[float, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        stages = tuple(self.stages)
        if not stages:
            raise ValueError(f"Scenario '{self.name}' needs at least one stage")
        if self.start_concurrency < 0:
            raise ValueError("start_concurrency cannot be negative")

        previous = self.start_concurrency
        for index, stage in enumerate(stages):
            if stage.duration_seconds == 0 and stage.target_concurrency != previous:
                raise ValueError(
                    f"Scenario '{self.name}' stage {index} changes concurrency "
                    f"({previous} -> {stage.target_concurrency}) with zero duration"
                )
            previous = stage.target_concurrency

        if self.think_time is not None:
            low, high = self.think_time
            if low < 0 or high < low:
                raise ValueError("think_time must be a (low, high) range with 0 <= low <= high")
            object.__setattr__(self, "think_time", (float(low), float(high)))

        ends = []
        total = 0.0
        for stage in stages:
            total += stage.duration_seconds
            ends.append(total)
        object.__setattr__(self, "stages", stages)
        object.__setattr__(self, "boundaries", tuple(ends))

    @classmethod
    def from_dict(cls, name: str, raw: Mapping[str, Any]) -> "Scenario":
        """Build a scenario from a config-file mapping."""

        if not isinstance(raw, Mapping):
            raise ValueError(f"Scenario '{name}' must be a mapping, got {type(raw).__name__}")
        raw_stages = raw.get("stages") or ()
        if isinstance(raw_stages, (str, Mapping)) or not isinstance(raw_stages, Iterable):
            raise ValueError(f"Scenario '{name}' stages must be a list")
        stages = []
        for index, stage in enumerate(raw_stages):
            try:
                stages.append(ScenarioStage.from_dict(stage))
            except ValueError as exc:
                raise ValueError(f"Scenario '{name}' stage {index}: {exc}") from None

        think_time = raw.get("think_time")
        try:
            return cls(
                name=name,
                stages=tuple(stages),
                start_concurrency=int(raw.get("start_vus", raw.get("start_concurrency", 0))),
                think_time=tuple(think_time) if think_time is not None else None,
                description=str(raw.get("description", "")),
            )
        except TypeError as exc:
            raise ValueError(f"Scenario '{name}' is malformed: {exc}") from None

    @property
    def total_duration(self) -> float:
        return self.boundaries[-1]

    @property
    def peak_concurrency(self) -> int:
        return max([self.start_concurrency] + [s.target_concurrency for s in self.stages])

    def target_at(self, elapsed: float) -> float:
        """Return the interpolated (fractional) concurrency at ``elapsed`` seconds."""

        if elapsed <= 0:
            return float(self.start_concurrency)
        if elapsed >= self.total_duration:
            return float(self.stages[-1].target_concurrency)

        index = bisect.bisect_right(self.boundaries, elapsed)
        stage = self.stages[index]
        previous = self.stages[index - 1].target_concurrency if index else self.start_concurrency
        stage_start = self.boundaries[index - 1] if index else 0.0
        fraction = (elapsed - stage_start) / stage.duration_seconds
        return previous + (stage.target_concurrency - previous) * fraction

    def concurrency_at(self, elapsed: float, cap: Optional[int] = None) -> int:
        """Return the whole number of virtual users wanted at ``elapsed`` seconds."""

        target = int(math.floor(self.target_at(elapsed) + 0.5))
        if cap is not None:
            target = min(target, cap)
        return target


def _stages(*pairs: Tuple[str, int]) -> Tuple[ScenarioStage, ...]:
    return tuple(ScenarioStage(parse_duration(duration), target) for duration, target in pairs)


SCENARIOS: Mapping[str, Scenario] = MappingProxyType(
    {
        scenario.name: scenario
        for scenario in (
            Scenario("smoke", _stages(("1m", 10), ("1m", 10), ("1m", 0)), description="Sanity check at 10 users"),
            Scenario("load", _stages(("2m", 50), ("5m", 50), ("2m", 0)), description="Typical load, 50 users"),
            Scenario("stress", _stages(("2m", 100), ("5m", 100), ("2m", 0)), description="Stress at 100 users"),
            Scenario("spike", _stages(("1m", 200), ("1m", 0)), description="Sudden spike to 200 users"),
            Scenario("endurance", _stages(("5m", 50), ("20m", 50), ("5m", 0)), description="50 users for 30 minutes"),
            Scenario("soak", _stages(("5m", 25), ("50m", 25), ("5m", 0)), description="25 users for an hour"),
            Scenario("wallet_light", _stages(("30s", 5), ("1m", 5), ("30s", 0)), description="Light wallet traffic"),
            Scenario("wallet_moderate", _stages(("30s", 20), ("2m", 20), ("30s", 0)), description="Moderate wallet traffic"),
            Scenario("wallet_heavy", _stages(("1m", 50), ("3m", 50), ("1m", 0)), description="Heavy wallet traffic"),
            Scenario("wallet_extreme", _stages(("1m", 100), ("3m", 100), ("1m", 0)), description="Extreme wallet traffic"),
            Scenario(
                "mega",
                _stages(("5m", 500)),
                start_concurrency=500,
                description="Constant 500 users for 5 minutes, no ramp",
            ),
        )
    }
)


def lookup(name: str, extra: Optional[Mapping[str, Scenario]] = None) -> Scenario:
    """Return the named scenario, searching ``extra`` before the static catalog."""

    if extra and name in extra:
        return extra[name]
    try:
        return SCENARIOS[name]
    except KeyError:
        known = set(SCENARIOS)
        known.update(extra or {})
        raise UnknownScenarioError(name, known) from None


def custom_scenario(initial: int, target: int, duration_minutes: float) -> Scenario:
    """Ramp from ``initial`` to ``target`` over half the duration, then down to zero."""

    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    half = duration_minutes * 60.0 / 2
    return Scenario(
        name="custom",
        stages=(ScenarioStage(half, target), ScenarioStage(half, 0)),
        start_concurrency=initial,
        description=f"{initial} -> {target} users over {duration_minutes:g}m",
    )


def load_scenarios(raw: Optional[Mapping[str, Any]]) -> Dict[str, Scenario]:
    """Build scenarios declared under the ``scenarios`` key of a config file."""

    if raw is not None and not isinstance(raw, Mapping):
        raise ValueError("scenarios must map scenario names to definitions")
    return {name: Scenario.from_dict(name, body) for name, body in (raw or {}).items()}
