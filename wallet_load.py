"""Wallet API load generator core module.

This module drives a ramping population of virtual users against the wallet
HTTP API. Each virtual user runs the wallet iteration (create, fund, read,
transact) back to back while the ramp scheduler keeps the population in line
with the selected scenario. Results are folded into a metrics aggregator and
gated by thresholds once the run is over.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import os
import random
import signal
import sys
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import aiohttp
import yaml

from wallet_client import Classification, Endpoint, RequestOutcome, WalletApiClient, WalletHandle
from wallet_metrics import MetricsAggregator, Threshold, ThresholdResult, parse_thresholds
from wallet_scenarios import SCENARIOS, Scenario, custom_scenario, load_scenarios, lookup

LOGGER = logging.getLogger("wallet_load")

LATENCY_SERIES: Dict[Endpoint, str] = {
    Endpoint.CREATE_WALLET: "wallet_creation_latency",
    Endpoint.GET_BALANCE: "wallet_balance_latency",
    Endpoint.LIST_TRANSACTIONS: "wallet_transaction_latency",
    Endpoint.CREATE_TRANSACTION: "wallet_transaction_latency",
    Endpoint.ADD_COINS: "add_coins_latency",
    Endpoint.UPDATE_COINS: "update_coins_latency",
}

DEFAULT_THRESHOLDS: Dict[str, List[str]] = {
    "http_req_duration": ["p(95)<2000"],
    "wallet_creation_latency": ["p(95)<2000"],
    "wallet_failed_requests": ["rate<0.5"],
}

EXIT_PASSED = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIG_ERROR = 2


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if number < 0:
        raise ValueError(f"{name} cannot be negative")
    return number


@dataclass
class LoadConfig:
    """Configuration holder for a wallet load run."""

    target: str
    api_path: str = "/api"
    scenario: str = "smoke"
    max_concurrency: Optional[int] = None
    timeout_seconds: float = 5.0
    tick_interval: float = 1.0
    summary_interval: float = 30.0
    think_time: Optional[Tuple[float, float]] = None
    fallback_wallet_id: str = "1001"
    transactions_limit: int = 10
    headers: Dict[str, str] = field(default_factory=dict)
    thresholds: Dict[str, List[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_THRESHOLDS.items()})
    scenarios: Dict[str, Any] = field(default_factory=dict)
    summary_export: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.target:
            raise ValueError("target is required (set it in the config file, WALLET_API_URL or --target)")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be a positive number")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be a positive number")
        if self.summary_interval < 0:
            raise ValueError("summary_interval cannot be negative")
        if self.transactions_limit <= 0:
            raise ValueError("transactions_limit must be positive")
        if not self.fallback_wallet_id:
            raise ValueError("fallback_wallet_id cannot be empty")
        self.max_concurrency = _optional_int(self.max_concurrency, "max_concurrency")

        if self.think_time is not None:
            low, high = self.think_time
            if low < 0 or high < low:
                raise ValueError("think_time must be a (low, high) range with 0 <= low <= high")
            self.think_time = (float(low), float(high))

        # Expand the target into a full base URL if only host:port provided
        if self.target.startswith("http://") or self.target.startswith("https://"):
            base = self.target
        else:
            base = f"http://{self.target}"
        self.base_url = base.rstrip("/")

        merged_headers = {
            "User-Agent": f"wallet-load-{self.scenario}",
            "X-Internal-Testing": "true",
        }
        merged_headers.update(self.headers)
        self.headers = merged_headers

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoadConfig":
        """Build a config object from a plain dict."""

        unknown = set(raw) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")
        return cls(**raw)

    def custom_scenarios(self) -> Dict[str, Scenario]:
        return load_scenarios(self.scenarios)

    def parsed_thresholds(self) -> List[Threshold]:
        return parse_thresholds(self.thresholds)


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Overlay ``SCENARIO``, ``LOCAL_VUS`` and ``WALLET_API_URL`` onto a config dict."""

    env = os.environ if environ is None else environ
    merged = dict(raw)
    if env.get("WALLET_API_URL"):
        merged["target"] = env["WALLET_API_URL"]
    if env.get("SCENARIO"):
        merged["scenario"] = env["SCENARIO"]
    if env.get("LOCAL_VUS"):
        merged["max_concurrency"] = _optional_int(env["LOCAL_VUS"], "LOCAL_VUS")
    return merged


def _record(metrics: MetricsAggregator, outcome: RequestOutcome) -> None:
    metrics.increment("http_reqs")
    metrics.record_latency("http_req_duration", outcome.latency_ms)
    metrics.record_latency(LATENCY_SERIES[outcome.endpoint], outcome.latency_ms)
    metrics.record_outcome("wallet_failed_requests", outcome.classification is Classification.FAILURE)
    metrics.record_outcome("wallet_rate_limits", outcome.classification is Classification.RATE_LIMITED)


class WalletIteration:
    """One virtual user iteration: create a wallet, then exercise it."""

    def __init__(
        self,
        client: WalletApiClient,
        metrics: MetricsAggregator,
        *,
        fallback_wallet_id: str = "1001",
        transactions_limit: int = 10,
    ) -> None:
        self.client = client
        self.metrics = metrics
        self.fallback_wallet_id = fallback_wallet_id
        self.transactions_limit = transactions_limit

    async def __call__(self, vu_id: int) -> List[RequestOutcome]:
        outcomes: List[RequestOutcome] = []

        async def call(request: Awaitable[RequestOutcome]) -> RequestOutcome:
            outcome = await request
            _record(self.metrics, outcome)
            outcomes.append(outcome)
            return outcome

        owner_key = f"load-{vu_id}-{int(time.time() * 1000)}-{random.randint(0, 99999)}"
        created = await call(self.client.create_wallet(owner_key, random.randint(0, 999)))
        wallet = WalletHandle.from_outcome(created, self.fallback_wallet_id)
        if wallet.is_fallback:
            LOGGER.warning(
                "VU %d wallet creation failed (status=%s error=%s); using fallback wallet id %s",
                vu_id,
                created.status_code,
                created.error,
                wallet.id,
            )

        await call(self.client.add_coins(wallet.id, random.randint(100, 600)))
        await call(self.client.update_coins(wallet.id, random.randint(200, 1200)))
        await call(self.client.get_balance(wallet.id))
        await call(self.client.list_transactions(wallet.id, self.transactions_limit))

        transaction_type = "deposit" if random.random() < 0.7 else "withdraw"
        await call(self.client.create_transaction(wallet.id, random.randint(10, 1000), transaction_type))

        self.metrics.increment("iterations")
        return outcomes


class RampScheduler:
    """Keeps the number of running virtual users on the scenario's ramp curve."""

    def __init__(
        self,
        scenario: Scenario,
        iteration: Callable[[int], Awaitable[Any]],
        *,
        metrics: Optional[MetricsAggregator] = None,
        max_concurrency: Optional[int] = None,
        tick_interval: float = 1.0,
        think_time: Optional[Tuple[float, float]] = None,
        stop_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.scenario = scenario
        self.iteration = iteration
        self.metrics = metrics or MetricsAggregator()
        self.max_concurrency = max_concurrency
        self.tick_interval = tick_interval
        self.think_time = think_time if think_time is not None else scenario.think_time
        self.stop_event = stop_event or asyncio.Event()
        self.clock = clock
        self.peak_active = 0
        self._next_id = 1
        self._active: List[Tuple[int, asyncio.Event, asyncio.Task]] = []
        self._draining: List[Tuple[int, asyncio.Event, asyncio.Task]] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def in_flight_count(self) -> int:
        """Users still running, including retired ones finishing an iteration."""
        return len(self._tasks)

    async def run(self) -> None:
        """Run until the final stage boundary or the stop event, then drain."""

        start = self.clock()
        total = self.scenario.total_duration
        LOGGER.info(
            "Scenario %s: %d stage(s) over %.1fs, peak %d VUs%s",
            self.scenario.name,
            len(self.scenario.stages),
            total,
            self.scenario.peak_concurrency,
            f" (capped at {self.max_concurrency})" if self.max_concurrency is not None else "",
        )
        try:
            while not self.stop_event.is_set():
                elapsed = self.clock() - start
                if elapsed >= total:
                    break
                self.adjust(self.scenario.concurrency_at(elapsed, self.max_concurrency))
                await self._sleep(min(self.tick_interval, total - elapsed))
        finally:
            await self.drain()

    def adjust(self, target: int) -> None:
        """Start or retire virtual users until ``target`` are active."""

        self._draining = [entry for entry in self._draining if not entry[2].done()]
        while len(self._active) < target and self._draining:
            # Reinstate a retiring user rather than start a new one next to it.
            entry = self._draining.pop()
            entry[1].clear()
            self._active.append(entry)
        while len(self._active) < target:
            vu_id = self._next_id
            self._next_id += 1
            retire = asyncio.Event()
            task = asyncio.create_task(self._user_loop(vu_id, retire), name=f"vu-{vu_id}")
            self._active.append((vu_id, retire, task))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        while len(self._active) > target:
            # Newest users retire first; they finish their current iteration.
            entry = self._active.pop()
            entry[1].set()
            self._draining.append(entry)

        self.peak_active = max(self.peak_active, len(self._active))
        self.metrics.set_gauge("vus", len(self._active))
        self.metrics.set_gauge("vus_max", self.peak_active)

    async def drain(self) -> None:
        self.adjust(0)
        if self._tasks:
            LOGGER.info("Waiting for %d virtual user(s) to finish their iteration", sum(not t.done() for t in self._tasks))
            await asyncio.gather(*list(self._tasks))
            self._tasks.clear()
            self._draining.clear()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            pass

    async def _user_loop(self, vu_id: int, retire: asyncio.Event) -> None:
        LOGGER.debug("VU %d started", vu_id)
        while not retire.is_set():
            try:
                await self.iteration(vu_id)
            except Exception:
                LOGGER.exception("VU %d iteration raised unexpectedly", vu_id)
                self.metrics.increment("iteration_errors")
            if self.think_time and not retire.is_set():
                delay = random.uniform(*self.think_time)
                try:
                    await asyncio.wait_for(retire.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
            else:
                # Yield between back-to-back iterations.
                await asyncio.sleep(0)
        LOGGER.debug("VU %d retired", vu_id)


class RunState(str, enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunReport:
    scenario: str
    state: RunState
    started_at: datetime
    duration_seconds: float
    metrics: Dict[str, Dict[str, Any]]
    thresholds: List[ThresholdResult]
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.error is None and all(result.passed for result in self.thresholds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario": self.scenario,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "passed": self.passed,
            "error": self.error,
            "metrics": self.metrics,
            "thresholds": [result.to_dict() for result in self.thresholds],
        }

    def render_text(self, indent: str = "  ") -> str:
        lines = [
            f"Scenario: {self.scenario}",
            f"Test started at: {self.started_at.isoformat()}",
            f"Test duration: {self.duration_seconds:.1f}s",
            "",
            "Metrics summary:",
        ]
        for name, metric in self.metrics.items():
            values = metric["values"]
            if metric["type"] == "trend":
                lines.append(f"{indent}{name}:")
                for stat in ("min", "avg", "med", "p(90)", "p(95)", "max"):
                    lines.append(f"{indent}{indent}{stat}: {_fmt(values[stat])}")
            elif metric["type"] == "rate":
                lines.append(f"{indent}{name}: {_fmt(values['rate'])} ({values['passes']}/{values['passes'] + values['fails']})")
            elif metric["type"] == "counter":
                lines.append(f"{indent}{name}: {values['count']}")
            else:
                lines.append(f"{indent}{name}: {_fmt(values['value'])} (max {_fmt(values['max'])})")
        if self.thresholds:
            lines.append("")
            lines.append("Thresholds:")
            for result in self.thresholds:
                verdict = "PASS" if result.passed else "FAIL"
                lines.append(
                    f"{indent}{verdict} {result.threshold.series} {result.threshold.expression} "
                    f"(observed {_fmt(result.observed)})"
                )
        if self.error:
            lines.append("")
            lines.append(f"Run error: {self.error}")
        lines.append("")
        lines.append(f"Result: {'PASSED' if self.passed else 'FAILED'}")
        return "\n".join(lines)


def _fmt(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}"


class RunController:
    """Owns one run: resolve the scenario, drive users, summarize."""

    def __init__(self, config: LoadConfig, scenario: Optional[Scenario] = None) -> None:
        self.config = config
        self.state = RunState.IDLE
        self.metrics = MetricsAggregator()
        self.scenario: Optional[Scenario] = scenario
        self.thresholds: List[Threshold] = []
        self._stop_event = asyncio.Event()
        self._scheduler: Optional[RampScheduler] = None

    def initialize(self) -> Scenario:
        self.state = RunState.INITIALIZING
        try:
            if self.scenario is None:
                self.scenario = lookup(self.config.scenario, self.config.custom_scenarios())
            self.thresholds = self.config.parsed_thresholds()
        except ValueError as exc:
            self.state = RunState.ABORTED
            LOGGER.error("Run aborted during initialization: %s", exc)
            raise
        return self.scenario

    async def run(self) -> RunReport:
        """Run the scenario to completion and return the report."""

        scenario = self.initialize()
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        error: Optional[str] = None

        self.state = RunState.RUNNING
        LOGGER.info("Starting scenario %s against %s%s", scenario.name, self.config.base_url, self.config.api_path)
        summary_task: Optional[asyncio.Task] = None
        try:
            async with open_session(self.config.timeout_seconds) as session:
                _install_signal_handlers(asyncio.get_running_loop(), self._stop_event)
                client = WalletApiClient(
                    session,
                    self.config.base_url,
                    api_path=self.config.api_path,
                    headers=self.config.headers,
                )
                iteration = WalletIteration(
                    client,
                    self.metrics,
                    fallback_wallet_id=self.config.fallback_wallet_id,
                    transactions_limit=self.config.transactions_limit,
                )
                self._scheduler = RampScheduler(
                    scenario,
                    iteration,
                    metrics=self.metrics,
                    max_concurrency=self.config.max_concurrency,
                    tick_interval=self.config.tick_interval,
                    think_time=self.config.think_time,
                    stop_event=self._stop_event,
                )
                if self.config.summary_interval:
                    summary_task = asyncio.create_task(self._summary_loop(start))
                await self._scheduler.run()
        except Exception as exc:
            LOGGER.exception("Run failed while running scenario %s", scenario.name)
            error = f"{exc.__class__.__name__}: {exc}"
        finally:
            if summary_task is not None:
                summary_task.cancel()
                await asyncio.gather(summary_task, return_exceptions=True)

        self.state = RunState.FINALIZING
        elapsed = time.monotonic() - start
        self.log_summary(elapsed, final=True)
        results = self.metrics.evaluate(self.thresholds)
        for result in results:
            if not result.passed:
                LOGGER.warning(
                    "Threshold crossed: %s %s (observed %s)",
                    result.threshold.series,
                    result.threshold.expression,
                    _fmt(result.observed),
                )
        report = RunReport(
            scenario=scenario.name,
            state=RunState.DONE,
            started_at=started_at,
            duration_seconds=elapsed,
            metrics=self.metrics.summarize(),
            thresholds=results,
            error=error,
        )
        self.state = RunState.DONE
        LOGGER.info("Run %s after %.2fs", "passed" if report.passed else "failed", elapsed)
        return report

    def stop(self) -> None:
        self._stop_event.set()

    async def _summary_loop(self, start: float) -> None:
        while True:
            await asyncio.sleep(self.config.summary_interval)
            self.log_summary(time.monotonic() - start)

    def log_summary(self, elapsed: float, *, final: bool = False) -> None:
        """Emit a summary of collected metrics so far."""

        summary = self.metrics.summarize()

        def value(name: str, stat: str) -> Any:
            return summary.get(name, {}).get("values", {}).get(stat)

        parts = [
            f"vus={self._scheduler.active_count if self._scheduler else 0}",
            f"iterations={value('iterations', 'count') or 0}",
            f"reqs={value('http_reqs', 'count') or 0}",
            f"failed={_fmt(value('wallet_failed_requests', 'rate'))}",
            f"rate_limited={_fmt(value('wallet_rate_limits', 'rate'))}",
            f"p95={_fmt(value('http_req_duration', 'p(95)'))}ms",
        ]
        message = "FINAL" if final else "SUMMARY"
        LOGGER.info("%s %.1fs %s", message, elapsed, " | ".join(parts))


def open_session(timeout_seconds: float) -> aiohttp.ClientSession:
    """Create the shared HTTP session for a run.

    The connector has no pool limit, so calls from every virtual user are in
    flight at once and never wait for a free connection.
    """

    return aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout_seconds),
        connector=aiohttp.TCPConnector(limit=0),
    )


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Install SIGINT/SIGTERM handlers to stop the run gracefully."""

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / non-main thread
            LOGGER.debug("Signal handlers not supported on this platform")
            break


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    text = path.read_text()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
        return dict(data)
    if suffix == ".json":
        data = json.loads(text or "{}")
        return dict(data)
    raise ValueError(f"Unsupported configuration file format: {suffix}")


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def write_report(report: RunReport, path: Path) -> None:
    path.write_text(json.dumps(report.to_dict(), indent=2))
    LOGGER.info("Summary written to %s", path)


def run_with_config(config: LoadConfig, scenario: Optional[Scenario] = None) -> RunReport:
    """Helper to run the load test with asyncio.run."""

    async def _runner() -> RunReport:
        controller = RunController(config, scenario)
        return await controller.run()

    return asyncio.run(_runner())


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ramping load generator for the wallet API")
    parser.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    parser.add_argument("--target", type=str, default=None, help="Base URL or host:port of the wallet API")
    parser.add_argument("--scenario", type=str, default=None, help="Named scenario to run")
    parser.add_argument("--vus", type=int, default=None, help="Cap on concurrent virtual users")
    parser.add_argument("--initial-vus", type=int, default=None, help="Custom ramp: starting virtual users")
    parser.add_argument("--target-vus", type=int, default=None, help="Custom ramp: peak virtual users")
    parser.add_argument("--duration-minutes", type=float, default=None, help="Custom ramp: total duration")
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=None,
        help="Override summary logging interval in seconds (0 to disable)",
    )
    parser.add_argument("--summary-export", type=Path, default=None, help="Write the JSON summary to this file")
    parser.add_argument("--list-scenarios", action="store_true", help="List built-in scenarios and exit")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    return parser


def _list_scenarios() -> str:
    lines = []
    for name, scenario in SCENARIOS.items():
        lines.append(f"{name:<16} {scenario.total_duration:>6.0f}s  peak {scenario.peak_concurrency:>4}  {scenario.description}")
    return "\n".join(lines)


def main(argv: Optional[Iterable[str]] = None) -> int:
    """CLI entry point for the wallet load generator."""

    args = build_argparser().parse_args(list(argv) if argv is not None else None)
    if args.list_scenarios:
        print(_list_scenarios())
        return EXIT_PASSED

    setup_logging(args.log_level)
    try:
        config_dict = load_config_file(args.config) if args.config else {}
        config_dict = apply_env_overrides(config_dict)
        if args.target is not None:
            config_dict["target"] = args.target
        if args.scenario is not None:
            config_dict["scenario"] = args.scenario
        if args.vus is not None:
            config_dict["max_concurrency"] = args.vus
        if args.summary_interval is not None:
            config_dict["summary_interval"] = args.summary_interval
        if args.summary_export is not None:
            config_dict["summary_export"] = str(args.summary_export)
        config_dict.setdefault("target", "")

        scenario = None
        custom = (args.initial_vus, args.target_vus, args.duration_minutes)
        if any(value is not None for value in custom):
            if any(value is None for value in custom):
                raise ValueError("--initial-vus, --target-vus and --duration-minutes must be given together")
            scenario = custom_scenario(*custom)
            config_dict["scenario"] = scenario.name

        config = LoadConfig.from_dict(config_dict)
        report = run_with_config(config, scenario)
    except ValueError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    print(report.render_text())
    if config.summary_export:
        write_report(report, Path(config.summary_export))
    return EXIT_PASSED if report.passed else EXIT_THRESHOLDS_FAILED


if __name__ == "__main__":  # pragma: no cover - CLI usage
    sys.exit(main())
