from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .aggregate import Aggregator, Summary
from .charts import render_session_charts
from .config import (
    ActiveLabPolicy,
    FixedDurationPolicy,
    FleetConfig,
    NoisyNeighborPolicy,
    OutagePolicy,
    WavePolicy,
)
from .lifecycle import Runner
from .metrics import MetricsCollector
from .pool import RunnerPool
from .scenarios import ScenarioOrchestrator
from .session import ScenarioContext, ScenarioRun
from .workload import ExecutionRecord, ExecutionRecorder, WorkloadExecutor

LOGGER = logging.getLogger("runner_fleet.controller")

Driver = Callable[[ScenarioOrchestrator, list[Runner]], list[ExecutionRecord]]


@dataclass(frozen=True)
class ScenarioOutcome:
    run: ScenarioRun
    records: list[ExecutionRecord]
    summary: Summary

    @property
    def directory(self) -> Path:
        return self.run.directory


class FleetController:
    """Runs one scenario end to end: fleet up, sample, drive, analyse, fleet down."""

    def __init__(
        self,
        config: FleetConfig,
        token: str,
        pool: RunnerPool | None = None,
        rng: random.Random | None = None,
        charts: bool = True,
        metric_interval: float = 1.0,
    ) -> None:
        self._config = config
        self._token = token
        self.pool = pool or RunnerPool(config)
        self._rng = rng or random.Random()
        self._charts = charts
        self._metric_interval = metric_interval

    def start_fleet(self, count: int) -> list[Runner]:
        self.pool.ensure(count, self._token)
        runners = self.pool.select(count)
        LOGGER.info("Done! %d runner(s) are up:", len(runners))
        for runner in runners:
            LOGGER.info("  Runner #%d on port %d (%s)", runner.index, runner.port, runner.workspace)
        return runners

    def stop_fleet(self) -> int:
        return self.pool.teardown_all()

    def baseline(self, count: int, job: Path, policy: FixedDurationPolicy) -> ScenarioOutcome:
        return self.run_scenario(
            "baseline",
            count,
            job,
            {"duration_seconds": policy.duration_seconds, "pause_range": policy.pause_range},
            lambda orchestrator, runners: orchestrator.run_fixed_duration(runners, policy),
        )

    def outage(self, count: int, job: Path, policy: OutagePolicy) -> ScenarioOutcome:
        return self.run_scenario(
            "network_outage",
            count,
            job,
            {
                "pre_outage_seconds": policy.pre_outage_seconds,
                "outage_seconds": policy.outage_seconds,
                "post_outage_seconds": policy.post_outage_seconds,
            },
            lambda orchestrator, runners: orchestrator.run_outage(runners, policy),
        )

    def waves(self, count: int, job: Path, policy: WavePolicy) -> ScenarioOutcome:
        return self.run_scenario(
            "waves",
            count,
            job,
            {"proportions": policy.proportions, "pauses": policy.pauses},
            lambda orchestrator, runners: orchestrator.run_waves(runners, policy),
        )

    def noisy_neighbor(self, count: int, job: Path, policy: NoisyNeighborPolicy) -> ScenarioOutcome:
        if count < 2:
            raise ValueError("At least 2 runners are required (1 baseline + 1 concurrent)")
        return self.run_scenario(
            "noisy_neighbor",
            count,
            job,
            {"include_baseline_runner": policy.include_baseline_runner},
            lambda orchestrator, runners: orchestrator.run_noisy_neighbor(runners, policy),
        )

    def active_lab(self, job: Path, policy: ActiveLabPolicy) -> ScenarioOutcome:
        return self.run_scenario(
            "active_lab",
            policy.min_runners,
            job,
            {
                "min_runners": policy.min_runners,
                "max_runners": policy.max_runners,
                "cycles": policy.cycles,
                "wait_range": policy.wait_range,
            },
            lambda orchestrator, runners: orchestrator.run_active_lab(policy, self._token),
            provision=False,
        )

    def run_scenario(
        self,
        kind: str,
        count: int,
        job: Path,
        parameters: dict[str, Any],
        drive: Driver,
        provision: bool = True,
        baseline_runner: int | None = None,
    ) -> ScenarioOutcome:
        job = job.resolve()
        run = ScenarioRun.create(self._config.metrics_root, kind, count, job, parameters)
        context = ScenarioContext(run)
        context.attach_log()
        LOGGER.info("Scenario %s: metrics will be saved to %s", run.name, run.directory)
        try:
            runners: list[Runner] = []
            if provision:
                LOGGER.info("Ensuring %d runner(s) exist...", count)
                self.pool.ensure(count, self._token)
                runners = self.pool.select(count)

            executor = WorkloadExecutor(self._config.runtime, job, ExecutionRecorder(run.directory))
            orchestrator = ScenarioOrchestrator(self.pool, executor, rng=self._rng)
            collector = MetricsCollector(
                run.directory,
                interval=self._metric_interval,
                stop_event=context.stop_event,
            )
            with collector:
                records = drive(orchestrator, runners)

            summary = Aggregator(run.directory, baseline_runner=baseline_runner).write_report(run.name)
            if summary.average_runtime is not None:
                LOGGER.info("Average Runtime: %.4f seconds", summary.average_runtime)
            if self._charts:
                self._render_charts(run.directory)
            LOGGER.info("Scenario %s complete; %d execution(s) recorded", run.name, len(records))
            return ScenarioOutcome(run=run, records=records, summary=summary)
        finally:
            LOGGER.info("Cleaning up runners...")
            try:
                self.pool.teardown_all()
            finally:
                context.detach_log()

    @staticmethod
    def _render_charts(directory: Path) -> None:
        try:
            render_session_charts(directory)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Chart rendering failed: %s", exc)


__all__ = ["FleetController", "ScenarioOutcome"]
