from __future__ import annotations

import concurrent.futures
import logging
import random
import threading
import time
from typing import Callable, Sequence

from .config import (
    ActiveLabPolicy,
    FixedDurationPolicy,
    NoisyNeighborPolicy,
    OutagePolicy,
    WavePolicy,
)
from .lifecycle import Runner
from .pool import RunnerPool
from .workload import (
    BASELINE_INVOCATION,
    CONTENTION_INVOCATION,
    ExecutionRecord,
    WorkloadExecutor,
)

LOGGER = logging.getLogger("runner_fleet.scenarios")


def partition_waves(
    count: int,
    rng: random.Random,
    proportions: tuple[float, float, float] = (0.2, 0.3, 0.5),
    jitter: int = 2,
) -> tuple[int, int, int]:
    """Split ``count`` runners into three jittered wave sizes.

    The sizes are non-negative and sum to ``count``; with three or more runners
    every wave gets at least one.
    """
    if count <= 0:
        return (0, 0, 0)
    total = sum(proportions)
    if total <= 0:
        raise ValueError("wave proportions must sum to > 0")
    first_share, second_share = proportions[0] / total, proportions[1] / total
    # leave room for the later waves once there are enough runners to go around
    reserve = 2 if count >= 3 else 1

    first = int(count * first_share) + rng.randint(-jitter, jitter)
    first = max(1, first)
    first = min(first, count - reserve)
    first = max(first, 0)

    second = int(count * second_share) + rng.randint(-jitter, jitter)
    second = max(1, second)
    if first + second >= count:
        second = count - first - 1
    second = max(second, 0)

    third = max(count - first - second, 0)
    return (first, second, third)


class ScenarioOrchestrator:
    """Drives workload executions across pool members under one timing policy."""

    def __init__(
        self,
        pool: RunnerPool,
        executor: WorkloadExecutor,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._pool = pool
        self._executor = executor
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep
        self._halt = threading.Event()

    # fixed-duration repeat

    def run_fixed_duration(
        self, runners: Sequence[Runner], policy: FixedDurationPolicy
    ) -> list[ExecutionRecord]:
        deadline = self._clock() + policy.duration_seconds
        LOGGER.info(
            "Running workload on %d runner(s) for %.1f seconds", len(runners), policy.duration_seconds
        )
        with self._thread_pool(len(runners)) as threads:
            futures = self._launch_loops(threads, runners, deadline, policy.pause_range)
            return self._join(futures, self._timeout_after(deadline, policy.straggler_timeout))

    # outage injection

    def run_outage(self, runners: Sequence[Runner], policy: OutagePolicy) -> list[ExecutionRecord]:
        deadline = self._clock() + policy.total_seconds
        LOGGER.info(
            "Running workload for %.1f seconds before outage", policy.pre_outage_seconds
        )
        with self._thread_pool(len(runners)) as threads:
            futures = self._launch_loops(threads, runners, deadline, policy.pause_range)
            self._sleep(policy.pre_outage_seconds)

            LOGGER.info("Simulating network outage: pausing runners for %.1f s", policy.outage_seconds)
            indices = [runner.index for runner in runners]
            in_flight = self._executor.hold_launches(indices)
            try:
                suspended = self._pool.suspend_all(extra_groups=in_flight)
                try:
                    self._sleep(policy.outage_seconds)
                finally:
                    LOGGER.info("Restoring network: resuming runners")
                    self._pool.resume_all(suspended)
            finally:
                self._executor.release_launches()

            LOGGER.info("Waiting for runners to finish remaining runs...")
            return self._join(futures, self._timeout_after(deadline, policy.straggler_timeout))

    # wave ramp-up

    def run_waves(self, runners: Sequence[Runner], policy: WavePolicy) -> list[ExecutionRecord]:
        order = list(runners)
        with self._rng_lock:
            self._rng.shuffle(order)
            sizes = partition_waves(len(order), self._rng, policy.proportions, policy.jitter)
        LOGGER.info("Calculated wave sizes: wave1=%d, wave2=%d, wave3=%d", *sizes)

        groups = []
        cursor = 0
        for size in sizes:
            groups.append(order[cursor : cursor + size])
            cursor += size

        futures: dict[concurrent.futures.Future, Runner] = {}
        with self._thread_pool(len(order)) as threads:
            for number, (group, pause) in enumerate(zip(groups, policy.pauses), start=1):
                if not group:
                    continue
                label = f"wave{number}"
                LOGGER.info("Wave%d: Starting %d runners...", number, len(group))
                for runner in group:
                    futures[threads.submit(self._executor.run, runner, label)] = runner
                LOGGER.info("Wave%d started. Sleeping %.2f seconds", number, pause)
                self._sleep(pause)

            LOGGER.info("Waiting for all wave processes to complete...")
            return self._join(futures, policy.straggler_timeout)

    # noisy neighbor

    def run_noisy_neighbor(
        self, runners: Sequence[Runner], policy: NoisyNeighborPolicy
    ) -> list[ExecutionRecord]:
        if len(runners) < 2:
            raise ValueError("At least 2 runners are required (1 baseline + 1 concurrent)")
        baseline_runner = runners[0]
        LOGGER.info("PHASE 1: Running baseline test on Runner #%d only...", baseline_runner.index)
        baseline = self._executor.run(baseline_runner, BASELINE_INVOCATION, echo=True)
        LOGGER.info("Baseline completed in %.3f seconds", baseline.duration)

        contenders = list(runners) if policy.include_baseline_runner else list(runners[1:])
        LOGGER.info("PHASE 2: Running tests with %d concurrent runners...", len(contenders))
        futures: dict[concurrent.futures.Future, Runner] = {}
        with self._thread_pool(len(contenders)) as threads:
            for runner in contenders:
                echo = runner is baseline_runner
                futures[threads.submit(self._executor.run, runner, CONTENTION_INVOCATION, echo)] = runner
            return [baseline, *self._join(futures, policy.straggler_timeout)]

    # active lab

    def run_active_lab(self, policy: ActiveLabPolicy, token: str) -> list[ExecutionRecord]:
        LOGGER.info("Spinning up the baseline (%d) runners...", policy.min_runners)
        self._pool.ensure(policy.min_runners, token)
        records: list[ExecutionRecord] = []

        for cycle in range(1, policy.cycles + 1):
            LOGGER.info("Starting cycle %d of %d", cycle, policy.cycles)
            wait = self._uniform(policy.wait_range)
            LOGGER.info("Waiting %.1f seconds before spinning up extra runners...", wait)
            self._sleep(wait)

            max_extras = policy.max_runners - policy.min_runners
            if max_extras > 0:
                with self._rng_lock:
                    extra = self._rng.randint(1, max_extras)
                LOGGER.info("Spinning up %d extra runners (cycle %d)", extra, cycle)
                self._pool.ensure(policy.min_runners + extra, token)
            else:
                LOGGER.warning("min_runners == max_runners, so no extras can be added")
                extra = 0

            runners = self._pool.select(policy.min_runners + extra)
            LOGGER.info("Running workload (in parallel) on %d runners...", len(runners))
            label = f"cycle_{cycle}"
            with self._thread_pool(len(runners)) as threads:
                futures = {threads.submit(self._executor.run, runner, label): runner for runner in runners}
                records.extend(self._join(futures, policy.straggler_timeout))

            if extra:
                LOGGER.info("Removing the %d extra runners, returning to %d", extra, policy.min_runners)
                self._pool.shrink(policy.min_runners)

            if cycle < policy.cycles:
                wait = self._uniform(policy.wait_range)
                LOGGER.info("Cycle %d complete. Waiting %.1f seconds before next cycle...", cycle, wait)
                self._sleep(wait)
        return records

    # helpers

    def _launch_loops(
        self,
        threads: concurrent.futures.ThreadPoolExecutor,
        runners: Sequence[Runner],
        deadline: float,
        pause_range: tuple[float, float],
    ) -> dict[concurrent.futures.Future, Runner]:
        self._halt.clear()
        return {
            threads.submit(self._runner_loop, runner, deadline, pause_range): runner
            for runner in runners
        }

    def _runner_loop(
        self, runner: Runner, deadline: float, pause_range: tuple[float, float]
    ) -> list[ExecutionRecord]:
        records: list[ExecutionRecord] = []
        count = 1
        while not self._halt.is_set() and self._clock() < deadline:
            record = self._executor.run(runner, f"run_{count}", not_after=deadline)
            if record is None:
                break
            records.append(record)
            count += 1
            pause = self._uniform(pause_range)
            if self._clock() + pause >= deadline:
                break
            self._sleep(pause)
        return records

    def _join(
        self,
        futures: dict[concurrent.futures.Future, Runner],
        timeout: float | None,
    ) -> list[ExecutionRecord]:
        _, pending = concurrent.futures.wait(futures, timeout=timeout)
        if pending:
            stragglers = sorted(futures[future].index for future in pending)
            LOGGER.warning(
                "%d runner(s) still busy after the wait window; terminating: %s",
                len(pending),
                ", ".join(f"#{index}" for index in stragglers),
            )
            self._halt.set()
            self._executor.kill(stragglers)
            concurrent.futures.wait(pending)

        records: list[ExecutionRecord] = []
        for future, runner in futures.items():
            try:
                result = future.result()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Execution on runner #%d failed", runner.index)
                continue
            if result is None:
                continue
            if isinstance(result, ExecutionRecord):
                records.append(result)
            else:
                records.extend(result)
        records.sort(key=lambda record: (record.start, record.runner_id))
        return records

    def _timeout_after(self, deadline: float, straggler_timeout: float | None) -> float | None:
        if straggler_timeout is None:
            return None
        return max(deadline - self._clock(), 0.0) + straggler_timeout

    def _uniform(self, bounds: tuple[float, float]) -> float:
        with self._rng_lock:
            return self._rng.uniform(*bounds)

    @staticmethod
    def _thread_pool(size: int) -> concurrent.futures.ThreadPoolExecutor:
        return concurrent.futures.ThreadPoolExecutor(
            max_workers=max(size, 1), thread_name_prefix="runner-exec"
        )


__all__ = [
    "ScenarioOrchestrator",
    "partition_waves",
]
