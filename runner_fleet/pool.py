from __future__ import annotations

import contextlib
import logging
import signal
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from .config import FleetConfig
from .errors import PortsExhausted, RunnerStartError
from .lifecycle import Runner, RunnerLifecycle, RunnerState, StartResult, signal_group
from .ports import PortAllocator, PortBatch

LOGGER = logging.getLogger("runner_fleet.pool")


@dataclass(frozen=True)
class SuspendedSet:
    """Process groups frozen by one suspend call; resume targets exactly these."""

    runners: dict[int, int] = field(default_factory=dict)
    extra_groups: frozenset[int] = frozenset()

    @property
    def pgids(self) -> frozenset[int]:
        return frozenset(self.runners.values()) | self.extra_groups

    def __bool__(self) -> bool:
        return bool(self.runners or self.extra_groups)


class RunnerPool:
    """Index-addressed collection of runners sharing one port range."""

    def __init__(
        self,
        config: FleetConfig,
        lifecycle: RunnerLifecycle | None = None,
        allocator: PortAllocator | None = None,
    ) -> None:
        self._config = config
        self.lifecycle = lifecycle or RunnerLifecycle(config)
        self._allocator = allocator or PortAllocator(config.port_start, config.port_end)
        self._runners: dict[int, Runner] = {}
        self.provisioned = 0

    def __len__(self) -> int:
        return len(self._runners)

    def __iter__(self) -> Iterator[Runner]:
        return iter(self.runners)

    def __contains__(self, index: int) -> bool:
        return index in self._runners

    @property
    def runners(self) -> list[Runner]:
        return [self._runners[index] for index in sorted(self._runners)]

    def get(self, index: int) -> Runner:
        try:
            return self._runners[index]
        except KeyError:
            raise KeyError(f"runner #{index} is not part of the pool") from None

    def select(self, count: int) -> list[Runner]:
        """The first ``count`` runners by index."""
        selected = self.runners[:count]
        if len(selected) < count:
            raise ValueError(f"pool holds {len(selected)} runner(s), {count} requested")
        return selected

    def running(self) -> list[Runner]:
        return [runner for runner in self.runners if runner.state is RunnerState.RUNNING]

    def highest_index(self) -> int:
        highest = max(self._runners, default=0)
        for index in range(self._config.max_runners, highest, -1):
            if self._config.workspace_for(index).is_dir():
                return index
        return highest

    def adopt(self) -> list[Runner]:
        """Pick up runner workspaces created outside this pool instance."""
        adopted = []
        for index in range(1, self._config.max_runners + 1):
            if index in self._runners:
                continue
            runner = self.lifecycle.adopt(index)
            if runner is not None:
                self._runners[index] = runner
                adopted.append(runner)
        if adopted:
            LOGGER.info("Adopted %d existing runner workspace(s)", len(adopted))
        return adopted

    def ensure(self, target_count: int, token: str) -> list[Runner]:
        """Create runners until indices 1..target_count exist; returns the new ones."""
        if target_count < 1:
            raise ValueError("Number of runners must be >= 1")
        if target_count > self._config.max_runners:
            raise ValueError(
                f"Requested {target_count} runners, but the pool caps at {self._config.max_runners}"
            )
        if target_count > self._config.port_capacity:
            raise ValueError(
                f"Requested {target_count} runners, but only {self._config.port_capacity} ports are "
                f"in [{self._config.port_start}..{self._config.port_end}]"
            )

        self.adopt()
        existing = self.highest_index()
        LOGGER.info("Highest existing runner index so far: %d", existing)
        if existing >= target_count:
            return []

        self.lifecycle.template.ensure()
        batch = self._allocator.batch(
            offset=existing,
            reserved=[runner.port for runner in self._runners.values()],
        )
        created: list[Runner] = []
        for index in range(existing + 1, target_count + 1):
            try:
                runner = self._create(index, batch, token)
            except PortsExhausted:
                LOGGER.error(
                    "Ran out of ports before starting all runners. Created %d so far.",
                    len(created),
                )
                raise
            created.append(runner)
        LOGGER.info("Created %d new runner(s); pool size is %d", len(created), len(self))
        return created

    def shrink(self, target_count: int) -> list[int]:
        """Tear down the highest-indexed runners until at most ``target_count`` remain."""
        removed = []
        for index in sorted(self._runners, reverse=True):
            if index <= target_count:
                break
            self._teardown_runner(self._runners.pop(index))
            removed.append(index)
        return removed

    def teardown_all(self) -> int:
        LOGGER.info("Stopping and unregistering all runners (1..%d)", self._config.max_runners)
        removed = 0
        for index in range(1, self._config.max_runners + 1):
            runner = self._runners.pop(index, None) or self.lifecycle.adopt(index)
            if runner is None:
                continue
            self._teardown_runner(runner)
            removed += 1
        LOGGER.info("Removed %d runner(s)", removed)
        return removed

    def suspend_all(self, extra_groups: Iterable[int] = ()) -> SuspendedSet:
        """Freeze every running runner, plus any extra process groups, as one batch."""
        frozen: dict[int, int] = {}
        for runner in self.running():
            if runner.pid is None:
                continue
            self.lifecycle.suspend(runner)
            frozen[runner.index] = runner.pid
        extras = frozenset(extra_groups) - frozenset(frozen.values())
        for pgid in extras:
            signal_group(pgid, signal.SIGSTOP)
        LOGGER.info(
            "Suspended %d runner(s) and %d workload process group(s)", len(frozen), len(extras)
        )
        return SuspendedSet(runners=frozen, extra_groups=extras)

    def resume_all(self, suspended: SuspendedSet) -> None:
        for index, pgid in suspended.runners.items():
            runner = self._runners.get(index)
            if runner is not None and runner.pid == pgid:
                self.lifecycle.resume(runner)
            else:
                signal_group(pgid, signal.SIGCONT)
        for pgid in suspended.extra_groups:
            signal_group(pgid, signal.SIGCONT)
        LOGGER.info("Resumed %d process group(s)", len(suspended.pgids))

    def session(self, target_count: int, token: str) -> contextlib.AbstractContextManager[list[Runner]]:
        return _PoolContext(self, target_count, token)

    def _create(self, index: int, batch: PortBatch, token: str) -> Runner:
        while True:
            port = batch.next_port()
            LOGGER.info("Creating runner #%d in %s on port %d", index, self._config.workspace_for(index), port)
            runner = self.lifecycle.provision(index, port)
            self.provisioned += 1
            try:
                self.lifecycle.register(runner, self._config.controller_url, token)
            except Exception:
                self.lifecycle.teardown(runner)
                raise
            try:
                self.lifecycle.start(runner)
            except OSError as exc:
                runner.transition(RunnerState.FAILED)
                self.lifecycle.teardown(runner)
                raise RunnerStartError(f"runner #{index} could not be launched: {exc}") from exc
            result = self.lifecycle.confirm_started(runner)
            if result.ok:
                self._runners[index] = runner
                LOGGER.info("Runner #%d is started. Logs in %s", index, runner.log_path)
                return runner

            self._discard(runner)
            if result is StartResult.PORT_CONFLICT:
                LOGGER.warning("Retrying runner #%d on the next candidate port", index)
                continue
            raise RunnerStartError(f"runner #{index} exited during startup; see {runner.log_path}")

    def _discard(self, runner: Runner) -> None:
        self.lifecycle.stop(runner)
        runner.transition(RunnerState.FAILED)
        self.lifecycle.unregister(runner)
        self.lifecycle.teardown(runner)

    def _teardown_runner(self, runner: Runner) -> None:
        LOGGER.info("Stopping runner #%d on port %d", runner.index, runner.port)
        try:
            if runner.state is RunnerState.SUSPENDED:
                self.lifecycle.resume(runner)
            self.lifecycle.unregister(runner)
            self.lifecycle.stop(runner)
        except OSError as exc:
            LOGGER.warning("Stopping runner #%d failed: %s", runner.index, exc)
        self.lifecycle.teardown(runner)


class _PoolContext(contextlib.AbstractContextManager):
    def __init__(self, pool: RunnerPool, target_count: int, token: str) -> None:
        self._pool = pool
        self._target_count = target_count
        self._token = token

    def __enter__(self) -> list[Runner]:
        self._pool.ensure(self._target_count, self._token)
        return self._pool.select(self._target_count)

    def __exit__(self, exc_type, exc, tb) -> None:
        self._pool.teardown_all()


__all__ = ["RunnerPool", "SuspendedSet"]
