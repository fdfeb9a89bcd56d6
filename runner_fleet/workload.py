from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from .config import RuntimeCommands
from .lifecycle import Runner, signal_group

LOGGER = logging.getLogger("runner_fleet.workload")

LAUNCH_FAILED_EXIT_CODE = 127
BASELINE_INVOCATION = "baseline"
CONTENTION_INVOCATION = "contention"


@dataclass(frozen=True)
class ExecutionRecord:
    """One workload invocation on one runner."""

    runner_id: int
    invocation: str
    start: float
    end: float
    duration: float
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_line(self) -> str:
        return (
            f"runner_id={self.runner_id},invocation={self.invocation},"
            f"start={self.start:.6f},end={self.end:.6f},"
            f"runtime={self.duration:.3f},exit_code={self.exit_code}"
        )

    @classmethod
    def from_line(cls, line: str) -> "ExecutionRecord":
        fields = {}
        for part in line.strip().split(","):
            key, sep, value = part.partition("=")
            if not sep:
                raise ValueError(f"malformed execution record field {part!r}")
            fields[key.strip()] = value.strip()
        try:
            start = float(fields["start"])
            end = float(fields["end"])
            return cls(
                runner_id=int(fields["runner_id"]),
                invocation=fields.get("invocation") or fields.get("run") or "1",
                start=start,
                end=end,
                duration=float(fields.get("runtime", end - start)),
                exit_code=int(fields.get("exit_code", 0)),
            )
        except KeyError as exc:
            raise ValueError(f"execution record missing field {exc.args[0]!r}") from exc


class ExecutionRecorder:
    """Appends execution records to per-runner metric logs inside a scenario directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._records: list[ExecutionRecord] = []

    def metrics_path(self, runner_id: int) -> Path:
        return self.directory / f"runner_{runner_id}_metrics.log"

    def output_path(self, runner_id: int, invocation: str) -> Path:
        return self.directory / f"runner_{runner_id}_{invocation}_output.log"

    def append(self, record: ExecutionRecord) -> None:
        with self._lock:
            with open(self.metrics_path(record.runner_id), "a", encoding="utf-8") as handle:
                handle.write(record.to_line() + "\n")
            self._records.append(record)

    def records(self) -> list[ExecutionRecord]:
        with self._lock:
            return list(self._records)

    def for_runner(self, runner_id: int) -> list[ExecutionRecord]:
        return [record for record in self.records() if record.runner_id == runner_id]


class WorkloadExecutor:
    """Runs the job description on a runner and records how long it took.

    Launches can be held: while held, no new workload process is spawned, so the
    set of in-flight process groups returned by :meth:`hold_launches` is complete.
    """

    def __init__(
        self,
        runtime: RuntimeCommands,
        job: Path,
        recorder: ExecutionRecorder,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._runtime = runtime
        self._job = job
        self.recorder = recorder
        self._clock = clock
        self._launch_lock = threading.Lock()
        self._launch_gate = threading.Event()
        self._launch_gate.set()
        self._active: dict[int, dict[int, subprocess.Popen]] = {}

    @property
    def job(self) -> Path:
        return self._job

    def run(
        self,
        runner: Runner,
        invocation: str,
        echo: bool = False,
        not_after: float | None = None,
    ) -> ExecutionRecord | None:
        """Execute once; returns None when launch would start at or after ``not_after``."""
        command = self._runtime.command(runner.workspace, self._runtime.run_args, job=str(self._job))
        output_path = self.recorder.output_path(runner.index, invocation)
        env = os.environ.copy()
        env[self._runtime.port_env] = str(runner.port)

        with open(output_path, "w", encoding="utf-8") as output:
            while True:
                self._launch_gate.wait()
                with self._launch_lock:
                    if not self._launch_gate.is_set():
                        continue
                    if not_after is not None and self._clock() >= not_after:
                        output_path.unlink(missing_ok=True)
                        return None
                    LOGGER.info("Runner #%d (%s) starting workload %s", runner.index, invocation, self._job)
                    start = self._clock()
                    try:
                        proc = subprocess.Popen(
                            command,
                            cwd=runner.workspace,
                            env=env,
                            stdin=subprocess.DEVNULL,
                            stdout=subprocess.PIPE if echo else output,
                            stderr=subprocess.STDOUT,
                            encoding="utf-8",
                            errors="replace",
                            start_new_session=True,
                        )
                    except OSError as exc:
                        proc = None
                        output.write(f"[launcher] failed to start {' '.join(command)}: {exc}\n")
                        LOGGER.error("Runner #%d could not launch workload: %s", runner.index, exc)
                    else:
                        self._active.setdefault(runner.index, {})[proc.pid] = proc
                    break

            if proc is None:
                exit_code = LAUNCH_FAILED_EXIT_CODE
            else:
                try:
                    if echo:
                        with proc.stdout:
                            for line in proc.stdout:
                                output.write(line)
                                LOGGER.info("[runner %d] %s", runner.index, line.rstrip())
                finally:
                    exit_code = proc.wait()
                    with self._launch_lock:
                        self._active.get(runner.index, {}).pop(proc.pid, None)
            end = self._clock()

        record = ExecutionRecord(
            runner_id=runner.index,
            invocation=invocation,
            start=start,
            end=end,
            duration=end - start,
            exit_code=exit_code,
        )
        self.recorder.append(record)
        if record.ok:
            LOGGER.info("Runner #%d (%s) completed in %.3fs", runner.index, invocation, record.duration)
        else:
            LOGGER.error(
                "Runner #%d had an error in %s (exit code %d after %.3fs)",
                runner.index,
                invocation,
                exit_code,
                record.duration,
            )
        return record

    def hold_launches(self, runner_ids: Iterable[int] | None = None) -> set[int]:
        """Block new launches and return the process groups currently running."""
        with self._launch_lock:
            self._launch_gate.clear()
            return self._groups(runner_ids)

    def release_launches(self) -> None:
        self._launch_gate.set()

    def active_groups(self, runner_ids: Iterable[int] | None = None) -> set[int]:
        with self._launch_lock:
            return self._groups(runner_ids)

    def kill(self, runner_ids: Iterable[int] | None = None) -> int:
        """SIGKILL in-flight workload process groups; returns how many were signalled."""
        killed = 0
        for pgid in self.active_groups(runner_ids):
            signal_group(pgid, signal.SIGCONT)
            if signal_group(pgid, signal.SIGKILL):
                killed += 1
        return killed

    def _groups(self, runner_ids: Iterable[int] | None) -> set[int]:
        wanted = None if runner_ids is None else set(runner_ids)
        return {
            pid
            for index, procs in self._active.items()
            if wanted is None or index in wanted
            for pid in procs
        }


__all__ = [
    "BASELINE_INVOCATION",
    "CONTENTION_INVOCATION",
    "ExecutionRecord",
    "ExecutionRecorder",
    "WorkloadExecutor",
]
