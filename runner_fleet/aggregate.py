"""Post-run analysis of one scenario directory.

Reads the per-runner execution logs and ``resource_usage.log`` and reduces them
to the text report and CSV table stored next to the raw files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pandas as pd

from .workload import BASELINE_INVOCATION, ExecutionRecord

LOGGER = logging.getLogger("runner_fleet.aggregate")

REPORT_NAME = "summary_report.txt"
RUNNER_TABLE_NAME = "runner_summary.csv"
RECORD_COLUMNS = ["runner_id", "invocation", "start", "end", "runtime", "exit_code"]


def slowdown_percent(runtime: float, baseline: float) -> float:
    """Relative slowdown of ``runtime`` against ``baseline`` in percent."""
    if baseline <= 0:
        raise ValueError(f"baseline runtime must be > 0, got {baseline}")
    return (runtime / baseline - 1.0) * 100.0


@dataclass(frozen=True)
class ResourceStats:
    avg_cpu_percent: float
    peak_cpu_percent: float
    avg_memory_mb: float
    peak_memory_mb: float


@dataclass
class Summary:
    runner_count: int
    executions: int
    failures: int
    average_runtime: float | None = None
    fastest: tuple[int, float] | None = None
    slowest: tuple[int, float] | None = None
    baseline_runner: int | None = None
    baseline_runtime: float | None = None
    average_slowdown: float | None = None
    runner_slowdowns: dict[int, float] = field(default_factory=dict)
    resources: ResourceStats | None = None

    def to_text(self, title: str = "", generated_at: datetime | None = None) -> str:
        lines = []
        if title:
            lines.append(f"Scenario: {title}")
        lines.append(f"Date: {(generated_at or datetime.now()):%Y-%m-%d %H:%M:%S}")
        lines.append(f"Number of Runners: {self.runner_count}")
        lines.append(f"Executions: {self.executions} ({self.failures} failed)")
        lines.append("")

        if self.baseline_runtime is not None:
            lines.append(
                f"Baseline Runner (Runner #{self.baseline_runner}): {self.baseline_runtime:.4f} seconds"
            )
        if self.average_runtime is None:
            lines.append("No completed executions to analyze.")
        else:
            if self.fastest is not None:
                lines.append(f"Fastest Runner: #{self.fastest[0]} ({self.fastest[1]:.4f} seconds)")
            if self.slowest is not None:
                lines.append(f"Slowest Runner: #{self.slowest[0]} ({self.slowest[1]:.4f} seconds)")
            lines.append(f"Average Runtime: {self.average_runtime:.4f} seconds")
        if self.average_slowdown is not None:
            lines.append(f"Average Slowdown: {self.average_slowdown:.2f}%")
            lines.append("")
            lines.append("Individual Runner Performance:")
            for runner_id, slowdown in sorted(self.runner_slowdowns.items()):
                lines.append(f"Runner #{runner_id}: {slowdown:.2f}% slower than baseline")

        if self.resources is not None:
            lines.append("")
            lines.append("System Resource Statistics:")
            lines.append(f"Average CPU Usage: {self.resources.avg_cpu_percent:.2f}%")
            lines.append(f"Peak CPU Usage: {self.resources.peak_cpu_percent:.2f}%")
            lines.append(f"Average Memory Usage: {self.resources.avg_memory_mb:.2f} MB")
            lines.append(f"Peak Memory Usage: {self.resources.peak_memory_mb:.2f} MB")
        return "\n".join(lines) + "\n"


class Aggregator:
    """Summarises the execution records and resource samples of one scenario.

    When the directory holds a ``baseline`` invocation its runtime is the
    reference for slowdowns and the record itself is left out of the cross-runner
    statistics. Otherwise ``baseline_runner`` designates a runner whose first
    record is the reference; that runner is then excluded entirely.
    """

    def __init__(self, directory: Path, baseline_runner: int | None = None) -> None:
        self.directory = directory
        self.baseline_runner = baseline_runner

    def load_records(self) -> pd.DataFrame:
        rows = []
        for path in sorted(self.directory.glob("runner_*_metrics.log")):
            with open(path, encoding="utf-8") as handle:
                for number, line in enumerate(handle, start=1):
                    if not line.strip():
                        continue
                    try:
                        record = ExecutionRecord.from_line(line)
                    except ValueError as exc:
                        LOGGER.warning("Skipping %s line %d: %s", path.name, number, exc)
                        continue
                    rows.append(
                        {
                            "runner_id": record.runner_id,
                            "invocation": record.invocation,
                            "start": record.start,
                            "end": record.end,
                            "runtime": record.duration,
                            "exit_code": record.exit_code,
                        }
                    )
        df = pd.DataFrame(rows, columns=RECORD_COLUMNS)
        if df.empty:
            return df
        df = df.sort_values(["runner_id", "start"], ignore_index=True)
        df["running_average"] = df.groupby("runner_id")["runtime"].transform(
            lambda series: series.expanding().mean()
        )
        return df

    def per_runner(self, records: pd.DataFrame | None = None) -> pd.DataFrame:
        df = self.load_records() if records is None else records
        comparable, baseline = self._split_baseline(df)
        if comparable.empty:
            return pd.DataFrame(
                columns=["runner_id", "executions", "failures", "total_runtime", "average_runtime"]
            )
        table = (
            comparable.groupby("runner_id")
            .agg(
                executions=("runtime", "size"),
                failures=("exit_code", lambda codes: int((codes != 0).sum())),
                total_runtime=("runtime", "sum"),
                average_runtime=("runtime", "mean"),
            )
            .reset_index()
        )
        if baseline is not None:
            table["slowdown_percent"] = table["average_runtime"].map(
                lambda runtime: slowdown_percent(runtime, baseline[1])
            )
        return table

    def summarize(self) -> Summary:
        df = self.load_records()
        if df.empty:
            LOGGER.warning("No execution records found in %s", self.directory)
            return Summary(runner_count=0, executions=0, failures=0, resources=self.resource_stats())

        comparable, baseline = self._split_baseline(df)
        table = self.per_runner(df)
        summary = Summary(
            runner_count=int(df["runner_id"].nunique()),
            executions=len(df),
            failures=int((df["exit_code"] != 0).sum()),
            resources=self.resource_stats(),
        )
        if not comparable.empty:
            summary.average_runtime = float(comparable["runtime"].mean())
            fastest = table.loc[table["average_runtime"].idxmin()]
            slowest = table.loc[table["average_runtime"].idxmax()]
            summary.fastest = (int(fastest["runner_id"]), float(fastest["average_runtime"]))
            summary.slowest = (int(slowest["runner_id"]), float(slowest["average_runtime"]))
        if baseline is not None:
            summary.baseline_runner, summary.baseline_runtime = baseline
            if summary.average_runtime is not None:
                summary.average_slowdown = slowdown_percent(summary.average_runtime, baseline[1])
                summary.runner_slowdowns = {
                    int(row.runner_id): float(row.slowdown_percent) for row in table.itertuples()
                }
        return summary

    def resource_stats(self) -> ResourceStats | None:
        path = self.directory / "resource_usage.log"
        if not path.is_file():
            return None
        try:
            df = pd.read_csv(path)
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
            LOGGER.warning("Could not read %s: %s", path, exc)
            return None
        if df.empty or not {"cpu_percent", "memory_kb"} <= set(df.columns):
            return None
        cpu = pd.to_numeric(df["cpu_percent"], errors="coerce").dropna()
        memory_mb = pd.to_numeric(df["memory_kb"], errors="coerce").dropna() / 1024
        if cpu.empty or memory_mb.empty:
            return None
        return ResourceStats(
            avg_cpu_percent=float(cpu.mean()),
            peak_cpu_percent=float(cpu.max()),
            avg_memory_mb=float(memory_mb.mean()),
            peak_memory_mb=float(memory_mb.max()),
        )

    def write_report(self, title: str = "") -> Summary:
        summary = self.summarize()
        report_path = self.directory / REPORT_NAME
        report_path.write_text(summary.to_text(title), encoding="utf-8")
        table_path = self.directory / RUNNER_TABLE_NAME
        self.per_runner().to_csv(table_path, index=False)
        LOGGER.info("Summary report saved to %s", report_path)
        return summary

    def _split_baseline(self, df: pd.DataFrame) -> tuple[pd.DataFrame, tuple[int, float] | None]:
        """Separate the reference execution from the records compared against it."""
        if df.empty:
            return df, None
        marked = df[df["invocation"] == BASELINE_INVOCATION]
        if not marked.empty:
            row = marked.iloc[0]
            baseline = (int(row["runner_id"]), float(row["runtime"]))
            return df[df["invocation"] != BASELINE_INVOCATION], self._usable(baseline)
        if self.baseline_runner is None:
            return df, None
        designated = df[df["runner_id"] == self.baseline_runner]
        if designated.empty:
            LOGGER.warning("Baseline runner #%d has no execution records", self.baseline_runner)
            return df, None
        baseline = (self.baseline_runner, float(designated.iloc[0]["runtime"]))
        return df[df["runner_id"] != self.baseline_runner], self._usable(baseline)

    @staticmethod
    def _usable(baseline: tuple[int, float]) -> tuple[int, float] | None:
        if baseline[1] <= 0:
            LOGGER.warning("Baseline runtime %.4f is not positive; slowdowns skipped", baseline[1])
            return None
        return baseline


__all__ = ["Aggregator", "ResourceStats", "Summary", "slowdown_percent"]
