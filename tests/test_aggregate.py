from __future__ import annotations

import pandas as pd
import pytest

from runner_fleet.aggregate import Aggregator, slowdown_percent
from runner_fleet.workload import ExecutionRecord


def write_records(directory, *records):
    directory.mkdir(parents=True, exist_ok=True)
    for record in records:
        with open(directory / f"runner_{record.runner_id}_metrics.log", "a", encoding="utf-8") as handle:
            handle.write(record.to_line() + "\n")


def test_slowdown_percent():
    assert f"{slowdown_percent(12.5, 10.0):.2f}" == "25.00"
    assert f"{slowdown_percent(10.0, 10.0):.2f}" == "0.00"


@pytest.mark.parametrize("baseline", [0.0, -1.0])
def test_slowdown_needs_a_positive_baseline(baseline):
    with pytest.raises(ValueError):
        slowdown_percent(5.0, baseline)


def test_noisy_neighbor_summary(tmp_path):
    write_records(
        tmp_path,
        ExecutionRecord(1, "baseline", 0.0, 10.0, 10.0, 0),
        ExecutionRecord(1, "contention", 20.0, 30.0, 10.0, 0),
        ExecutionRecord(2, "contention", 20.0, 32.5, 12.5, 0),
        ExecutionRecord(3, "contention", 20.0, 35.0, 15.0, 1),
    )
    summary = Aggregator(tmp_path).summarize()

    assert summary.runner_count == 3
    assert summary.executions == 4
    assert summary.failures == 1
    assert summary.baseline_runner == 1
    assert summary.baseline_runtime == 10.0
    assert summary.average_runtime == pytest.approx(12.5)
    assert summary.average_slowdown == pytest.approx(25.0)
    assert summary.fastest == (1, 10.0)
    assert summary.slowest == (3, 15.0)
    assert summary.runner_slowdowns[1] == pytest.approx(0.0)
    assert summary.runner_slowdowns[2] == pytest.approx(25.0)


def test_designated_baseline_runner_is_excluded(tmp_path):
    write_records(
        tmp_path,
        ExecutionRecord(1, "run_1", 0.0, 8.0, 8.0, 0),
        ExecutionRecord(2, "run_1", 0.0, 10.0, 10.0, 0),
        ExecutionRecord(3, "run_1", 0.0, 12.0, 12.0, 0),
    )
    summary = Aggregator(tmp_path, baseline_runner=1).summarize()
    assert summary.baseline_runtime == 8.0
    assert summary.average_runtime == pytest.approx(11.0)
    assert summary.fastest == (2, 10.0)
    assert 1 not in summary.runner_slowdowns


def test_load_records_skips_bad_lines(tmp_path, caplog):
    write_records(tmp_path, ExecutionRecord(1, "run_1", 0.0, 2.0, 2.0, 0))
    with open(tmp_path / "runner_1_metrics.log", "a", encoding="utf-8") as handle:
        handle.write("not a record\n")
    write_records(tmp_path, ExecutionRecord(1, "run_2", 5.0, 9.0, 4.0, 0))

    df = Aggregator(tmp_path).load_records()
    assert list(df["invocation"]) == ["run_1", "run_2"]
    assert list(df["running_average"]) == [2.0, 3.0]
    assert "Skipping runner_1_metrics.log line 2" in caplog.text


def test_per_runner_table(tmp_path):
    write_records(
        tmp_path,
        ExecutionRecord(1, "run_1", 0.0, 2.0, 2.0, 0),
        ExecutionRecord(1, "run_2", 3.0, 7.0, 4.0, 0),
        ExecutionRecord(2, "run_1", 0.0, 5.0, 5.0, 2),
    )
    table = Aggregator(tmp_path).per_runner().set_index("runner_id")
    assert table.loc[1, "executions"] == 2
    assert table.loc[1, "total_runtime"] == pytest.approx(6.0)
    assert table.loc[1, "average_runtime"] == pytest.approx(3.0)
    assert table.loc[2, "failures"] == 1
    assert "slowdown_percent" not in table.columns


def test_write_report_with_resource_stats(tmp_path):
    write_records(
        tmp_path,
        ExecutionRecord(1, "run_1", 0.0, 2.0, 2.0, 0),
        ExecutionRecord(2, "run_1", 0.0, 4.0, 4.0, 0),
    )
    pd.DataFrame(
        {
            "timestamp": [1.0, 2.0, 3.0],
            "cpu_percent": [10.0, 50.0, 30.0],
            "memory_kb": [1024, 2048, 3072],
        }
    ).to_csv(tmp_path / "resource_usage.log", index=False)

    summary = Aggregator(tmp_path).write_report("baseline_20250101_000000")
    report = (tmp_path / "summary_report.txt").read_text(encoding="utf-8")

    assert "Average Runtime: 3.0000 seconds" in report
    assert "Peak CPU Usage: 50.00%" in report
    assert "Average Memory Usage: 2.00 MB" in report
    assert summary.resources.peak_memory_mb == pytest.approx(3.0)
    table = pd.read_csv(tmp_path / "runner_summary.csv")
    assert list(table["runner_id"]) == [1, 2]


def test_empty_directory_still_reports(tmp_path):
    summary = Aggregator(tmp_path).write_report()
    assert summary.executions == 0
    assert "No completed executions" in (tmp_path / "summary_report.txt").read_text(encoding="utf-8")
