from __future__ import annotations

import json
import os
import time

import pytest

from runner_fleet import main as cli
from runner_fleet.workload import ExecutionRecord


def common_args(tmp_path):
    return ["--metrics-dir", str(tmp_path / "metrics"), "--workspace-root", str(tmp_path / "ws")]


def test_environment_supplies_defaults(monkeypatch):
    monkeypatch.setenv("FLEET_PORT_START", "21000")
    monkeypatch.setenv("FLEET_MAX_RUNNERS", "not-a-number")
    args = cli.parse_args(["stop"])
    assert args.port_start == 21000
    assert args.max_runners == 100


def test_runtime_config_file_overrides_commands(tmp_path):
    config_path = tmp_path / "runtime.json"
    config_path.write_text(
        json.dumps(
            {
                "runtime": {"executable": "bin/tap", "settle_seconds": 1},
                "template": {"install_commands": [["package", "install", "Python"]]},
            }
        ),
        encoding="utf-8",
    )
    args = cli.parse_args(["--runtime-config", str(config_path), "--required-commands", "", "stop"])
    config = cli.build_config(args)
    assert config.runtime.executable == "bin/tap"
    assert config.runtime.settle_seconds == 1
    assert config.template.install_commands == (("package", "install", "Python"),)
    assert config.required_commands == ()


def test_invalid_count_is_an_argument_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([*common_args(tmp_path), "baseline", "0", "5", str(tmp_path / "job"), "token"])
    assert excinfo.value.code == 2


def test_noisy_needs_two_runners(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([*common_args(tmp_path), "noisy", "1", str(tmp_path / "job"), "token"])
    assert excinfo.value.code == 2


def test_active_lab_limits_are_argument_errors(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([*common_args(tmp_path), "active-lab", "5", "3", str(tmp_path / "job"), "token"])
    assert excinfo.value.code == 2


def test_missing_job_exits_with_one(tmp_path):
    code = cli.main([*common_args(tmp_path), "waves", "3", str(tmp_path / "missing.TapPlan"), "token"])
    assert code == 1


def test_missing_prerequisite_exits_with_one(tmp_path, job_file):
    code = cli.main(
        [
            *common_args(tmp_path),
            "--required-commands",
            "surely-not-installed-anywhere",
            "baseline",
            "2",
            "5",
            str(job_file),
            "token",
        ]
    )
    assert code == 1
    assert not (tmp_path / "metrics").exists()


def test_summarize_rewrites_the_report(tmp_path, capsys):
    session = tmp_path / "metrics" / "noisy_neighbor_20250101_000000"
    session.mkdir(parents=True)
    for record in (
        ExecutionRecord(1, "baseline", 0.0, 10.0, 10.0, 0),
        ExecutionRecord(2, "contention", 11.0, 23.5, 12.5, 0),
    ):
        with open(session / f"runner_{record.runner_id}_metrics.log", "a", encoding="utf-8") as handle:
            handle.write(record.to_line() + "\n")

    assert cli.main(["summarize", str(session)]) == 0
    out = capsys.readouterr().out
    assert "Average Slowdown: 25.00%" in out
    assert (session / "summary_report.txt").is_file()


def test_summarize_unknown_directory(tmp_path):
    assert cli.main(["summarize", str(tmp_path / "nope")]) == 1


def test_cleanup_prunes_old_sessions(tmp_path):
    old = tmp_path / "metrics" / "baseline_20200101_000000"
    old.mkdir(parents=True)
    past = time.time() - 30 * 86400
    os.utime(old, (past, past))

    assert cli.main([*common_args(tmp_path), "cleanup", "7"]) == 0
    assert not old.exists()


def test_stop_with_nothing_running(tmp_path):
    assert cli.main([*common_args(tmp_path), "--required-commands", "", "stop"]) == 0
