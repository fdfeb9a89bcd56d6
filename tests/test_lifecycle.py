from __future__ import annotations

import dataclasses
import os
import signal
import socket

import pytest

from runner_fleet.errors import InvalidTransition, ProvisionError, RegistrationError
from runner_fleet.lifecycle import (
    PID_FILE,
    PORT_FILE,
    READY_MARKER,
    RunnerLifecycle,
    RunnerState,
    StartResult,
    TemplateCache,
    owns_listener,
)


@pytest.fixture
def lifecycle(fleet_config):
    return RunnerLifecycle(fleet_config)


def test_state_machine_walks_the_happy_path(make_runner):
    runner = make_runner(1, state=RunnerState.PROVISIONING)
    for state in (
        RunnerState.REGISTERING,
        RunnerState.STARTING,
        RunnerState.RUNNING,
        RunnerState.SUSPENDED,
        RunnerState.RUNNING,
        RunnerState.UNREGISTERING,
        RunnerState.TERMINATED,
    ):
        runner.transition(state)
    assert runner.state is RunnerState.TERMINATED


def test_illegal_transition_raises(make_runner):
    runner = make_runner(1, state=RunnerState.PROVISIONING)
    with pytest.raises(InvalidTransition):
        runner.transition(RunnerState.RUNNING)


def test_any_live_state_may_fail_but_terminal_states_are_final(make_runner):
    runner = make_runner(1, state=RunnerState.STARTING)
    runner.transition(RunnerState.FAILED)
    assert runner.state is RunnerState.FAILED
    with pytest.raises(InvalidTransition):
        runner.transition(RunnerState.FAILED)


def test_template_is_built_once(fleet_config, template_source):
    cache = TemplateCache(fleet_config.template_dir, fleet_config.template, fleet_config.runtime)
    cache.ensure()
    assert (fleet_config.template_dir / READY_MARKER).is_file()

    (template_source / "added_later").write_text("x", encoding="utf-8")
    cache.ensure()
    assert not (fleet_config.template_dir / "added_later").exists()


def test_template_extra_files_are_copied(fleet_config, tmp_path):
    settings = tmp_path / "Bench.xml"
    settings.write_text("<Bench/>", encoding="utf-8")
    spec = dataclasses.replace(fleet_config.template, extra_files={str(settings): "Settings/Bench.xml"})
    cache = TemplateCache(fleet_config.template_dir, spec, fleet_config.runtime)
    cache.ensure()
    assert (fleet_config.template_dir / "Settings" / "Bench.xml").read_text(encoding="utf-8") == "<Bench/>"


def test_template_without_executable_is_a_provision_error(fleet_config, tmp_path):
    empty = tmp_path / "empty_runtime"
    empty.mkdir()
    spec = dataclasses.replace(fleet_config.template, source_dir=empty)
    cache = TemplateCache(fleet_config.template_dir, spec, fleet_config.runtime)
    with pytest.raises(ProvisionError):
        cache.ensure()
    assert not fleet_config.template_dir.exists()


def test_provision_clones_without_ready_marker(lifecycle, fleet_config):
    runner = lifecycle.provision(1, fleet_config.port_start)
    assert runner.workspace == fleet_config.workspace_for(1)
    assert (runner.workspace / "tap").is_file()
    assert not (runner.workspace / READY_MARKER).exists()
    assert (runner.workspace / PORT_FILE).read_text(encoding="utf-8") == str(fleet_config.port_start)


def test_register_failure_marks_runner_failed(fleet_config):
    runtime = dataclasses.replace(fleet_config.runtime, register_args=("runner", "crash"))
    lifecycle = RunnerLifecycle(dataclasses.replace(fleet_config, runtime=runtime))
    runner = lifecycle.provision(1, fleet_config.port_start)
    with pytest.raises(RegistrationError):
        lifecycle.register(runner, fleet_config.controller_url, "token")
    assert runner.state is RunnerState.FAILED


def test_full_start_and_stop_cycle(lifecycle, fleet_config):
    runner = lifecycle.provision(1, fleet_config.port_start)
    lifecycle.register(runner, fleet_config.controller_url, "secret-token")
    assert "secret-token" in (runner.workspace / "registered").read_text(encoding="utf-8")

    lifecycle.start(runner)
    try:
        assert (runner.workspace / PID_FILE).read_text(encoding="utf-8") == str(runner.pid)
        assert lifecycle.confirm_started(runner) is StartResult.READY
        assert runner.state is RunnerState.RUNNING
        assert lifecycle.is_alive(runner)
    finally:
        assert lifecycle.unregister(runner) is True
        lifecycle.stop(runner)
        lifecycle.teardown(runner)

    assert not lifecycle.is_alive(runner)
    assert not runner.workspace.exists()
    assert runner.state is RunnerState.TERMINATED
    reply = fleet_config.workspace_root / f"unregistered_{runner.port}"
    assert reply.read_text(encoding="utf-8") == fleet_config.runtime.unregister_reply

    lifecycle.teardown(runner)


@pytest.mark.parametrize("listening", [False, True], ids=["bound", "listening"])
def test_confirm_reports_port_conflict(lifecycle, fleet_config, listening):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", fleet_config.port_start))
        if listening:
            blocker.listen(4)
        runner = lifecycle.provision(1, fleet_config.port_start)
        lifecycle.register(runner, fleet_config.controller_url, "token")
        lifecycle.start(runner)
        try:
            assert lifecycle.confirm_started(runner) is StartResult.PORT_CONFLICT
            assert runner.state is RunnerState.STARTING
        finally:
            lifecycle.stop(runner)
            lifecycle.teardown(runner)


def test_owns_listener_only_matches_the_listening_process(port_range):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", port_range[0]))
        server.listen(4)
        assert owns_listener(os.getpid(), port_range[0])
        assert not owns_listener(os.getpid(), port_range[0] + 1)


def test_confirm_reports_exit(fleet_config):
    runtime = dataclasses.replace(fleet_config.runtime, start_args=("runner", "crash"))
    lifecycle = RunnerLifecycle(dataclasses.replace(fleet_config, runtime=runtime))
    runner = lifecycle.provision(1, fleet_config.port_start)
    lifecycle.register(runner, fleet_config.controller_url, "token")
    lifecycle.start(runner)
    assert lifecycle.confirm_started(runner) is StartResult.EXITED
    lifecycle.teardown(runner)


def test_suspend_and_resume_signal_the_recorded_group(lifecycle, make_runner, monkeypatch):
    sent = []
    monkeypatch.setattr("os.killpg", lambda pgid, signum: sent.append((pgid, signum)))
    runner = make_runner(1, pid=4242)

    lifecycle.suspend(runner)
    assert runner.state is RunnerState.SUSPENDED
    lifecycle.resume(runner)
    assert runner.state is RunnerState.RUNNING
    assert sent == [(4242, signal.SIGSTOP), (4242, signal.SIGCONT)]


def test_unregister_is_best_effort_without_workspace(lifecycle, make_runner):
    runner = make_runner(3)
    assert lifecycle.unregister(runner) is False
    assert runner.state is RunnerState.UNREGISTERING


def test_adopt_reads_pid_and_port(lifecycle, fleet_config):
    workspace = fleet_config.workspace_for(2)
    workspace.mkdir(parents=True)
    (workspace / PORT_FILE).write_text("20155", encoding="utf-8")
    (workspace / PID_FILE).write_text("999999999", encoding="utf-8")

    runner = lifecycle.adopt(2)
    assert runner.port == 20155
    assert runner.pid == 999999999
    assert runner.state is RunnerState.FAILED
    assert lifecycle.adopt(3) is None
