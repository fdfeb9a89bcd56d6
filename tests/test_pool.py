from __future__ import annotations

import signal
import socket

import pytest

from runner_fleet.errors import PortsExhausted
from runner_fleet.lifecycle import RunnerState
from runner_fleet.pool import RunnerPool
from runner_fleet.ports import PortAllocator


@pytest.fixture
def pool(fleet_config):
    pool = RunnerPool(fleet_config)
    yield pool
    pool.teardown_all()


def test_ensure_is_idempotent(pool):
    created = pool.ensure(2, "token")
    assert [runner.index for runner in created] == [1, 2]
    assert pool.provisioned == 2

    assert pool.ensure(2, "token") == []
    assert pool.provisioned == 2
    assert all(runner.state is RunnerState.RUNNING for runner in pool)


def test_ensure_scales_up_without_touching_existing_runners(pool):
    first = {runner.index: (runner.port, runner.pid) for runner in pool.ensure(2, "token")}
    created = pool.ensure(3, "token")

    assert [runner.index for runner in created] == [3]
    assert {runner.index: (runner.port, runner.pid) for runner in pool.select(2)} == first
    ports = [runner.port for runner in pool]
    assert len(ports) == len(set(ports))


def test_ensure_rejects_counts_beyond_the_pool(pool, fleet_config):
    with pytest.raises(ValueError):
        pool.ensure(0, "token")
    with pytest.raises(ValueError):
        pool.ensure(fleet_config.max_runners + 1, "token")


@pytest.mark.parametrize("listening", [False, True], ids=["bound", "listening"])
def test_port_conflict_moves_on_to_the_next_port(fleet_config, listening):
    allocator = PortAllocator(fleet_config.port_start, fleet_config.port_end, probe=lambda port: True)
    pool = RunnerPool(fleet_config, allocator=allocator)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", fleet_config.port_start))
        if listening:
            blocker.listen(4)
        try:
            (runner,) = pool.ensure(1, "token")
            assert runner.port == fleet_config.port_start + 1
            assert runner.state is RunnerState.RUNNING
            assert pool.provisioned == 2
        finally:
            pool.teardown_all()


def test_resume_targets_exactly_the_suspended_groups(pool, monkeypatch):
    pool.ensure(2, "token")
    with monkeypatch.context() as patch:
        sent = []
        patch.setattr("os.killpg", lambda pgid, signum: sent.append((pgid, signum)))

        suspended = pool.suspend_all(extra_groups={777001})
        assert all(runner.state is RunnerState.SUSPENDED for runner in pool.select(2))

        (newcomer,) = pool.ensure(3, "token")
        pool.resume_all(suspended)

    stopped = {pgid for pgid, signum in sent if signum == signal.SIGSTOP}
    resumed = {pgid for pgid, signum in sent if signum == signal.SIGCONT}
    assert stopped == resumed == set(suspended.pgids)
    assert newcomer.pid not in resumed
    assert 777001 in suspended.extra_groups
    assert all(runner.state is RunnerState.RUNNING for runner in pool)


def test_shrink_removes_the_highest_indices(pool, fleet_config):
    pool.ensure(3, "token")
    assert pool.shrink(1) == [3, 2]
    assert [runner.index for runner in pool] == [1]
    assert not fleet_config.workspace_for(3).exists()


def test_teardown_all_on_empty_pool_is_safe(fleet_config):
    assert RunnerPool(fleet_config).teardown_all() == 0


def test_fresh_pool_adopts_and_stops_an_existing_fleet(pool, fleet_config):
    started = pool.ensure(2, "token")

    other = RunnerPool(fleet_config)
    assert other.highest_index() == 2
    assert other.teardown_all() == 2

    for runner in started:
        assert runner.process.wait(timeout=5) is not None
        assert not runner.workspace.exists()


def test_session_tears_the_fleet_down_on_exit(fleet_config):
    pool = RunnerPool(fleet_config)
    with pool.session(2, "token") as runners:
        assert [runner.index for runner in runners] == [1, 2]
        assert all(runner.state is RunnerState.RUNNING for runner in runners)

    assert len(pool) == 0
    assert not fleet_config.workspace_for(1).exists()


def test_running_out_of_ports_keeps_the_runners_already_created(fleet_config):
    usable = {fleet_config.port_start, fleet_config.port_start + 1}
    allocator = PortAllocator(fleet_config.port_start, fleet_config.port_end, probe=usable.__contains__)
    pool = RunnerPool(fleet_config, allocator=allocator)
    try:
        with pytest.raises(PortsExhausted):
            pool.ensure(3, "token")

        assert len(pool) == 2
        assert [runner.port for runner in pool] == sorted(usable)
        assert all(runner.state is RunnerState.RUNNING for runner in pool)
    finally:
        assert pool.teardown_all() == 2

    assert len(pool) == 0
    for index in (1, 2, 3):
        assert not fleet_config.workspace_for(index).exists()
