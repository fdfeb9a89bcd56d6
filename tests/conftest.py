from __future__ import annotations

import socket
import sys
import textwrap
from pathlib import Path

import pytest

from runner_fleet.config import FleetConfig, RuntimeCommands, TemplateSpec
from runner_fleet.lifecycle import Runner, RunnerState
from runner_fleet.ports import is_port_free

FAKE_RUNTIME = textwrap.dedent(
    r"""
    import os
    import socket
    import sys
    import time

    args = sys.argv[1:]
    port = int(os.environ.get("OPENTAP_RUNNER_SERVER_PORT", "0"))

    if args[:2] == ["runner", "register"]:
        with open("registered", "w") as handle:
            handle.write(" ".join(args[2:]))
        sys.exit(0)

    if args[:2] == ["runner", "unregister"]:
        answer = sys.stdin.readline().strip()
        with open(os.path.join(os.path.dirname(os.getcwd()), "unregistered_%d" % port), "w") as handle:
            handle.write(answer)
        sys.exit(0)

    if args[:2] == ["runner", "start"]:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            server.bind(("127.0.0.1", port))
        except OSError as exc:
            print("Failed to bind: address already in use (%s)" % exc, flush=True)
            sys.exit(1)
        server.listen(16)
        print("Runner listening on %d" % port, flush=True)
        while True:
            conn, _ = server.accept()
            conn.close()

    if args[:2] == ["runner", "crash"]:
        print("fatal: licence check failed", flush=True)
        sys.exit(4)

    if args[:1] == ["run"]:
        job = args[1]
        with open(job) as handle:
            content = handle.read().strip()
        if content == "fail":
            print("job failed", flush=True)
            sys.exit(3)
        if content == "garbled":
            sys.stdout.buffer.write(b"bad \xff\xfe bytes\n")
            sys.stdout.flush()
            sys.exit(0)
        print("running %s" % job, flush=True)
        time.sleep(float(content or "0.1"))
        print("done", flush=True)
        sys.exit(0)

    print("unknown command %r" % (args,), flush=True)
    sys.exit(2)
    """
)


@pytest.fixture
def template_source(tmp_path: Path) -> Path:
    source = tmp_path / "runtime"
    source.mkdir()
    (source / "tap").write_text(FAKE_RUNTIME, encoding="utf-8")
    return source


@pytest.fixture
def port_range() -> tuple[int, int]:
    """A run of 16 currently free ports."""
    for _ in range(50):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            start = sock.getsockname()[1]
        start = min(start, 65535 - 32)
        if all(is_port_free(port) for port in range(start, start + 16)):
            return start, start + 15
    pytest.skip("no run of free ports available")


@pytest.fixture
def runtime() -> RuntimeCommands:
    return RuntimeCommands(
        launcher=(sys.executable,),
        settle_seconds=0.0,
        startup_grace_seconds=3.0,
        stop_timeout=3.0,
        register_timeout=10.0,
        unregister_timeout=10.0,
    )


@pytest.fixture
def fleet_config(tmp_path: Path, template_source: Path, port_range, runtime) -> FleetConfig:
    return FleetConfig(
        port_start=port_range[0],
        port_end=port_range[1],
        max_runners=8,
        controller_url="https://controller.example.test",
        workspace_root=tmp_path / "workspaces",
        metrics_root=tmp_path / "metrics",
        runtime=runtime,
        template=TemplateSpec(archive_url=None, source_dir=template_source),
        required_commands=(),
    )


@pytest.fixture
def job_file(tmp_path: Path) -> Path:
    job = tmp_path / "plan.TapPlan"
    job.write_text("0.2", encoding="utf-8")
    return job


@pytest.fixture
def make_runner(tmp_path: Path):
    def factory(index: int, pid: int | None = None, state: RunnerState = RunnerState.RUNNING) -> Runner:
        return Runner(index=index, port=20000 + index, workspace=tmp_path / f"runner_{index}", state=state, pid=pid)

    return factory
