from __future__ import annotations

import contextlib
import enum
import logging
import os
import shutil
import signal
import stat
import subprocess
import tempfile
import threading
import time
import urllib.error
import urllib.request
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

import psutil

from .config import FleetConfig, RuntimeCommands, TemplateSpec
from .errors import InvalidTransition, ProvisionError, RegistrationError

LOGGER = logging.getLogger("runner_fleet.lifecycle")

READY_MARKER = ".ready"
PID_FILE = "runner.pid"
PORT_FILE = "runner.port"
RUNNER_LOG = "runner.log"


class RunnerState(enum.Enum):
    PROVISIONING = "provisioning"
    REGISTERING = "registering"
    STARTING = "starting"
    RUNNING = "running"
    SUSPENDED = "suspended"
    UNREGISTERING = "unregistering"
    TERMINATED = "terminated"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunnerState.TERMINATED, RunnerState.FAILED)


_TRANSITIONS: dict[RunnerState, frozenset[RunnerState]] = {
    RunnerState.PROVISIONING: frozenset({RunnerState.REGISTERING}),
    RunnerState.REGISTERING: frozenset({RunnerState.STARTING}),
    RunnerState.STARTING: frozenset({RunnerState.RUNNING}),
    RunnerState.RUNNING: frozenset({RunnerState.SUSPENDED, RunnerState.UNREGISTERING}),
    RunnerState.SUSPENDED: frozenset({RunnerState.RUNNING, RunnerState.UNREGISTERING}),
    RunnerState.UNREGISTERING: frozenset({RunnerState.TERMINATED}),
    RunnerState.TERMINATED: frozenset(),
    RunnerState.FAILED: frozenset(),
}


class StartResult(enum.Enum):
    READY = "ready"
    UNCONFIRMED = "unconfirmed"
    PORT_CONFLICT = "port-conflict"
    EXITED = "exited"

    @property
    def ok(self) -> bool:
        return self in (StartResult.READY, StartResult.UNCONFIRMED)


@dataclass
class Runner:
    index: int
    port: int
    workspace: Path
    state: RunnerState = RunnerState.PROVISIONING
    pid: int | None = None
    process: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    @property
    def log_path(self) -> Path:
        return self.workspace / RUNNER_LOG

    def transition(self, new_state: RunnerState) -> None:
        if new_state is RunnerState.FAILED and not self.state.terminal:
            self.state = new_state
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"runner #{self.index}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.state = new_state


class TemplateCache:
    """Prebuilt runner workspace, built at most once per host and cloned per runner."""

    def __init__(self, directory: Path, spec: TemplateSpec, runtime: RuntimeCommands) -> None:
        self.directory = directory
        self._spec = spec
        self._runtime = runtime
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return (self.directory / READY_MARKER).is_file()

    def ensure(self) -> Path:
        with self._lock:
            if self.ready:
                LOGGER.info("Using cached runner template at %s", self.directory)
                return self.directory
            LOGGER.info("Creating fresh runner template in %s", self.directory)
            try:
                self._build()
            except ProvisionError:
                shutil.rmtree(self.directory, ignore_errors=True)
                raise
            (self.directory / READY_MARKER).touch()
            LOGGER.info("Runner template prepared")
            return self.directory

    def clone_into(self, workspace: Path) -> None:
        template = self.ensure()
        if workspace.exists():
            shutil.rmtree(workspace)
        try:
            shutil.copytree(
                template,
                workspace,
                symlinks=True,
                ignore=shutil.ignore_patterns(READY_MARKER),
            )
        except OSError as exc:
            raise ProvisionError(f"failed to clone template into {workspace}: {exc}") from exc

    def _build(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=True)
        self.directory.parent.mkdir(parents=True, exist_ok=True)
        spec = self._spec

        if spec.source_dir is not None:
            try:
                shutil.copytree(spec.source_dir, self.directory, symlinks=True)
            except OSError as exc:
                raise ProvisionError(f"failed to copy template source {spec.source_dir}: {exc}") from exc
        elif spec.archive_url:
            self.directory.mkdir(parents=True)
            self._download_and_extract(spec.archive_url)
        else:
            raise ProvisionError("template needs either a source directory or an archive URL")

        executable = self.directory / self._runtime.executable
        if not executable.exists():
            raise ProvisionError(f"runtime executable {executable} missing from template")
        executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        for argv in spec.install_commands:
            self._install(argv, required=True)
        for argv in spec.optional_install_commands:
            self._install(argv, required=False)

        for source, destination in spec.extra_files.items():
            target = self.directory / destination
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                shutil.copy2(source, target)
            except OSError as exc:
                raise ProvisionError(f"failed to copy {source} into template: {exc}") from exc

    def _download_and_extract(self, url: str) -> None:
        with tempfile.NamedTemporaryFile(suffix=".zip", delete=False) as tmp:
            archive = Path(tmp.name)
        try:
            LOGGER.info("Downloading runtime from %s", url)
            with urllib.request.urlopen(url, timeout=self._spec.download_timeout) as response:
                archive.write_bytes(response.read())
            with zipfile.ZipFile(archive) as bundle:
                bundle.extractall(self.directory)
        except (urllib.error.URLError, OSError, zipfile.BadZipFile) as exc:
            raise ProvisionError(f"failed to download runtime from {url}: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)

    def _install(self, argv: tuple[str, ...], required: bool) -> None:
        command = self._runtime.command(self.directory, argv)
        LOGGER.info("Template install step: %s", " ".join(argv))
        try:
            result = subprocess.run(
                command,
                cwd=self.directory,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                timeout=self._spec.download_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            if required:
                raise ProvisionError(f"install step {' '.join(argv)} failed: {exc}") from exc
            LOGGER.warning("Optional install step %s failed: %s", " ".join(argv), exc)
            return
        if result.returncode != 0:
            if required:
                raise ProvisionError(
                    f"install step {' '.join(argv)} exited with {result.returncode}: {result.stderr.strip()}"
                )
            LOGGER.warning("Optional install step %s exited with %d", " ".join(argv), result.returncode)


class RunnerLifecycle:
    """Drives single runners through provision, registration, start and teardown."""

    def __init__(self, config: FleetConfig, template: TemplateCache | None = None) -> None:
        self._config = config
        self._runtime = config.runtime
        self.template = template or TemplateCache(config.template_dir, config.template, config.runtime)

    def provision(self, index: int, port: int) -> Runner:
        workspace = self._config.workspace_for(index)
        runner = Runner(index=index, port=port, workspace=workspace)
        LOGGER.info("Cloning template into %s", workspace)
        try:
            self.template.clone_into(workspace)
        except ProvisionError:
            runner.transition(RunnerState.FAILED)
            raise
        (workspace / PORT_FILE).write_text(str(port), encoding="utf-8")
        return runner

    def register(self, runner: Runner, controller_url: str, token: str) -> None:
        runner.transition(RunnerState.REGISTERING)
        command = self._runtime.command(
            runner.workspace, self._runtime.register_args, url=controller_url, token=token
        )
        LOGGER.info("Registering runner #%d on port %d", runner.index, runner.port)
        try:
            result = subprocess.run(
                command,
                cwd=runner.workspace,
                env=self._env(runner),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                timeout=self._runtime.register_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            runner.transition(RunnerState.FAILED)
            raise RegistrationError(f"runner #{runner.index}: register failed: {exc}") from exc
        if result.returncode != 0:
            runner.transition(RunnerState.FAILED)
            raise RegistrationError(
                f"runner #{runner.index}: register exited with {result.returncode}: {result.stderr.strip()}"
            )

    def start(self, runner: Runner) -> None:
        runner.transition(RunnerState.STARTING)
        command = self._runtime.command(runner.workspace, self._runtime.start_args)
        LOGGER.info("Starting runner #%d on port %d", runner.index, runner.port)
        with open(runner.log_path, "w", encoding="utf-8") as log:
            runner.process = subprocess.Popen(
                command,
                cwd=runner.workspace,
                env=self._env(runner),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        runner.pid = runner.process.pid
        (runner.workspace / PID_FILE).write_text(str(runner.pid), encoding="utf-8")

    def confirm_started(self, runner: Runner, timeout: float | None = None) -> StartResult:
        """Poll the runner until it owns a listener on its port, conflicts, dies or the window ends."""
        timeout = self._runtime.startup_grace_seconds if timeout is None else timeout
        deadline = time.time() + timeout
        signature = self._runtime.conflict_signature.lower()
        while True:
            if self._log_contains(runner, signature):
                LOGGER.warning("Runner #%d reports port %d already in use", runner.index, runner.port)
                return StartResult.PORT_CONFLICT
            if not self.is_alive(runner):
                if self._log_contains(runner, signature):
                    return StartResult.PORT_CONFLICT
                LOGGER.error("Runner #%d exited during startup", runner.index)
                return StartResult.EXITED
            if runner.pid is not None and owns_listener(runner.pid, runner.port):
                runner.transition(RunnerState.RUNNING)
                return StartResult.READY
            if time.time() >= deadline:
                LOGGER.warning(
                    "Runner #%d not confirmed listening on port %d after %.1fs; assuming started",
                    runner.index,
                    runner.port,
                    timeout,
                )
                runner.transition(RunnerState.RUNNING)
                return StartResult.UNCONFIRMED
            time.sleep(min(0.2, max(deadline - time.time(), 0.01)))

    def is_alive(self, runner: Runner) -> bool:
        if runner.process is not None:
            return runner.process.poll() is None
        if runner.pid is None:
            return False
        # adopted runners are not our children; an unreaped zombie counts as gone
        try:
            return psutil.Process(runner.pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def suspend(self, runner: Runner) -> None:
        if runner.pid is None:
            LOGGER.warning("Runner #%d has no recorded process to suspend", runner.index)
            return
        signal_group(runner.pid, signal.SIGSTOP)
        runner.transition(RunnerState.SUSPENDED)

    def resume(self, runner: Runner) -> None:
        if runner.pid is None:
            return
        signal_group(runner.pid, signal.SIGCONT)
        if runner.state is RunnerState.SUSPENDED:
            runner.transition(RunnerState.RUNNING)

    def unregister(self, runner: Runner) -> bool:
        """Best-effort unregistration; answers the runtime's selection prompt."""
        if runner.state in (RunnerState.RUNNING, RunnerState.SUSPENDED):
            runner.transition(RunnerState.UNREGISTERING)
        executable = runner.workspace / self._runtime.executable
        if not executable.exists():
            LOGGER.warning("%s not found; skipping unregister of runner #%d", executable, runner.index)
            return False
        command = self._runtime.command(runner.workspace, self._runtime.unregister_args)
        LOGGER.info("Unregistering runner #%d on port %d", runner.index, runner.port)
        try:
            result = subprocess.run(
                command,
                cwd=runner.workspace,
                env=self._env(runner),
                input=f"{self._runtime.unregister_reply}\n",
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                timeout=self._runtime.unregister_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.warning("Unregister of runner #%d failed: %s", runner.index, exc)
            return False
        if result.returncode != 0:
            LOGGER.warning(
                "Unregister of runner #%d exited with %d: %s",
                runner.index,
                result.returncode,
                result.stderr.strip(),
            )
            return False
        if self._runtime.settle_seconds > 0:
            time.sleep(self._runtime.settle_seconds)
        return True

    def stop(self, runner: Runner) -> None:
        if runner.pid is None or not self.is_alive(runner):
            return
        LOGGER.info("Stopping runner #%d (pid %d)", runner.index, runner.pid)
        if runner.state is RunnerState.SUSPENDED:
            signal_group(runner.pid, signal.SIGCONT)
        signal_group(runner.pid, signal.SIGTERM)
        if not self._wait_exit(runner, self._runtime.stop_timeout):
            LOGGER.warning("Runner #%d ignored SIGTERM; killing", runner.index)
            signal_group(runner.pid, signal.SIGKILL)
            self._wait_exit(runner, self._runtime.stop_timeout)

    def teardown(self, runner: Runner) -> None:
        if runner.workspace.exists():
            shutil.rmtree(runner.workspace, ignore_errors=True)
            LOGGER.info("Removed %s", runner.workspace)
        if runner.state is RunnerState.UNREGISTERING:
            runner.transition(RunnerState.TERMINATED)
        elif not runner.state.terminal:
            runner.state = RunnerState.TERMINATED

    def adopt(self, index: int) -> Runner | None:
        """Rebuild a runner handle from a workspace left by an earlier controller."""
        workspace = self._config.workspace_for(index)
        if not workspace.is_dir():
            return None
        port = _read_int(workspace / PORT_FILE)
        if port is None:
            port = self._config.port_start + index - 1
        runner = Runner(index=index, port=port, workspace=workspace, pid=_read_int(workspace / PID_FILE))
        runner.state = RunnerState.RUNNING if self.is_alive(runner) else RunnerState.FAILED
        return runner

    def _env(self, runner: Runner) -> dict[str, str]:
        env = os.environ.copy()
        env[self._runtime.port_env] = str(runner.port)
        return env

    def _log_contains(self, runner: Runner, needle: str) -> bool:
        try:
            return needle in runner.log_path.read_text(encoding="utf-8", errors="ignore").lower()
        except FileNotFoundError:
            return False

    def _wait_exit(self, runner: Runner, timeout: float) -> bool:
        if runner.process is not None:
            try:
                runner.process.wait(timeout=timeout)
                return True
            except subprocess.TimeoutExpired:
                return False
        deadline = time.time() + timeout
        while time.time() < deadline:
            if not self.is_alive(runner):
                return True
            time.sleep(0.1)
        return False


def signal_group(pgid: int, signum: int) -> bool:
    """Deliver ``signum`` to a process group; False when the group is already gone."""
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    return True


def owns_listener(pid: int, port: int) -> bool:
    """True when ``pid`` or one of its descendants is listening on ``port``."""
    try:
        root = psutil.Process(pid)
        processes = [root, *root.children(recursive=True)]
    except psutil.Error:
        return False
    for process in processes:
        try:
            connections = process.net_connections(kind="inet")
        except psutil.Error:
            continue
        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                return True
    return False


def _read_int(path: Path) -> int | None:
    with contextlib.suppress(OSError, ValueError):
        return int(path.read_text(encoding="utf-8").strip())
    return None


__all__ = [
    "Runner",
    "RunnerLifecycle",
    "RunnerState",
    "StartResult",
    "TemplateCache",
    "owns_listener",
    "signal_group",
]
