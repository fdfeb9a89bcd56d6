from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

DEFAULT_CONTROLLER_URL = "https://test-automation.pw.keysight.com"
DEFAULT_TEMPLATE_URL = (
    "https://packages.opentap.io/4.0/Objects/Packages/OpenTAP?os=Linux&architecture=arm64"
)


@dataclass(frozen=True)
class RuntimeCommands:
    """How the workload runtime inside a runner workspace is invoked.

    Argument templates may reference ``{url}``, ``{token}`` and ``{job}``.
    """

    executable: str = "tap"
    launcher: tuple[str, ...] = ()
    register_args: tuple[str, ...] = (
        "runner",
        "register",
        "--url",
        "{url}",
        "--registrationToken",
        "{token}",
    )
    start_args: tuple[str, ...] = ("runner", "start")
    run_args: tuple[str, ...] = ("run", "{job}")
    unregister_args: tuple[str, ...] = ("runner", "unregister")
    unregister_reply: str = "0"
    port_env: str = "OPENTAP_RUNNER_SERVER_PORT"
    conflict_signature: str = "address already in use"
    register_timeout: float = 120.0
    unregister_timeout: float = 30.0
    settle_seconds: float = 5.0
    startup_grace_seconds: float = 5.0
    stop_timeout: float = 10.0

    def command(self, workspace: Path, args: Sequence[str], **values: str) -> list[str]:
        executable = str(workspace / self.executable)
        return [*self.launcher, executable, *(arg.format(**values) for arg in args)]


@dataclass(frozen=True)
class TemplateSpec:
    """Where the cached runner template comes from and what gets installed into it."""

    archive_url: str | None = DEFAULT_TEMPLATE_URL
    source_dir: Path | None = None
    install_commands: tuple[tuple[str, ...], ...] = ()
    optional_install_commands: tuple[tuple[str, ...], ...] = ()
    extra_files: dict[str, str] = field(default_factory=dict)
    download_timeout: float = 300.0


@dataclass(frozen=True)
class FleetConfig:
    port_start: int = 20110
    port_end: int = 20220
    max_runners: int = 100
    controller_url: str = DEFAULT_CONTROLLER_URL
    workspace_root: Path = field(default_factory=Path.home)
    metrics_root: Path = Path("metrics")
    runtime: RuntimeCommands = field(default_factory=RuntimeCommands)
    template: TemplateSpec = field(default_factory=TemplateSpec)
    required_commands: tuple[str, ...] = ("dotnet",)

    def __post_init__(self) -> None:
        if self.port_end < self.port_start:
            raise ValueError("port_end must not be smaller than port_start")
        if self.max_runners < 1:
            raise ValueError("max_runners must be >= 1")

    @property
    def port_capacity(self) -> int:
        return self.port_end - self.port_start + 1

    @property
    def template_dir(self) -> Path:
        return self.workspace_root / "runner_template"

    def workspace_for(self, index: int) -> Path:
        return self.workspace_root / f"runner_{index}"


@dataclass(frozen=True)
class FixedDurationPolicy:
    """Each runner loops execute/pause until the shared deadline."""

    duration_seconds: float
    pause_range: tuple[float, float] = (2.0, 6.0)
    straggler_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be > 0")
        _check_range("pause_range", self.pause_range)


@dataclass(frozen=True)
class OutagePolicy:
    """Fixed-duration repeat with every runner frozen for ``outage_seconds`` mid-run."""

    pre_outage_seconds: float
    outage_seconds: float
    post_outage_seconds: float = 0.0
    pause_range: tuple[float, float] = (2.0, 6.0)
    straggler_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.pre_outage_seconds < 0 or self.post_outage_seconds < 0:
            raise ValueError("active periods must be >= 0")
        if self.outage_seconds <= 0:
            raise ValueError("outage_seconds must be > 0")
        _check_range("pause_range", self.pause_range)

    @property
    def total_seconds(self) -> float:
        return self.pre_outage_seconds + self.outage_seconds + self.post_outage_seconds


@dataclass(frozen=True)
class WavePolicy:
    proportions: tuple[float, float, float] = (0.2, 0.3, 0.5)
    jitter: int = 2
    pauses: tuple[float, float, float] = (1.0, 0.5, 0.25)
    straggler_timeout: float | None = None

    def __post_init__(self) -> None:
        if any(value < 0 for value in self.proportions):
            raise ValueError("wave proportions must be >= 0")
        if sum(self.proportions) <= 0:
            raise ValueError("wave proportions must sum to > 0")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")


@dataclass(frozen=True)
class NoisyNeighborPolicy:
    include_baseline_runner: bool = True
    straggler_timeout: float | None = None


@dataclass(frozen=True)
class ActiveLabPolicy:
    """Elastic lab: a fixed floor of runners plus random extras for a few cycles."""

    min_runners: int
    max_runners: int
    cycles: int = 3
    wait_range: tuple[float, float] = (15.0, 30.0)
    straggler_timeout: float | None = None

    MAX_ALLOWED = 30

    def __post_init__(self) -> None:
        if self.min_runners < 1:
            raise ValueError("min_runners must be >= 1")
        if self.max_runners > self.MAX_ALLOWED:
            raise ValueError(f"max_runners must not exceed {self.MAX_ALLOWED}")
        if self.max_runners < self.min_runners:
            raise ValueError("max_runners cannot be smaller than min_runners")
        if self.cycles < 1:
            raise ValueError("cycles must be >= 1")
        _check_range("wait_range", self.wait_range)


def load_runtime_overrides(
    path: str | Path | None,
    runtime: RuntimeCommands | None = None,
    template: TemplateSpec | None = None,
) -> tuple[RuntimeCommands, TemplateSpec]:
    """Apply the ``runtime`` and ``template`` sections of a JSON file on top of defaults."""

    runtime = runtime or RuntimeCommands()
    template = template or TemplateSpec()
    if not path:
        return runtime, template

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"runtime config {path} must contain a JSON object")

    runtime_fields = _coerce_fields(RuntimeCommands, raw.get("runtime") or {})
    template_fields = _coerce_fields(TemplateSpec, raw.get("template") or {})
    if "source_dir" in template_fields and template_fields["source_dir"] is not None:
        template_fields["source_dir"] = Path(template_fields["source_dir"])
    return (
        dataclasses.replace(runtime, **runtime_fields),
        dataclasses.replace(template, **template_fields),
    )


def _coerce_fields(cls: type, values: dict) -> dict:
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"unknown {cls.__name__} fields: {', '.join(sorted(unknown))}")
    coerced = {}
    for key, value in values.items():
        if isinstance(value, list):
            value = tuple(tuple(item) if isinstance(item, list) else item for item in value)
        coerced[key] = value
    return coerced


def _check_range(name: str, bounds: tuple[float, float]) -> None:
    low, high = bounds
    if low < 0 or high < low:
        raise ValueError(f"{name} must satisfy 0 <= low <= high")
