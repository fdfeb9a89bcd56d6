from __future__ import annotations

import argparse
import logging
import os
import random
import shutil
import sys
from pathlib import Path

from .aggregate import Aggregator
from .config import (
    DEFAULT_CONTROLLER_URL,
    DEFAULT_TEMPLATE_URL,
    ActiveLabPolicy,
    FixedDurationPolicy,
    FleetConfig,
    NoisyNeighborPolicy,
    OutagePolicy,
    TemplateSpec,
    WavePolicy,
    load_runtime_overrides,
)
from .controller import FleetController
from .errors import FleetError
from .session import prune_sessions

LOGGER = logging.getLogger("runner_fleet")

FLEET_COMMANDS = {"start", "baseline", "outage", "waves", "noisy", "active-lab"}
JOB_COMMANDS = {"baseline", "outage", "waves", "noisy", "active-lab"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring %s=%r (not an integer); using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring %s=%r (not a number); using %s", name, raw, default)
        return default


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runner-fleet",
        description="Run a local fleet of workload runners through timed load scenarios",
    )
    parser.add_argument("--port-start", type=int, default=_env_int("FLEET_PORT_START", 20110))
    parser.add_argument("--port-end", type=int, default=_env_int("FLEET_PORT_END", 20220))
    parser.add_argument(
        "--max-runners",
        type=int,
        default=_env_int("FLEET_MAX_RUNNERS", 100),
        help="Highest runner index the fleet may use",
    )
    parser.add_argument(
        "--controller-url",
        default=os.environ.get("FLEET_CONTROLLER_URL", DEFAULT_CONTROLLER_URL),
        help="Controller the runners register with",
    )
    parser.add_argument(
        "--workspace-root",
        default=os.environ.get("FLEET_WORKSPACE_ROOT", str(Path.home())),
        help="Directory holding runner_template and the runner_<i> workspaces",
    )
    parser.add_argument(
        "--template-url",
        default=os.environ.get("FLEET_TEMPLATE_URL", DEFAULT_TEMPLATE_URL),
        help="Zip archive of the runtime distribution used to build the template",
    )
    parser.add_argument(
        "--template-source",
        default=os.environ.get("FLEET_TEMPLATE_SOURCE"),
        help="Local directory to copy the template from instead of downloading it",
    )
    parser.add_argument(
        "--metrics-dir",
        default=os.environ.get("FLEET_METRICS_DIR", "metrics"),
        help="Root directory for scenario session directories",
    )
    parser.add_argument(
        "--runtime-config",
        default=os.environ.get("FLEET_RUNTIME_CONFIG"),
        help="Optional JSON file overriding runtime commands and template settings",
    )
    parser.add_argument(
        "--required-commands",
        default=os.environ.get("FLEET_REQUIRED_COMMANDS", "dotnet"),
        help="Comma-separated commands that must be on PATH before runners are created",
    )
    parser.add_argument(
        "--metrics-interval",
        type=float,
        default=_env_float("FLEET_METRICS_INTERVAL", 1.0),
        help="Seconds between host resource samples",
    )
    parser.add_argument(
        "--straggler-timeout",
        type=float,
        default=None,
        help="Seconds to wait past a scenario's end before killing unfinished executions",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for pauses and wave sizes")
    parser.add_argument("--no-charts", action="store_true", help="Skip PNG chart rendering")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("FLEET_LOG_LEVEL", "INFO"),
        help="Logging level",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Create runners 1..count and leave them running")
    start.add_argument("count", type=int)
    start.add_argument("token")

    commands.add_parser("stop", help="Stop, unregister and delete every runner")

    baseline = commands.add_parser("baseline", help="Repeat the job on every runner for a fixed time")
    baseline.add_argument("count", type=int)
    baseline.add_argument("duration", type=float, help="Seconds")
    baseline.add_argument("job", type=Path)
    baseline.add_argument("token")

    outage = commands.add_parser("outage", help="Fixed-duration repeat with a mid-run outage")
    outage.add_argument("count", type=int)
    outage.add_argument("pre_outage", type=float, help="Seconds before the outage")
    outage.add_argument("outage", type=float, help="Seconds the runners stay frozen")
    outage.add_argument("job", type=Path)
    outage.add_argument("token")
    outage.add_argument("--post-outage", type=float, default=0.0, help="Seconds after the outage")

    waves = commands.add_parser("waves", help="Start the job in three bursts")
    waves.add_argument("count", type=int)
    waves.add_argument("job", type=Path)
    waves.add_argument("token")

    noisy = commands.add_parser("noisy", help="Baseline on one runner, then all runners together")
    noisy.add_argument("count", type=int)
    noisy.add_argument("job", type=Path)
    noisy.add_argument("token")
    noisy.add_argument(
        "--exclude-baseline-runner",
        action="store_true",
        help="Leave the baseline runner idle during the contention phase",
    )

    lab = commands.add_parser("active-lab", help="Elastic fleet: random extras for several cycles")
    lab.add_argument("min_runners", type=int)
    lab.add_argument("max_runners", type=int)
    lab.add_argument("job", type=Path)
    lab.add_argument("token")
    lab.add_argument("--cycles", type=int, default=3)

    summarize = commands.add_parser("summarize", help="Rebuild the report of a session directory")
    summarize.add_argument("session_dir", type=Path)
    summarize.add_argument("--baseline-runner", type=int, default=None)

    cleanup = commands.add_parser("cleanup", help="Delete session directories older than N days")
    cleanup.add_argument("days", type=float)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_config(args: argparse.Namespace) -> FleetConfig:
    template = TemplateSpec(
        archive_url=args.template_url or None,
        source_dir=Path(args.template_source) if args.template_source else None,
    )
    runtime, template = load_runtime_overrides(args.runtime_config, template=template)
    return FleetConfig(
        port_start=args.port_start,
        port_end=args.port_end,
        max_runners=args.max_runners,
        controller_url=args.controller_url,
        workspace_root=Path(args.workspace_root).expanduser(),
        metrics_root=Path(args.metrics_dir),
        runtime=runtime,
        template=template,
        required_commands=tuple(
            item.strip() for item in args.required_commands.split(",") if item.strip()
        ),
    )


def missing_commands(commands: tuple[str, ...]) -> list[str]:
    return [command for command in commands if shutil.which(command) is None]


def _check_counts(parser: argparse.ArgumentParser, args: argparse.Namespace, config: FleetConfig) -> None:
    counts = []
    if args.command == "active-lab":
        counts = [args.min_runners, args.max_runners]
    elif hasattr(args, "count"):
        counts = [args.count]
    for count in counts:
        if count < 1:
            parser.error("Number of runners must be >= 1")
        if count > min(config.max_runners, config.port_capacity):
            parser.error(
                f"Requested {count} runners, but at most {min(config.max_runners, config.port_capacity)} "
                f"fit in ports [{config.port_start}..{config.port_end}]"
            )
    if args.command == "noisy" and args.count < 2:
        parser.error("At least 2 runners are required (1 baseline + 1 concurrent)")


def _build_policy(parser: argparse.ArgumentParser, args: argparse.Namespace):
    timeout = args.straggler_timeout
    try:
        if args.command == "baseline":
            return FixedDurationPolicy(args.duration, straggler_timeout=timeout)
        if args.command == "outage":
            return OutagePolicy(
                args.pre_outage, args.outage, args.post_outage, straggler_timeout=timeout
            )
        if args.command == "waves":
            return WavePolicy(straggler_timeout=timeout)
        if args.command == "noisy":
            return NoisyNeighborPolicy(
                include_baseline_runner=not args.exclude_baseline_runner,
                straggler_timeout=timeout,
            )
        if args.command == "active-lab":
            return ActiveLabPolicy(
                args.min_runners, args.max_runners, cycles=args.cycles, straggler_timeout=timeout
            )
    except ValueError as exc:
        parser.error(str(exc))
    return None


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "cleanup":
        try:
            removed = prune_sessions(Path(args.metrics_dir), args.days)
        except ValueError as exc:
            parser.error(str(exc))
        LOGGER.info("Cleanup complete: removed %d session(s)", len(removed))
        return 0

    if args.command == "summarize":
        if not args.session_dir.is_dir():
            LOGGER.error("Session directory %s does not exist", args.session_dir)
            return 1
        summary = Aggregator(args.session_dir, baseline_runner=args.baseline_runner).write_report(
            args.session_dir.name
        )
        print(summary.to_text(args.session_dir.name), end="")
        return 0

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        parser.error(f"invalid fleet configuration: {exc}")

    _check_counts(parser, args, config)
    policy = _build_policy(parser, args)

    if args.command in JOB_COMMANDS and not args.job.is_file():
        LOGGER.error("Job description %s not found", args.job)
        return 1

    if args.command in FLEET_COMMANDS:
        missing = missing_commands(config.required_commands)
        if missing:
            LOGGER.error("Required command(s) not found on PATH: %s", ", ".join(missing))
            return 1

    controller = FleetController(
        config,
        token=getattr(args, "token", ""),
        rng=random.Random(args.seed),
        charts=not args.no_charts,
        metric_interval=args.metrics_interval,
    )
    try:
        if args.command == "start":
            controller.start_fleet(args.count)
        elif args.command == "stop":
            controller.stop_fleet()
        elif args.command == "baseline":
            controller.baseline(args.count, args.job, policy)
        elif args.command == "outage":
            controller.outage(args.count, args.job, policy)
        elif args.command == "waves":
            controller.waves(args.count, args.job, policy)
        elif args.command == "noisy":
            controller.noisy_neighbor(args.count, args.job, policy)
        elif args.command == "active-lab":
            controller.active_lab(args.job, policy)
    except FleetError as exc:
        LOGGER.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
