from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger("runner_fleet.session")

MANIFEST_NAME = "scenario.json"
LOG_NAME = "orchestrator.log"


@dataclass(frozen=True)
class ScenarioRun:
    """One scenario session and the directory that holds everything it produced."""

    name: str
    kind: str
    directory: Path
    runner_count: int
    workload: Path
    parameters: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    @classmethod
    def create(
        cls,
        metrics_root: Path,
        kind: str,
        runner_count: int,
        workload: Path,
        parameters: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> "ScenarioRun":
        now = now or datetime.now()
        name = f"{kind}_{now:%Y%m%d_%H%M%S}"
        directory = metrics_root / name
        suffix = 1
        while directory.exists():
            suffix += 1
            directory = metrics_root / f"{name}_{suffix}"
        directory.mkdir(parents=True)
        run = cls(
            name=directory.name,
            kind=kind,
            directory=directory,
            runner_count=runner_count,
            workload=workload,
            parameters=dict(parameters or {}),
            created_at=now.isoformat(timespec="seconds"),
        )
        run.write_manifest()
        return run

    def write_manifest(self) -> Path:
        path = self.directory / MANIFEST_NAME
        payload = {
            "name": self.name,
            "kind": self.kind,
            "runner_count": self.runner_count,
            "workload": str(self.workload),
            "parameters": self.parameters,
            "created_at": self.created_at,
        }
        path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
        return path


@dataclass
class ScenarioContext:
    """Everything a scenario's collaborators share: its run and its stop signal."""

    run: ScenarioRun
    stop_event: threading.Event = field(default_factory=threading.Event)
    log_handler: logging.Handler | None = None

    @property
    def directory(self) -> Path:
        return self.run.directory

    def attach_log(self, logger_name: str = "runner_fleet") -> logging.Handler:
        handler = logging.FileHandler(self.directory / LOG_NAME, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger(logger_name).addHandler(handler)
        self.log_handler = handler
        return handler

    def detach_log(self, logger_name: str = "runner_fleet") -> None:
        if self.log_handler is None:
            return
        logging.getLogger(logger_name).removeHandler(self.log_handler)
        self.log_handler.close()
        self.log_handler = None


def prune_sessions(metrics_root: Path, days_old: float, now: float | None = None) -> list[Path]:
    """Delete session directories under ``metrics_root`` not modified for ``days_old`` days."""
    if days_old < 0:
        raise ValueError("days_old must be >= 0")
    if not metrics_root.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - days_old * 86400
    removed = []
    for path in sorted(metrics_root.iterdir()):
        if not path.is_dir():
            continue
        if path.stat().st_mtime < cutoff:
            shutil.rmtree(path, ignore_errors=True)
            removed.append(path)
            LOGGER.info("Removed session %s", path)
    return removed


__all__ = ["ScenarioContext", "ScenarioRun", "prune_sessions"]
