"""
Local runner fleet orchestration.

This package provisions a pool of identical runner processes on a reserved port
range, drives them through timed concurrent workload scenarios while sampling
host resources, and reduces each scenario directory to a summary report.
"""

from .aggregate import Aggregator, Summary, slowdown_percent
from .config import (
    ActiveLabPolicy,
    FixedDurationPolicy,
    FleetConfig,
    NoisyNeighborPolicy,
    OutagePolicy,
    RuntimeCommands,
    TemplateSpec,
    WavePolicy,
)
from .controller import FleetController, ScenarioOutcome
from .errors import (
    FleetError,
    InvalidTransition,
    PortsExhausted,
    ProvisionError,
    RegistrationError,
    RunnerStartError,
)
from .lifecycle import Runner, RunnerLifecycle, RunnerState, StartResult
from .metrics import MetricsCollector, core_usage_percent
from .pool import RunnerPool, SuspendedSet
from .ports import PortAllocator
from .scenarios import ScenarioOrchestrator, partition_waves
from .workload import ExecutionRecord, WorkloadExecutor

__all__ = [
    "ActiveLabPolicy",
    "Aggregator",
    "ExecutionRecord",
    "FixedDurationPolicy",
    "FleetConfig",
    "FleetController",
    "FleetError",
    "InvalidTransition",
    "MetricsCollector",
    "NoisyNeighborPolicy",
    "OutagePolicy",
    "PortAllocator",
    "PortsExhausted",
    "ProvisionError",
    "RegistrationError",
    "Runner",
    "RunnerLifecycle",
    "RunnerPool",
    "RunnerStartError",
    "RunnerState",
    "RuntimeCommands",
    "ScenarioOrchestrator",
    "ScenarioOutcome",
    "StartResult",
    "Summary",
    "SuspendedSet",
    "TemplateSpec",
    "WavePolicy",
    "WorkloadExecutor",
    "core_usage_percent",
    "partition_waves",
    "slowdown_percent",
]
