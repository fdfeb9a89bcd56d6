from __future__ import annotations


class FleetError(Exception):
    """Base class for fatal runner fleet conditions."""


class PortsExhausted(FleetError):
    """Raised when no port in the configured range is free."""

    def __init__(self, range_start: int, range_end: int, offset: int = 0) -> None:
        super().__init__(
            f"no free port in [{range_start}..{range_end}] from offset {offset}"
        )
        self.range_start = range_start
        self.range_end = range_end
        self.offset = offset


class ProvisionError(FleetError):
    """Raised when the runner workspace template cannot be built or cloned."""


class RegistrationError(FleetError):
    """Raised when the runtime refuses to register a runner with the controller."""


class RunnerStartError(FleetError):
    """Raised when a started runner process exits before it became ready."""


class InvalidTransition(FleetError):
    """Raised on a lifecycle state change the state machine does not allow."""


__all__ = [
    "FleetError",
    "PortsExhausted",
    "ProvisionError",
    "RegistrationError",
    "RunnerStartError",
    "InvalidTransition",
]
