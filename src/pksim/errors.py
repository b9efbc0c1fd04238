"""Domain-specific exceptions for the simulation runtime."""

from __future__ import annotations


class SimError(RuntimeError):
    """Base class for simulation runtime errors."""


class ConfigurationError(SimError):
    """Raised when output, design or solver configuration is invalid."""


class DataError(SimError):
    """Raised when a data set or individual-level table is malformed."""


class IntegrationError(SimError):
    """Raised when the numerical solver fails for one individual."""

    def __init__(self, message: str, *, time: float | None = None) -> None:
        super().__init__(message)
        self.time = time


class RunCancelled(IntegrationError):
    """Raised inside a worker once the run deadline has passed."""


__all__ = [
    "SimError",
    "ConfigurationError",
    "DataError",
    "IntegrationError",
    "RunCancelled",
]
