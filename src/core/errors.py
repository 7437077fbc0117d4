"""Exceptions raised by the core."""

from __future__ import annotations


class AlertEngineError(Exception):
    """Base class for alert engine errors."""


class ConfigError(AlertEngineError):
    """Configuration is missing or invalid."""


class LeaseLostError(AlertEngineError):
    """The lease protecting a job could not be renewed."""

    def __init__(self, job_name: str, locked_by: str) -> None:
        super().__init__(f"Lease for {job_name} lost by {locked_by}")
        self.job_name = job_name
        self.locked_by = locked_by
