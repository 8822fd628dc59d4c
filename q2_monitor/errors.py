# -*- coding: utf-8 -*-
"""Exception types raised by the monitored runner.

Child processes that exit non-zero are *not* exceptions: they are recorded in
the ledger and handed back to the orchestrator. Only infrastructure problems
(cannot spawn, cannot write the ledger) interrupt a run.
"""

from __future__ import annotations


class Q2MonitorError(RuntimeError):
    """Base class for all q2_monitor errors."""


class InfrastructureError(Q2MonitorError):
    """Raised when a step cannot be launched or its record cannot be stored."""


class ConfigError(Q2MonitorError, ValueError):
    """Raised for malformed or unknown configuration values."""


class StepFailure(Q2MonitorError):
    """A required step exited non-zero.

    Parameters
    ----------
    step : str
        Name of the failing step.
    exit_status : int
        Exit status exactly as returned by the child process.
    """

    def __init__(self, step: str, exit_status: int) -> None:
        super().__init__(f"Step '{step}' failed with exit status {exit_status}")
        self.step = step
        self.exit_status = exit_status
