"""Failure categories for a lab run.

Every category terminates the run. The exit code tells a CI job which stage
gave up without having to parse the message.
"""

from __future__ import annotations

from typing import Optional


class LabError(Exception):
    """Base class for failures that abort a lab run."""

    exit_code = 1


class EnvironmentCheckError(LabError):
    """The host is unsuitable; raised before any resource exists."""

    exit_code = 2


class ProvisioningError(LabError):
    """A switch or virtual machine failed to start or died."""

    exit_code = 3


class ProtocolError(LabError):
    """The command channel was misused or did not complete."""

    exit_code = 4


class CommandTimeout(ProtocolError):
    """A dispatched command file was not removed within the polling bound."""

    def __init__(self, vm: str, command: str, waited: float, detail: Optional[str] = None) -> None:
        message = f"{vm}: command did not complete within {waited:.1f}s: {command}"
        if detail:
            message += "\n" + detail
        super().__init__(message)
        self.vm = vm
        self.command = command
        self.waited = waited


class DivergenceError(LabError):
    """Redacted output differs from the expected baseline."""

    exit_code = 5

    def __init__(self, message: str, diff: str) -> None:
        super().__init__(message)
        self.diff = diff


class BootstrapError(Exception):
    """A guest could not reach the command loop."""
