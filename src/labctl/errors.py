"""Exception taxonomy shared by the provisioning core.

Inventory problems (:class:`ValidationError`, :class:`CycleError`) are fatal
and raised before anything runs. Step problems (:class:`StepFailure`,
:class:`TimeoutFailure`) are raised by the command executor and recorded by
the runner; they never escape a machine run. :class:`DependencyUnmet`
describes why a machine was skipped and is carried in the run report rather
than raised to callers.
"""
from __future__ import annotations

from collections.abc import Sequence


class LabctlError(RuntimeError):
    """Base class for labctl errors."""


class ValidationError(LabctlError):
    """Raised when an inventory is malformed or violates an invariant."""

    def __init__(self, message: str, *, problems: Sequence[str] | None = None) -> None:
        """Store the summary message and the individual problems found."""
        super().__init__(message)
        self.problems: tuple[str, ...] = tuple(problems or (message,))


class CycleError(ValidationError):
    """Raised when machine dependencies form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        """Record the machines that make up the cycle."""
        self.cycle: tuple[str, ...] = tuple(cycle)
        path = " -> ".join(self.cycle)
        super().__init__(f"Dependency cycle detected: {path}")


class StepFailure(LabctlError):
    """Raised when a step command fails or cannot be started."""

    kind = "command"

    def __init__(
        self,
        detail: str,
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Capture the failure detail and any command output."""
        super().__init__(detail)
        self.detail = detail
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class TimeoutFailure(StepFailure):
    """Raised when a step command exceeds its allotted time."""

    kind = "timeout"

    def __init__(self, timeout: float, *, stdout: str = "", stderr: str = "") -> None:
        """Record the timeout that was exceeded."""
        super().__init__(f"timed out after {timeout:g}s", stdout=stdout, stderr=stderr)
        self.timeout = timeout


class DependencyUnmet(LabctlError):
    """A machine was not provisioned because a prerequisite did not succeed."""

    def __init__(self, machine: str, dependency: str, dependency_status: str) -> None:
        """Describe the unmet dependency edge."""
        self.machine = machine
        self.dependency = dependency
        self.dependency_status = dependency_status
        super().__init__(f"dependency '{dependency}' {dependency_status}")


__all__ = [
    "CycleError",
    "DependencyUnmet",
    "LabctlError",
    "StepFailure",
    "TimeoutFailure",
    "ValidationError",
]
