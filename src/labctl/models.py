"""Data models for run records and run reports."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exit_codes import ExitCode


class StepStatus(str, Enum):
    """Status stored for a (machine, step) pair and reported per step."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not-attempted"


class MachineStatus(str, Enum):
    """Terminal status of a machine within one run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    NOT_ATTEMPTED = "not-attempted"

    @property
    def satisfies_dependents(self) -> bool:
        """Return ``True`` when dependent machines may proceed."""
        return self is MachineStatus.SUCCEEDED


class StepOutcome(str, Enum):
    """Why a step ended with its reported status."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONDITION_FALSE = "condition-false"
    FAILED = "failed"
    NOT_ATTEMPTED = "not-attempted"


@dataclass(slots=True, frozen=True)
class RunRecord:
    """Persisted state for one step of one machine."""

    status: StepStatus
    last_attempt_at: str | None = None
    attempt_count: int = 0
    error_detail: str | None = None
    failure_kind: str | None = None
    fingerprint: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a YAML-serialisable representation."""
        payload: dict[str, object] = {
            "status": self.status.value,
            "last_attempt_at": self.last_attempt_at,
            "attempt_count": self.attempt_count,
        }
        if self.error_detail is not None:
            payload["error_detail"] = self.error_detail
        if self.failure_kind is not None:
            payload["failure_kind"] = self.failure_kind
        if self.fingerprint is not None:
            payload["fingerprint"] = self.fingerprint
        return payload

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> RunRecord:
        """Build a record from its stored mapping."""
        status = StepStatus(str(raw.get("status", StepStatus.PENDING.value)))
        attempts = raw.get("attempt_count", 0)
        last_attempt = raw.get("last_attempt_at")
        error = raw.get("error_detail")
        kind = raw.get("failure_kind")
        fingerprint = raw.get("fingerprint")
        return cls(
            status=status,
            last_attempt_at=str(last_attempt) if last_attempt is not None else None,
            attempt_count=int(attempts) if isinstance(attempts, (int, str)) else 0,
            error_detail=str(error) if error is not None else None,
            failure_kind=str(kind) if kind is not None else None,
            fingerprint=str(fingerprint) if fingerprint is not None else None,
        )


@dataclass(slots=True, frozen=True)
class StepResult:
    """Outcome of a step within one run."""

    id: str
    status: StepStatus
    outcome: StepOutcome
    attempts: int = 0
    detail: str | None = None
    failure_kind: str | None = None
    duration_ms: int | None = None
    rollback: str | None = None


@dataclass(slots=True, frozen=True)
class MachineResult:
    """Outcome of a machine within one run."""

    name: str
    status: MachineStatus
    steps: Sequence[StepResult] = field(default_factory=tuple)
    detail: str | None = None
    duration_ms: int | None = None

    @property
    def failed_step(self) -> StepResult | None:
        """Return the step that failed the machine, if any."""
        for step in self.steps:
            if step.status is StepStatus.FAILED:
                return step
        return None


@dataclass(slots=True, frozen=True)
class RunSummary:
    """Aggregated summary derived from machine results."""

    status: MachineStatus
    exit_code: int
    totals: Mapping[MachineStatus, int]


@dataclass(slots=True, frozen=True)
class RunReport:
    """Complete report for a provisioning run."""

    machines: Sequence[MachineResult]
    summary: RunSummary
    metadata: Mapping[str, Any] | None = None

    def get(self, name: str) -> MachineResult | None:
        """Return the result for machine *name*."""
        for result in self.machines:
            if result.name == name:
                return result
        return None


STATUS_ORDER: Mapping[MachineStatus, int] = {
    MachineStatus.SUCCEEDED: 0,
    MachineStatus.SKIPPED: 1,
    MachineStatus.FAILED: 2,
    MachineStatus.NOT_ATTEMPTED: 3,
    MachineStatus.CANCELLED: 4,
}

STATUS_EXIT_CODES: Mapping[MachineStatus, ExitCode] = {
    MachineStatus.SUCCEEDED: ExitCode.OK,
    MachineStatus.SKIPPED: ExitCode.PROVISION,
    MachineStatus.FAILED: ExitCode.PROVISION,
    MachineStatus.NOT_ATTEMPTED: ExitCode.CANCELLED,
    MachineStatus.CANCELLED: ExitCode.CANCELLED,
}


def aggregate_results(results: Iterable[MachineResult]) -> RunSummary:
    """Compute the overall status and exit code for a run."""
    totals: dict[MachineStatus, int] = {status: 0 for status in MachineStatus}
    worst = MachineStatus.SUCCEEDED
    for result in results:
        totals[result.status] += 1
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst]:
            worst = result.status
    return RunSummary(
        status=worst,
        exit_code=int(STATUS_EXIT_CODES[worst]),
        totals=totals,
    )


def build_report(
    results: Sequence[MachineResult],
    metadata: Mapping[str, Any] | None = None,
) -> RunReport:
    """Create a full RunReport from machine results."""
    summary = aggregate_results(results)
    return RunReport(machines=tuple(results), summary=summary, metadata=metadata)


__all__ = [
    "MachineResult",
    "MachineStatus",
    "RunRecord",
    "RunReport",
    "RunSummary",
    "StepOutcome",
    "StepResult",
    "StepStatus",
    "aggregate_results",
    "build_report",
]
