"""Execute a machine's provisioning steps against the state store."""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from .config import RunnerConfig
from .errors import StepFailure, TimeoutFailure
from .inventory import Command, Machine, Step
from .logging import OperationScope
from .models import (
    MachineResult,
    MachineStatus,
    RunRecord,
    StepOutcome,
    StepResult,
    StepStatus,
)
from .state import StateStore

LOGGER = logging.getLogger(__name__)

_DETAIL_LIMIT = 500


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass(slots=True, frozen=True)
class CommandResult:
    """Exit status and output of an external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


@dataclass(slots=True)
class CommandExecutor:
    """Run step commands as local subprocesses."""

    shell: str = "/bin/sh"

    def build_argv(self, command: Command, transport: Sequence[str] = ()) -> list[str]:
        """Return the argv used to run *command*, optionally via *transport*."""
        if transport:
            text = command if isinstance(command, str) else shlex.join(command)
            return [*transport, text]
        if isinstance(command, str):
            return [self.shell, "-c", command]
        return list(command)

    def execute(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run *argv*; raise :class:`TimeoutFailure` or :class:`StepFailure`."""
        merged_env = {**os.environ, **env} if env else None
        start = time.perf_counter()
        try:
            result = subprocess.run(  # noqa: S603
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=merged_env,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TimeoutFailure(
                timeout or 0.0,
                stdout=_text(exc.stdout),
                stderr=_text(exc.stderr),
            ) from exc
        except OSError as exc:
            raise StepFailure(f"{argv[0]} could not be started: {exc}") from exc
        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            duration_ms=_duration_ms(start),
        )


class ActionRunner:
    """Run one machine's steps in order with retries and rollback."""

    def __init__(
        self,
        store: StateStore,
        executor: CommandExecutor | None = None,
        *,
        default_retries: int = 0,
        retry_delay: float = 2.0,
        max_retry_delay: float = 60.0,
        default_timeout: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], str] = _timestamp,
    ) -> None:
        """Configure the runner; *sleep* and *clock* are injectable for tests."""
        self.store = store
        self.executor = executor or CommandExecutor()
        self.default_retries = default_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.default_timeout = default_timeout
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, store: StateStore, config: RunnerConfig) -> ActionRunner:
        """Build a runner using the configured defaults."""
        return cls(
            store,
            CommandExecutor(shell=config.shell),
            default_retries=config.default_retries,
            retry_delay=config.retry_delay,
            max_retry_delay=config.max_retry_delay,
            default_timeout=config.default_timeout,
        )

    # ------------------------------------------------------------------
    def run(
        self,
        machine: Machine,
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
    ) -> MachineResult:
        """Provision *machine*, stopping at the first failed step."""
        start = time.perf_counter()
        steps = list(machine.steps)
        results: list[StepResult] = []
        status = MachineStatus.SUCCEEDED
        detail: str | None = None

        for index, step in enumerate(steps):
            if cancel is not None and cancel.is_set():
                results.extend(_not_attempted(steps[index:]))
                status = MachineStatus.CANCELLED if index else MachineStatus.NOT_ATTEMPTED
                detail = f"run cancelled before step '{step.id}'"
                break
            result = self._run_step(machine, step, op)
            results.append(result)
            if result.status is StepStatus.FAILED:
                results.extend(_not_attempted(steps[index + 1 :]))
                status = MachineStatus.FAILED
                detail = f"step '{step.id}' failed: {result.detail}"
                break

        return MachineResult(
            name=machine.name,
            status=status,
            steps=tuple(results),
            detail=detail,
            duration_ms=_duration_ms(start),
        )

    # ------------------------------------------------------------------
    def _run_step(
        self,
        machine: Machine,
        step: Step,
        op: OperationScope | None,
    ) -> StepResult:
        label = f"{machine.name}.{step.id}"
        fingerprint = step.fingerprint
        record = self.store.get(machine.name, step.id)

        if (
            record is not None
            and record.status is StepStatus.SUCCEEDED
            and record.fingerprint == fingerprint
        ):
            _log_step(op, label, "skipped", "unchanged since last success")
            return StepResult(
                id=step.id,
                status=StepStatus.SKIPPED,
                outcome=StepOutcome.UNCHANGED,
                detail="already applied",
            )

        if step.applies_if is not None:
            start = time.perf_counter()
            try:
                applies = self._precondition_holds(step, step.applies_if)
            except StepFailure as exc:
                detail = f"precondition {exc.detail}"
                self._record_failure(machine, step, record, exc, detail, attempts=None)
                _log_step(op, label, "error", detail)
                return StepResult(
                    id=step.id,
                    status=StepStatus.FAILED,
                    outcome=StepOutcome.FAILED,
                    detail=detail,
                    failure_kind=_failure_kind(exc),
                    duration_ms=_duration_ms(start),
                )
            if not applies:
                unchanged_skip = (
                    record is not None
                    and record.status is StepStatus.SKIPPED
                    and record.fingerprint == fingerprint
                )
                if not unchanged_skip:
                    self.store.put(
                        machine.name,
                        step.id,
                        RunRecord(
                            status=StepStatus.SKIPPED,
                            last_attempt_at=self._clock(),
                            attempt_count=record.attempt_count if record else 0,
                            fingerprint=fingerprint,
                        ),
                    )
                _log_step(op, label, "skipped", "precondition not met")
                return StepResult(
                    id=step.id,
                    status=StepStatus.SKIPPED,
                    outcome=StepOutcome.CONDITION_FALSE,
                    detail="precondition not met",
                    duration_ms=_duration_ms(start),
                )

        return self._apply(machine, step, record, op)

    def _apply(
        self,
        machine: Machine,
        step: Step,
        record: RunRecord | None,
        op: OperationScope | None,
    ) -> StepResult:
        label = f"{machine.name}.{step.id}"
        fingerprint = step.fingerprint
        retries = step.retries if step.retries is not None else self.default_retries
        base_delay = step.retry_delay if step.retry_delay is not None else self.retry_delay
        attempts = record.attempt_count if record else 0
        start = time.perf_counter()
        tries = 0

        while True:
            tries += 1
            attempts += 1
            attempted_at = self._clock()
            self.store.put(
                machine.name,
                step.id,
                RunRecord(
                    status=StepStatus.PENDING,
                    last_attempt_at=attempted_at,
                    attempt_count=attempts,
                    fingerprint=fingerprint,
                ),
            )
            try:
                self._invoke(step, step.command)
            except StepFailure as exc:
                failure = exc
                if tries <= retries:
                    delay = self._backoff(base_delay, tries)
                    _log_step(
                        op,
                        label,
                        "warning",
                        f"attempt {tries} failed ({exc.detail}); retrying in {delay:g}s",
                    )
                    self._sleep(delay)
                    continue
                break

            self.store.put(
                machine.name,
                step.id,
                RunRecord(
                    status=StepStatus.SUCCEEDED,
                    last_attempt_at=attempted_at,
                    attempt_count=attempts,
                    fingerprint=fingerprint,
                ),
            )
            _log_step(op, label, "success", f"applied in {tries} attempt(s)")
            return StepResult(
                id=step.id,
                status=StepStatus.SUCCEEDED,
                outcome=StepOutcome.APPLIED,
                attempts=tries,
                duration_ms=_duration_ms(start),
            )

        if tries == 1:
            detail = failure.detail
        else:
            detail = f"failed after {tries} attempts: {failure.detail}"
        self.store.put(
            machine.name,
            step.id,
            RunRecord(
                status=StepStatus.FAILED,
                last_attempt_at=attempted_at,
                attempt_count=attempts,
                error_detail=detail,
                failure_kind=_failure_kind(failure),
                fingerprint=fingerprint,
            ),
        )
        _log_step(op, label, "error", detail)
        rollback = self._rollback(machine, step, op)
        return StepResult(
            id=step.id,
            status=StepStatus.FAILED,
            outcome=StepOutcome.FAILED,
            attempts=tries,
            detail=detail,
            failure_kind=_failure_kind(failure),
            duration_ms=_duration_ms(start),
            rollback=rollback,
        )

    def _record_failure(
        self,
        machine: Machine,
        step: Step,
        record: RunRecord | None,
        exc: StepFailure,
        detail: str,
        *,
        attempts: int | None,
    ) -> None:
        count = attempts if attempts is not None else (record.attempt_count if record else 0)
        self.store.put(
            machine.name,
            step.id,
            RunRecord(
                status=StepStatus.FAILED,
                last_attempt_at=self._clock(),
                attempt_count=count,
                error_detail=detail,
                failure_kind=_failure_kind(exc),
                fingerprint=step.fingerprint,
            ),
        )

    def _precondition_holds(self, step: Step, condition: Command) -> bool:
        argv = self.executor.build_argv(condition, step.transport)
        LOGGER.debug("Checking precondition for %s: %s", step.id, argv)
        result = self.executor.execute(argv, timeout=self._timeout(step), env=step.env_map)
        return result.ok

    def _invoke(self, step: Step, command: Command) -> CommandResult:
        argv = self.executor.build_argv(command, step.transport)
        LOGGER.debug("Running step %s: %s", step.id, argv)
        result = self.executor.execute(argv, timeout=self._timeout(step), env=step.env_map)
        if not result.ok:
            raise StepFailure(
                _describe_exit(result),
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def _rollback(self, machine: Machine, step: Step, op: OperationScope | None) -> str | None:
        if step.rollback is None:
            return None
        label = f"{machine.name}.{step.id}.rollback"
        try:
            self._invoke(step, step.rollback)
        except Exception as exc:
            message = f"rollback failed: {getattr(exc, 'detail', exc)}"
            LOGGER.warning("%s %s", label, message)
            _log_step(op, label, "error", message)
            return message
        _log_step(op, label, "success", "rollback completed")
        return "rollback completed"

    def _timeout(self, step: Step) -> float | None:
        return step.timeout if step.timeout is not None else self.default_timeout

    def _backoff(self, base_delay: float, attempt: int) -> float:
        return min(base_delay * (2 ** (attempt - 1)), self.max_retry_delay)


def _not_attempted(steps: Sequence[Step]) -> list[StepResult]:
    return [
        StepResult(id=step.id, status=StepStatus.NOT_ATTEMPTED, outcome=StepOutcome.NOT_ATTEMPTED)
        for step in steps
    ]


def _failure_kind(exc: StepFailure) -> str:
    if isinstance(exc, TimeoutFailure):
        return "timeout"
    if exc.returncode is None:
        return "error"
    return "command"


def _describe_exit(result: CommandResult) -> str:
    output = result.stderr.strip() or result.stdout.strip()
    message = f"exit {result.returncode}"
    if output:
        tail = output.splitlines()[-1]
        message = f"{message}: {tail}"
    return message[:_DETAIL_LIMIT]


def _log_step(op: OperationScope | None, name: str, status: str, detail: str | None) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["ActionRunner", "CommandExecutor", "CommandResult"]
