"""Run an inventory wave by wave and aggregate the run report."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Iterable, Mapping, Sequence

from .errors import DependencyUnmet
from .inventory import Inventory, Machine
from .logging import OperationScope
from .models import (
    MachineResult,
    MachineStatus,
    RunReport,
    StepOutcome,
    StepResult,
    StepStatus,
    build_report,
)
from .planner import DependencyPlanner, Plan
from .runner import ActionRunner

LOGGER = logging.getLogger(__name__)

_BLOCKING_STATUSES = (MachineStatus.FAILED, MachineStatus.SKIPPED, MachineStatus.CANCELLED)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _untouched_steps(machine: Machine) -> tuple[StepResult, ...]:
    return tuple(
        StepResult(id=step.id, status=StepStatus.NOT_ATTEMPTED, outcome=StepOutcome.NOT_ATTEMPTED)
        for step in machine.steps
    )


def _not_dispatched(machine: Machine) -> MachineResult:
    return MachineResult(
        name=machine.name,
        status=MachineStatus.NOT_ATTEMPTED,
        steps=_untouched_steps(machine),
        detail="run cancelled before dispatch",
    )


class Orchestrator:
    """Coordinate planning, bounded parallel execution and reporting."""

    def __init__(
        self,
        runner: ActionRunner,
        *,
        planner: DependencyPlanner | None = None,
        max_workers: int = 4,
    ) -> None:
        """Store collaborators; *max_workers* bounds machines run at once."""
        self.runner = runner
        self.planner = planner or DependencyPlanner()
        self.max_workers = max(1, max_workers)

    def plan(self, inventory: Inventory, *, only: Iterable[str] | None = None) -> Plan:
        """Return the plan for *inventory*, optionally narrowed to *only*."""
        names = list(only or ())
        target = inventory.subset(names) if names else inventory
        return self.planner.plan(target)

    def run(
        self,
        inventory: Inventory,
        *,
        cancel: threading.Event | None = None,
        op: OperationScope | None = None,
        only: Iterable[str] | None = None,
        metadata: Mapping[str, object] | None = None,
    ) -> RunReport:
        """Provision *inventory* and return the report in plan order."""
        start = time.perf_counter()
        plan = self.plan(inventory, only=only)
        results: dict[str, MachineResult] = {}

        for wave in plan.waves:
            runnable: list[Machine] = []
            for machine in wave:
                held = self._held_back(machine, results, cancel)
                if held is not None:
                    results[machine.name] = held
                    if op is not None:
                        op.add_step(machine.name, status=held.status.value, detail=held.detail)
                else:
                    runnable.append(machine)
            results.update(self._run_wave(runnable, cancel, op))

        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "machine_count": len(plan),
            "max_workers": self.max_workers,
            "plan": plan.to_dict(),
            "cancelled": bool(cancel is not None and cancel.is_set()),
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report([results[machine.name] for machine in plan], metadata=run_metadata)

    # ------------------------------------------------------------------
    def _held_back(
        self,
        machine: Machine,
        results: Mapping[str, MachineResult],
        cancel: threading.Event | None,
    ) -> MachineResult | None:
        for dep in machine.depends_on:
            outcome = results.get(dep)
            if outcome is not None and outcome.status in _BLOCKING_STATUSES:
                unmet = DependencyUnmet(machine.name, dep, outcome.status.value)
                LOGGER.info("Skipping %s: %s", machine.name, unmet)
                return MachineResult(
                    name=machine.name,
                    status=MachineStatus.SKIPPED,
                    steps=_untouched_steps(machine),
                    detail=str(unmet),
                )
        if cancel is not None and cancel.is_set():
            return _not_dispatched(machine)
        for dep in machine.depends_on:
            outcome = results.get(dep)
            if outcome is not None and not outcome.status.satisfies_dependents:
                return _not_dispatched(machine)
        return None

    def _run_wave(
        self,
        machines: Sequence[Machine],
        cancel: threading.Event | None,
        op: OperationScope | None,
    ) -> dict[str, MachineResult]:
        if not machines:
            return {}
        workers = min(self.max_workers, len(machines))
        if workers == 1:
            return {machine.name: self._run_machine(machine, cancel, op) for machine in machines}

        results: dict[str, MachineResult] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_name: dict[concurrent.futures.Future[MachineResult], str] = {}
            for machine in machines:
                future = executor.submit(self._run_machine, machine, cancel, op)
                future_to_name[future] = machine.name
            for future in concurrent.futures.as_completed(future_to_name):
                results[future_to_name[future]] = future.result()
        return results

    def _run_machine(
        self,
        machine: Machine,
        cancel: threading.Event | None,
        op: OperationScope | None,
    ) -> MachineResult:
        if cancel is not None and cancel.is_set():
            return _not_dispatched(machine)
        start = time.perf_counter()
        try:
            result = self.runner.run(machine, cancel=cancel, op=op)
        except Exception as exc:
            LOGGER.exception("Provisioning %s raised an unexpected error", machine.name)
            result = MachineResult(
                name=machine.name,
                status=MachineStatus.FAILED,
                detail=f"unexpected error: {exc}",
                duration_ms=_duration_ms(start),
            )
        if op is not None:
            op.add_step(machine.name, status=result.status.value, detail=result.detail)
        return result


__all__ = ["Orchestrator"]
