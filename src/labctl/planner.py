"""Dependency ordering for machine provisioning."""
from __future__ import annotations

import heapq
from collections.abc import Iterator
from dataclasses import dataclass

from .errors import CycleError
from .inventory import Inventory, Machine, find_cycle


@dataclass(slots=True, frozen=True)
class Plan:
    """Ordered machines plus the ready-set waves they can run in."""

    order: tuple[Machine, ...]
    waves: tuple[tuple[Machine, ...], ...]

    def __iter__(self) -> Iterator[Machine]:
        """Iterate machines in plan order."""
        return iter(self.order)

    def __len__(self) -> int:
        """Return the number of planned machines."""
        return len(self.order)

    @property
    def names(self) -> tuple[str, ...]:
        """Return machine names in plan order."""
        return tuple(machine.name for machine in self.order)

    def position(self, name: str) -> int:
        """Return the zero-based position of *name* in the plan."""
        for index, machine in enumerate(self.order):
            if machine.name == name:
                return index
        raise KeyError(name)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "order": list(self.names),
            "waves": [[machine.name for machine in wave] for wave in self.waves],
        }


class DependencyPlanner:
    """Topologically sort machines, breaking ties by declaration order."""

    def plan(self, inventory: Inventory) -> Plan:
        """Return the provisioning plan for *inventory*."""
        machines = list(inventory.machines)
        declared = {machine.name: index for index, machine in enumerate(machines)}
        blocking = {
            machine.name: sum(1 for dep in machine.depends_on if dep in declared)
            for machine in machines
        }
        dependents: dict[str, list[str]] = {machine.name: [] for machine in machines}
        for machine in machines:
            for dep in machine.depends_on:
                if dep in declared:
                    dependents[dep].append(machine.name)

        ready = [declared[name] for name, count in blocking.items() if count == 0]
        heapq.heapify(ready)
        order: list[Machine] = []
        level: dict[str, int] = {}
        while ready:
            machine = machines[heapq.heappop(ready)]
            order.append(machine)
            level[machine.name] = 1 + max(
                (level[dep] for dep in machine.depends_on if dep in declared),
                default=-1,
            )
            for child in dependents[machine.name]:
                blocking[child] -= 1
                if blocking[child] == 0:
                    heapq.heappush(ready, declared[child])

        if len(order) != len(machines):
            unresolved = [machine for machine in machines if machine.name not in level]
            raise CycleError(find_cycle(unresolved) or [m.name for m in unresolved])

        waves: list[list[Machine]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for machine in machines:
            waves[level[machine.name]].append(machine)
        return Plan(order=tuple(order), waves=tuple(tuple(wave) for wave in waves))


__all__ = ["DependencyPlanner", "Plan"]
