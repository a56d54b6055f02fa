"""Dependency planner tests."""
from __future__ import annotations

import pytest

from labctl.errors import CycleError
from labctl.inventory import Inventory, Machine, Role, parse_inventory
from labctl.planner import DependencyPlanner


def _inventory(*machines: tuple[str, list[str]]) -> Inventory:
    return parse_inventory(
        {
            "machines": [
                {"name": name, "address": f"10.0.0.{index}", "depends_on": deps}
                for index, (name, deps) in enumerate(machines, start=1)
            ]
        }
    )


def test_every_machine_follows_its_dependencies() -> None:
    """Plan order places each machine after all of its dependencies."""
    inventory = _inventory(
        ("node2", ["dc", "file"]),
        ("file", ["dc"]),
        ("node1", ["dc"]),
        ("dc", []),
    )

    plan = DependencyPlanner().plan(inventory)

    for machine in plan:
        for dep in machine.depends_on:
            assert plan.position(dep) < plan.position(machine.name)
    assert plan.names == ("dc", "file", "node2", "node1")


def test_ties_break_by_declaration_order() -> None:
    """Independent machines keep their declared order."""
    inventory = _inventory(("c", []), ("a", []), ("b", []))

    plan = DependencyPlanner().plan(inventory)

    assert plan.names == ("c", "a", "b")
    assert [[m.name for m in wave] for wave in plan.waves] == [["c", "a", "b"]]


def test_earliest_declared_ready_machine_is_emitted_first() -> None:
    """A machine that becomes ready early outranks later declarations."""
    inventory = _inventory(
        ("dc", []),
        ("node1", ["dc"]),
        ("monitor", []),
    )

    plan = DependencyPlanner().plan(inventory)

    assert plan.names == ("dc", "node1", "monitor")
    assert plan.to_dict() == {
        "order": ["dc", "node1", "monitor"],
        "waves": [["dc", "monitor"], ["node1"]],
    }


def test_waves_group_machines_by_dependency_depth() -> None:
    """Each wave only depends on earlier waves."""
    inventory = _inventory(
        ("dc", []),
        ("file", ["dc"]),
        ("node1", ["dc"]),
        ("node2", ["file", "node1"]),
    )

    plan = DependencyPlanner().plan(inventory)

    waves = [[machine.name for machine in wave] for wave in plan.waves]
    assert waves == [["dc"], ["file", "node1"], ["node2"]]
    assert len(plan) == 4


def test_plan_is_deterministic() -> None:
    """Repeated planning yields identical results."""
    inventory = _inventory(("b", []), ("a", ["b"]), ("d", []), ("c", ["d", "a"]))
    planner = DependencyPlanner()

    assert planner.plan(inventory) == planner.plan(inventory)


def test_position_of_unknown_machine_raises() -> None:
    """Only planned machines have positions."""
    plan = DependencyPlanner().plan(_inventory(("dc", [])))

    with pytest.raises(KeyError):
        plan.position("node1")


def test_cycle_detected_when_inventory_bypasses_validation() -> None:
    """Planning a hand-built cyclic inventory raises CycleError."""
    inventory = Inventory(
        machines=(
            Machine(name="a", role=Role.HOST, address="10.0.0.1", depends_on=("b",)),
            Machine(name="b", role=Role.HOST, address="10.0.0.2", depends_on=("a",)),
            Machine(name="c", role=Role.HOST, address="10.0.0.3"),
        )
    )

    with pytest.raises(CycleError) as excinfo:
        DependencyPlanner().plan(inventory)

    assert set(excinfo.value.cycle) == {"a", "b"}
