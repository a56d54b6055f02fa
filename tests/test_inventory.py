"""Inventory parsing and validation tests."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from labctl.errors import CycleError, ValidationError
from labctl.inventory import Role, find_cycle, load_inventory, parse_inventory


def _machine(name: str, address: str, **extra: Any) -> dict[str, Any]:
    entry: dict[str, Any] = {"name": name, "address": address, "steps": []}
    entry.update(extra)
    return entry


def test_load_inventory_renders_templates(tmp_path: Path) -> None:
    """Variables and machine facts are rendered into step commands."""
    path = tmp_path / "lab.yml"
    path.write_text(
        "vars:\n"
        "  domain: nextlevel.local\n"
        "defaults:\n"
        "  retries: 2\n"
        "  env: {DEBIAN_FRONTEND: noninteractive}\n"
        "machines:\n"
        "  - name: dc\n"
        "    role: domain-controller\n"
        "    address: 192.168.0.172\n"
        "    steps:\n"
        "      - id: promote-to-controller\n"
        "        command: promote {{ vars.domain }}\n"
        "  - name: node1\n"
        "    role: domain-member\n"
        "    address: 192.168.0.173\n"
        "    transport: [ssh, '{{ machine.name }}']\n"
        "    depends_on: [dc]\n"
        "    steps:\n"
        "      - id: set-dns\n"
        "        command: resolvectl dns eth1 {{ machines.dc.address }}\n"
        "        retries: 0\n"
        "      - id: join-domain\n"
        "        applies_if: \"! realm list | grep -q {{ vars.domain }}\"\n"
        "        command: [realm, join, '{{ vars.domain }}']\n"
        "        rollback: realm leave\n",
        encoding="utf-8",
    )

    inventory = load_inventory(path)

    assert inventory.names == ("dc", "node1")
    assert inventory.source == str(path)
    dc = inventory.get("dc")
    node1 = inventory.get("node1")
    assert dc is not None and node1 is not None
    assert dc.role is Role.DOMAIN_CONTROLLER
    assert dc.steps[0].command == "promote nextlevel.local"
    assert dc.steps[0].retries == 2
    assert dc.steps[0].env_map == {"DEBIAN_FRONTEND": "noninteractive"}
    assert node1.transport == ("ssh", "node1")
    assert node1.steps[0].command == "resolvectl dns eth1 192.168.0.172"
    assert node1.steps[0].retries == 0
    join = node1.step("join-domain")
    assert join is not None
    assert join.command == ("realm", "join", "nextlevel.local")
    assert join.applies_if == "! realm list | grep -q nextlevel.local"
    assert join.rollback == "realm leave"
    assert join.transport == ("ssh", "node1")


def test_missing_inventory_file_is_a_validation_error(tmp_path: Path) -> None:
    """A missing file is reported, not raised as an OSError."""
    with pytest.raises(ValidationError, match="not found"):
        load_inventory(tmp_path / "absent.yml")


def test_unparseable_yaml_is_a_validation_error(tmp_path: Path) -> None:
    """YAML syntax errors become validation errors."""
    path = tmp_path / "lab.yml"
    path.write_text("machines: [unclosed\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="Failed to parse"):
        load_inventory(path)


def test_address_collision_is_rejected() -> None:
    """Two machines may not share a normalised address."""
    raw = {
        "machines": [
            _machine("dc", "192.168.0.172"),
            _machine("node1", "192.168.0.172"),
        ]
    }

    with pytest.raises(ValidationError, match="192.168.0.172"):
        parse_inventory(raw)


def test_ipv6_addresses_are_normalised_before_comparison() -> None:
    """Equivalent IPv6 spellings collide."""
    raw = {
        "machines": [
            _machine("a", "fd00::1"),
            _machine("b", "fd00:0:0::0001"),
        ]
    }

    with pytest.raises(ValidationError, match="fd00::1"):
        parse_inventory(raw)


def test_invalid_address_is_rejected() -> None:
    """Addresses must be IP literals."""
    with pytest.raises(ValidationError, match="invalid address"):
        parse_inventory({"machines": [_machine("dc", "dc.lab")]})


def test_problems_are_collected() -> None:
    """Several structural problems are reported together."""
    raw = {
        "machines": [
            {"name": "dc", "address": "10.0.0.1", "colour": "blue", "steps": [{"id": "x"}]},
            {"name": "node1", "role": "printer", "address": "10.0.0.2"},
        ]
    }

    with pytest.raises(ValidationError) as excinfo:
        parse_inventory(raw)

    problems = excinfo.value.problems
    assert len(problems) == 3
    assert any("colour" in problem for problem in problems)
    assert any("command is required" in problem for problem in problems)
    assert any("printer" in problem for problem in problems)


@pytest.mark.parametrize(
    ("machines", "message"),
    [
        (
            [_machine("dc", "10.0.0.1"), _machine("dc", "10.0.0.2")],
            "Duplicate machine name",
        ),
        (
            [_machine("dc", "10.0.0.1", depends_on=["dc"])],
            "cannot depend on itself",
        ),
        (
            [_machine("node1", "10.0.0.1", depends_on=["dc"])],
            "unknown machine 'dc'",
        ),
        (
            [
                _machine(
                    "dc",
                    "10.0.0.1",
                    steps=[{"id": "a", "command": "true"}, {"id": "a", "command": "true"}],
                )
            ],
            "declares step 'a' twice",
        ),
    ],
)
def test_invariant_violations(machines: list[dict[str, Any]], message: str) -> None:
    """Structural invariants are enforced before anything runs."""
    with pytest.raises(ValidationError, match=message):
        parse_inventory({"machines": machines})


def test_cycle_is_rejected_with_path() -> None:
    """Dependency cycles raise CycleError naming the cycle."""
    raw = {
        "machines": [
            _machine("a", "10.0.0.1", depends_on=["c"]),
            _machine("b", "10.0.0.2", depends_on=["a"]),
            _machine("c", "10.0.0.3", depends_on=["b"]),
        ]
    }

    with pytest.raises(CycleError) as excinfo:
        parse_inventory(raw)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "Dependency cycle detected" in str(excinfo.value)


def test_find_cycle_returns_none_for_dag() -> None:
    """Acyclic graphs have no cycle."""
    inventory = parse_inventory(
        {
            "machines": [
                _machine("a", "10.0.0.1"),
                _machine("b", "10.0.0.2", depends_on=["a"]),
                _machine("c", "10.0.0.3", depends_on=["a", "b"]),
            ]
        }
    )

    assert find_cycle(inventory.machines) is None


def test_depends_on_roles_expands_to_other_machines() -> None:
    """Role dependencies expand to every other machine with that role."""
    inventory = parse_inventory(
        {
            "machines": [
                _machine("dc1", "10.0.0.1", role="domain-controller"),
                _machine("dc2", "10.0.0.2", role="domain-controller", depends_on=["dc1"]),
                _machine(
                    "node1",
                    "10.0.0.3",
                    role="domain-member",
                    depends_on_roles=["domain-controller"],
                ),
                _machine(
                    "dc3",
                    "10.0.0.4",
                    role="domain-controller",
                    depends_on_roles=["domain-controller"],
                ),
            ]
        }
    )

    node1 = inventory.get("node1")
    dc3 = inventory.get("dc3")
    assert node1 is not None and dc3 is not None
    assert node1.depends_on == ("dc1", "dc2", "dc3")
    assert dc3.depends_on == ("dc1", "dc2")


def test_undefined_template_variable_is_a_validation_error() -> None:
    """Commands referencing unknown variables are rejected."""
    raw = {
        "machines": [
            _machine("dc", "10.0.0.1", steps=[{"id": "a", "command": "ping {{ vars.gateway }}"}])
        ]
    }

    with pytest.raises(ValidationError, match="gateway"):
        parse_inventory(raw)


@pytest.mark.parametrize(
    "command",
    ["{{ vars.cmd }}", "  {{ vars.cmd }}  ", ["{{ vars.cmd }}"]],
)
def test_command_rendering_to_nothing_is_a_validation_error(command: object) -> None:
    """A command whose template renders blank is rejected, not run verbatim."""
    raw = {
        "vars": {"cmd": ""},
        "machines": [_machine("dc", "10.0.0.1", steps=[{"id": "a", "command": command}])],
    }

    with pytest.raises(ValidationError, match="renders to an empty command"):
        parse_inventory(raw)


def test_fingerprint_tracks_step_definition() -> None:
    """Changing the command changes the fingerprint; descriptions do not."""

    def build(command: str, description: str) -> str:
        inventory = parse_inventory(
            {
                "machines": [
                    _machine(
                        "dc",
                        "10.0.0.1",
                        steps=[{"id": "a", "command": command, "description": description}],
                    )
                ]
            }
        )
        return inventory.machines[0].steps[0].fingerprint

    assert build("echo one", "first") == build("echo one", "second")
    assert build("echo one", "first") != build("echo two", "first")


def test_subset_includes_transitive_dependencies() -> None:
    """Selecting a machine pulls in everything it depends on."""
    inventory = parse_inventory(
        {
            "machines": [
                _machine("dc", "10.0.0.1"),
                _machine("file", "10.0.0.2", depends_on=["dc"]),
                _machine("node1", "10.0.0.3", depends_on=["file"]),
                _machine("node2", "10.0.0.4", depends_on=["dc"]),
            ]
        }
    )

    assert inventory.subset(["node1"]).names == ("dc", "file", "node1")
    with pytest.raises(ValidationError, match="Unknown machines: ghost"):
        inventory.subset(["ghost"])
