"""Inventory model: machines, their steps, and validation.

An inventory is declared in YAML::

    vars:
      domain: nextlevel.local
    defaults:
      retries: 1
      timeout: 600
      transport: ["vagrant", "ssh", "{{ machine.name }}", "-c"]
    machines:
      - name: dc
        role: domain-controller
        address: 192.168.0.172
        steps:
          - id: promote-to-controller
            command: powershell -File C:/provision/promote.ps1 {{ vars.domain }}
      - name: node1
        role: domain-member
        address: 192.168.0.173
        depends_on_roles: [domain-controller]
        steps:
          - id: join-domain
            applies_if: "! realm list | grep -q {{ vars.domain }}"
            command: realm join {{ vars.domain }}

String values in steps and transports are Jinja2 templates rendered with
``machine``, ``machines`` and ``vars`` in scope. The resulting
:class:`Inventory` is an immutable, validated snapshot.
"""
from __future__ import annotations

import hashlib
import ipaddress
import json
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import CycleError, ValidationError
from .templates import TemplateEngine, TemplateRenderError

NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

INVENTORY_KEYS = {"vars", "defaults", "machines"}
DEFAULT_KEYS = {"retries", "retry_delay", "timeout", "transport", "env"}
MACHINE_KEYS = {
    "name",
    "role",
    "address",
    "depends_on",
    "depends_on_roles",
    "vars",
    "transport",
    "steps",
}
STEP_KEYS = {
    "id",
    "description",
    "command",
    "applies_if",
    "rollback",
    "retries",
    "retry_delay",
    "timeout",
    "env",
}

Command = str | tuple[str, ...]


class Role(str, Enum):
    """Role a machine plays in the lab."""

    DOMAIN_CONTROLLER = "domain-controller"
    DOMAIN_MEMBER = "domain-member"
    HOST = "host"


@dataclass(slots=True, frozen=True)
class Step:
    """A named, idempotent unit of provisioning work."""

    id: str
    command: Command
    applies_if: Command | None = None
    rollback: Command | None = None
    retries: int | None = None
    retry_delay: float | None = None
    timeout: float | None = None
    env: tuple[tuple[str, str], ...] = ()
    transport: tuple[str, ...] = ()
    description: str | None = None

    @property
    def fingerprint(self) -> str:
        """Return a digest identifying the step definition."""
        payload = {
            "command": _command_payload(self.command),
            "applies_if": _command_payload(self.applies_if),
            "transport": list(self.transport),
            "env": [list(pair) for pair in self.env],
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    @property
    def env_map(self) -> dict[str, str]:
        """Return the extra environment as a dictionary."""
        return dict(self.env)


@dataclass(slots=True, frozen=True)
class Machine:
    """A provisioned machine and its ordered steps."""

    name: str
    role: Role
    address: str
    depends_on: tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()
    transport: tuple[str, ...] = ()
    vars: Mapping[str, Any] = field(default_factory=dict, compare=False)
    depends_on_roles: tuple[Role, ...] = ()

    def step(self, step_id: str) -> Step | None:
        """Return the step named *step_id*."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


@dataclass(frozen=True)
class Inventory:
    """Validated, immutable set of machines in declaration order."""

    machines: tuple[Machine, ...]
    vars: Mapping[str, Any] = field(default_factory=dict, compare=False)
    source: str | None = None

    def __iter__(self) -> Iterator[Machine]:
        """Iterate machines in declaration order."""
        return iter(self.machines)

    def __len__(self) -> int:
        """Return the number of machines."""
        return len(self.machines)

    @property
    def names(self) -> tuple[str, ...]:
        """Return machine names in declaration order."""
        return tuple(machine.name for machine in self.machines)

    def get(self, name: str) -> Machine | None:
        """Return the machine called *name*, if declared."""
        for machine in self.machines:
            if machine.name == name:
                return machine
        return None

    def subset(self, names: Sequence[str]) -> Inventory:
        """Return an inventory with *names* and their transitive dependencies."""
        unknown = [name for name in names if self.get(name) is None]
        if unknown:
            raise ValidationError(f"Unknown machines: {', '.join(unknown)}")
        wanted: set[str] = set()
        pending = list(names)
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            wanted.add(name)
            machine = self.get(name)
            if machine is not None:
                pending.extend(machine.depends_on)
        kept = tuple(machine for machine in self.machines if machine.name in wanted)
        return Inventory(machines=kept, vars=self.vars, source=self.source)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_inventory(path: Path, *, templates: TemplateEngine | None = None) -> Inventory:
    """Read, render and validate the inventory stored at *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(f"Inventory file not found: {path}") from exc
    except OSError as exc:
        raise ValidationError(f"Unable to read inventory {path}: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"Failed to parse inventory {path}: {exc}") from exc
    return parse_inventory(raw, source=str(path), templates=templates)


def parse_inventory(
    raw: object,
    *,
    source: str | None = None,
    templates: TemplateEngine | None = None,
) -> Inventory:
    """Build a validated :class:`Inventory` from a decoded mapping."""
    if not isinstance(raw, Mapping):
        raise ValidationError("Inventory must be a mapping with a 'machines' list.")
    problems: list[str] = []
    _check_keys(raw, INVENTORY_KEYS, "inventory", problems)

    global_vars = _mapping(raw.get("vars"), "vars", problems)
    defaults = _mapping(raw.get("defaults"), "defaults", problems)
    _check_keys(defaults, DEFAULT_KEYS, "defaults", problems)

    raw_machines = raw.get("machines")
    if not isinstance(raw_machines, list) or not raw_machines:
        problems.append("'machines' must be a non-empty list.")
        raw_machines = []

    drafts = [
        _parse_machine(entry, index, defaults, problems)
        for index, entry in enumerate(raw_machines)
    ]
    if problems:
        raise ValidationError(_summarise(problems), problems=problems)

    machines = _expand_role_dependencies([draft for draft in drafts if draft is not None])
    engine = templates or TemplateEngine.with_overrides(None)
    machines = _render_machines(machines, global_vars, engine, problems)
    if problems:
        raise ValidationError(_summarise(problems), problems=problems)

    validate_machines(machines)
    return Inventory(machines=tuple(machines), vars=dict(global_vars), source=source)


def validate_machines(machines: Sequence[Machine]) -> None:
    """Check inventory invariants, raising on the first class of problem found."""
    problems: list[str] = []
    names: set[str] = set()
    addresses: dict[str, str] = {}

    for machine in machines:
        if machine.name in names:
            problems.append(f"Duplicate machine name '{machine.name}'.")
        names.add(machine.name)

        try:
            normalised = str(ipaddress.ip_address(machine.address.strip()))
        except ValueError:
            problems.append(
                f"Machine '{machine.name}' has invalid address '{machine.address}'."
            )
        else:
            owner = addresses.get(normalised)
            if owner is not None:
                problems.append(
                    f"Address {normalised} is assigned to both '{owner}' and '{machine.name}'."
                )
            else:
                addresses[normalised] = machine.name

        seen_steps: set[str] = set()
        for step in machine.steps:
            if step.id in seen_steps:
                problems.append(f"Machine '{machine.name}' declares step '{step.id}' twice.")
            seen_steps.add(step.id)

    for machine in machines:
        for dependency in machine.depends_on:
            if dependency == machine.name:
                problems.append(f"Machine '{machine.name}' cannot depend on itself.")
            elif dependency not in names:
                problems.append(
                    f"Machine '{machine.name}' depends on unknown machine '{dependency}'."
                )

    if problems:
        raise ValidationError(_summarise(problems), problems=problems)

    cycle = find_cycle(machines)
    if cycle is not None:
        raise CycleError(cycle)


def find_cycle(machines: Sequence[Machine]) -> list[str] | None:
    """Return one dependency cycle as a closed path, or ``None``."""
    edges = {machine.name: machine.depends_on for machine in machines}
    white, grey, black = 0, 1, 2
    colour = {name: white for name in edges}
    stack: list[str] = []

    def visit(name: str) -> list[str] | None:
        colour[name] = grey
        stack.append(name)
        for dependency in edges.get(name, ()):
            state = colour.get(dependency)
            if state is None:
                continue
            if state == grey:
                start = stack.index(dependency)
                return [*stack[start:], dependency]
            if state == white:
                found = visit(dependency)
                if found is not None:
                    return found
        stack.pop()
        colour[name] = black
        return None

    for name in edges:
        if colour[name] == white:
            found = visit(name)
            if found is not None:
                return found
    return None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_machine(
    entry: object,
    index: int,
    defaults: Mapping[str, object],
    problems: list[str],
) -> Machine | None:
    label = f"machines[{index}]"
    if not isinstance(entry, Mapping):
        problems.append(f"{label} must be a mapping.")
        return None
    _check_keys(entry, MACHINE_KEYS, label, problems)

    name = entry.get("name")
    if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name.strip()):
        problems.append(f"{label}.name must match {NAME_PATTERN.pattern}.")
        return None
    name = name.strip()
    label = f"machine '{name}'"

    role_raw = entry.get("role", Role.HOST.value)
    try:
        role = Role(str(role_raw))
    except ValueError:
        allowed = ", ".join(role.value for role in Role)
        problems.append(f"{label} has unknown role '{role_raw}'. Allowed: {allowed}.")
        role = Role.HOST

    address = entry.get("address")
    if not isinstance(address, str) or not address.strip():
        problems.append(f"{label} requires a static 'address'.")
        address = ""

    depends_on = _string_list(entry.get("depends_on"), f"{label}.depends_on", problems)
    depends_on_roles: list[Role] = []
    for value in _string_list(entry.get("depends_on_roles"), f"{label}.depends_on_roles", problems):
        try:
            depends_on_roles.append(Role(value))
        except ValueError:
            problems.append(f"{label}.depends_on_roles has unknown role '{value}'.")

    machine_vars = _mapping(entry.get("vars"), f"{label}.vars", problems)
    transport_raw = entry.get("transport", defaults.get("transport"))
    transport = tuple(_string_list(transport_raw, f"{label}.transport", problems))

    raw_steps = entry.get("steps") or []
    if not isinstance(raw_steps, list):
        problems.append(f"{label}.steps must be a list.")
        raw_steps = []
    steps = [
        _parse_step(step_entry, f"{label}.steps[{position}]", defaults, transport, problems)
        for position, step_entry in enumerate(raw_steps)
    ]

    return Machine(
        name=name,
        role=role,
        address=address.strip() if isinstance(address, str) else "",
        depends_on=tuple(dict.fromkeys(depends_on)),
        steps=tuple(step for step in steps if step is not None),
        transport=transport,
        vars=machine_vars,
        depends_on_roles=tuple(depends_on_roles),
    )


def _parse_step(
    entry: object,
    label: str,
    defaults: Mapping[str, object],
    transport: tuple[str, ...],
    problems: list[str],
) -> Step | None:
    if not isinstance(entry, Mapping):
        problems.append(f"{label} must be a mapping.")
        return None
    _check_keys(entry, STEP_KEYS, label, problems)

    step_id = entry.get("id")
    if not isinstance(step_id, str) or not NAME_PATTERN.fullmatch(step_id.strip()):
        problems.append(f"{label}.id must match {NAME_PATTERN.pattern}.")
        return None
    step_id = step_id.strip()

    command = _command(entry.get("command"), f"{label}.command", problems, required=True)
    applies_if = _command(entry.get("applies_if"), f"{label}.applies_if", problems)
    rollback = _command(entry.get("rollback"), f"{label}.rollback", problems)

    retries = _optional_int(
        entry.get("retries", defaults.get("retries")), f"{label}.retries", problems
    )
    retry_delay = _optional_float(
        entry.get("retry_delay", defaults.get("retry_delay")),
        f"{label}.retry_delay",
        problems,
        allow_zero=True,
    )
    timeout = _optional_float(
        entry.get("timeout", defaults.get("timeout")),
        f"{label}.timeout",
        problems,
        allow_zero=False,
    )

    env: dict[str, str] = {}
    for source in (defaults.get("env"), entry.get("env")):
        for key, value in _mapping(source, f"{label}.env", problems).items():
            env[str(key)] = "" if value is None else str(value)

    description = entry.get("description")
    return Step(
        id=step_id,
        command=command if command is not None else "",
        applies_if=applies_if,
        rollback=rollback,
        retries=retries,
        retry_delay=retry_delay,
        timeout=timeout,
        env=tuple(env.items()),
        transport=transport,
        description=str(description) if description is not None else None,
    )


def _expand_role_dependencies(machines: list[Machine]) -> list[Machine]:
    by_role: dict[Role, list[str]] = {}
    for machine in machines:
        by_role.setdefault(machine.role, []).append(machine.name)

    expanded: list[Machine] = []
    for machine in machines:
        if not machine.depends_on_roles:
            expanded.append(machine)
            continue
        names = list(machine.depends_on)
        for role in machine.depends_on_roles:
            for candidate in by_role.get(role, []):
                if candidate != machine.name and candidate not in names:
                    names.append(candidate)
        expanded.append(_replace_machine(machine, depends_on=tuple(names)))
    return expanded


def _render_machines(
    machines: list[Machine],
    global_vars: Mapping[str, object],
    engine: TemplateEngine,
    problems: list[str],
) -> list[Machine]:
    facts = {
        machine.name: {
            "name": machine.name,
            "role": machine.role.value,
            "address": machine.address,
            "vars": {**global_vars, **machine.vars},
        }
        for machine in machines
    }

    rendered: list[Machine] = []
    for machine in machines:
        context = {
            "machine": facts[machine.name],
            "machines": facts,
            "vars": facts[machine.name]["vars"],
        }

        def render(value: Command | None, label: str) -> Command | None:
            if value is None:
                return None
            try:
                if isinstance(value, tuple):
                    return tuple(engine.render_inline(item, context) for item in value)
                return engine.render_inline(value, context)
            except TemplateRenderError as exc:
                problems.append(f"{label}: {exc}")
                return value

        transport = render(machine.transport, f"machine '{machine.name}' transport")
        transport_tuple = transport if isinstance(transport, tuple) else machine.transport
        steps: list[Step] = []
        for step in machine.steps:
            label = f"machine '{machine.name}' step '{step.id}'"
            env = tuple(
                (key, str(render(value, f"{label} env {key}"))) for key, value in step.env
            )
            command = render(step.command, f"{label} command")
            if command is None or not _has_content(command):
                problems.append(f"{label} renders to an empty command.")
                command = step.command
            steps.append(
                Step(
                    id=step.id,
                    command=command,
                    applies_if=render(step.applies_if, f"{label} applies_if"),
                    rollback=render(step.rollback, f"{label} rollback"),
                    retries=step.retries,
                    retry_delay=step.retry_delay,
                    timeout=step.timeout,
                    env=env,
                    transport=transport_tuple,
                    description=step.description,
                )
            )
        rendered.append(
            _replace_machine(machine, steps=tuple(steps), transport=transport_tuple)
        )
    return rendered


def _has_content(command: Command) -> bool:
    if isinstance(command, tuple):
        return any(item.strip() for item in command)
    return bool(command.strip())


def _replace_machine(machine: Machine, **changes: Any) -> Machine:
    values: dict[str, Any] = {
        "name": machine.name,
        "role": machine.role,
        "address": machine.address,
        "depends_on": machine.depends_on,
        "steps": machine.steps,
        "transport": machine.transport,
        "vars": machine.vars,
        "depends_on_roles": machine.depends_on_roles,
    }
    values.update(changes)
    return Machine(**values)


def _command(
    value: object,
    label: str,
    problems: list[str],
    *,
    required: bool = False,
) -> Command | None:
    if value is None:
        if required:
            problems.append(f"{label} is required.")
        return None
    if isinstance(value, str):
        if not value.strip():
            problems.append(f"{label} must not be empty.")
            return None
        return value
    if isinstance(value, list) and value and all(isinstance(item, str) for item in value):
        return tuple(value)
    problems.append(f"{label} must be a string or a non-empty list of strings.")
    return None


def _command_payload(command: Command | None) -> object:
    if command is None or isinstance(command, str):
        return command
    return list(command)


def _check_keys(
    raw: Mapping[str, object],
    allowed: set[str],
    label: str,
    problems: list[str],
) -> None:
    unknown = {str(key) for key in raw.keys()} - allowed
    if unknown:
        problems.append(f"Unknown keys in {label}: {', '.join(sorted(unknown))}.")


def _mapping(value: object, label: str, problems: list[str]) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        problems.append(f"{label} must be a mapping.")
        return {}
    return {str(key): item for key, item in value.items()}


def _string_list(value: object, label: str, problems: list[str]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return [item.strip() for item in value if item.strip()]
    problems.append(f"{label} must be a string or a list of strings.")
    return []


def _optional_int(value: object, label: str, problems: list[str]) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        problems.append(f"{label} must be a non-negative integer.")
        return None
    return value


def _optional_float(
    value: object,
    label: str,
    problems: list[str],
    *,
    allow_zero: bool,
) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        problems.append(f"{label} must be a number.")
        return None
    numeric = float(value)
    if numeric < 0 or (numeric == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "greater than zero"
        problems.append(f"{label} must be {qualifier}.")
        return None
    return numeric


def _summarise(problems: Sequence[str]) -> str:
    if len(problems) == 1:
        return f"Invalid inventory: {problems[0]}"
    return f"Invalid inventory ({len(problems)} problems): {problems[0]}"


__all__ = [
    "Command",
    "Inventory",
    "Machine",
    "Role",
    "Step",
    "find_cycle",
    "load_inventory",
    "parse_inventory",
    "validate_machines",
]
