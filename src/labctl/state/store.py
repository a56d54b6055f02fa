"""Durable per-step run records keyed by machine.

Each machine owns one registry document (``<machine>.yml``)::

    machine: node1
    steps:
      install-prereqs:
        status: succeeded
        last_attempt_at: '2024-05-01T10:00:00Z'
        attempt_count: 1
        fingerprint: 9f2c...

Writers for the same machine are serialised with an in-process lock; distinct
machines never share a document, so parallel workers only contend on their
own key.
"""
from __future__ import annotations

import threading
from collections.abc import Mapping

from ..errors import ValidationError
from ..inventory import NAME_PATTERN
from ..models import RunRecord
from .registry import StateRegistry, StateRegistryError


class StateStore:
    """Get/put/reset access to :class:`RunRecord` entries."""

    def __init__(self, registry: StateRegistry) -> None:
        """Bind the store to *registry*."""
        self._registry = registry
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @property
    def registry(self) -> StateRegistry:
        """Return the backing registry."""
        return self._registry

    # ------------------------------------------------------------------
    def get(self, machine: str, step_id: str) -> RunRecord | None:
        """Return the record for *step_id* on *machine*, if one exists."""
        with self._lock_for(machine):
            steps = self._load_steps(machine)
        raw = steps.get(step_id)
        if raw is None:
            return None
        return RunRecord.from_mapping(raw)

    def records(self, machine: str) -> dict[str, RunRecord]:
        """Return every stored record for *machine* keyed by step id."""
        with self._lock_for(machine):
            steps = self._load_steps(machine)
        return {step_id: RunRecord.from_mapping(raw) for step_id, raw in steps.items()}

    def put(self, machine: str, step_id: str, record: RunRecord) -> None:
        """Durably store *record*; returns once the write has been synced."""
        with self._lock_for(machine):
            steps = self._load_steps(machine)
            steps[step_id] = record.to_dict()
            self._save_steps(machine, steps)

    def reset(self, machine: str, step_id: str | None = None) -> int:
        """Forget one step (or every step) of *machine*; return records removed.

        Raises :class:`ValidationError` when *machine* or *step_id* is not a
        valid name.
        """
        if step_id is not None:
            _check_name(step_id, "step id")
        with self._lock_for(machine):
            steps = self._load_steps(machine)
            if not steps:
                return 0
            if step_id is None:
                self._registry.remove(self._document(machine))
                return len(steps)
            if step_id not in steps:
                return 0
            del steps[step_id]
            if steps:
                self._save_steps(machine, steps)
            else:
                self._registry.remove(self._document(machine))
            return 1

    def machines(self) -> list[str]:
        """Return the names of machines with stored records."""
        return [name[: -len(".yml")] for name in self._registry.list_names("*.yml")]

    # ------------------------------------------------------------------
    def _lock_for(self, machine: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(machine)
            if lock is None:
                lock = threading.Lock()
                self._locks[machine] = lock
            return lock

    @staticmethod
    def _document(machine: str) -> str:
        _check_name(machine, "machine name")
        return f"{machine}.yml"

    def _load_steps(self, machine: str) -> dict[str, dict[str, object]]:
        data = self._registry.read(self._document(machine), default={})
        if not isinstance(data, Mapping):
            raise StateRegistryError(
                f"State for machine '{machine}' must be a mapping, "
                f"got {type(data).__name__}."
            )
        raw_steps = data.get("steps") or {}
        if not isinstance(raw_steps, Mapping):
            raise StateRegistryError(f"State for machine '{machine}' has malformed 'steps'.")
        steps: dict[str, dict[str, object]] = {}
        for step_id, entry in raw_steps.items():
            if isinstance(entry, Mapping):
                steps[str(step_id)] = dict(entry)
        return steps

    def _save_steps(self, machine: str, steps: Mapping[str, Mapping[str, object]]) -> None:
        self._registry.write(
            self._document(machine),
            {"machine": machine, "steps": {key: dict(value) for key, value in steps.items()}},
        )


def _check_name(value: str, label: str) -> None:
    if not NAME_PATTERN.fullmatch(value):
        raise ValidationError(f"Invalid {label} {value!r}: must match {NAME_PATTERN.pattern}.")


__all__ = ["StateStore"]
