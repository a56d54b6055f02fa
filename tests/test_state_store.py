"""Tests for the per-machine run record store."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from labctl.errors import ValidationError
from labctl.models import RunRecord, StepStatus
from labctl.state import StateRegistry, StateRegistryError, StateStore


def _store(tmp_path: Path) -> StateStore:
    return StateStore(StateRegistry(tmp_path / "machines"))


def test_get_returns_none_without_records(tmp_path: Path) -> None:
    """Unknown machines and steps have no record."""
    store = _store(tmp_path)

    assert store.get("dc", "promote") is None
    assert store.records("dc") == {}
    assert store.machines() == []


def test_put_persists_record_document(tmp_path: Path) -> None:
    """Records are stored in one YAML document per machine."""
    store = _store(tmp_path)
    record = RunRecord(
        status=StepStatus.FAILED,
        last_attempt_at="2024-05-01T10:00:00Z",
        attempt_count=2,
        error_detail="exit 1: boom",
        failure_kind="command",
        fingerprint="abc",
    )

    store.put("dc", "promote", record)

    assert store.get("dc", "promote") == record
    document = yaml.safe_load((tmp_path / "machines" / "dc.yml").read_text(encoding="utf-8"))
    assert document == {
        "machine": "dc",
        "steps": {
            "promote": {
                "status": "failed",
                "last_attempt_at": "2024-05-01T10:00:00Z",
                "attempt_count": 2,
                "error_detail": "exit 1: boom",
                "failure_kind": "command",
                "fingerprint": "abc",
            }
        },
    }


def test_put_overwrites_and_keeps_other_steps(tmp_path: Path) -> None:
    """Updating one step leaves sibling records untouched."""
    store = _store(tmp_path)
    store.put("node1", "install", RunRecord(StepStatus.SUCCEEDED, attempt_count=1))
    store.put("node1", "join", RunRecord(StepStatus.PENDING, attempt_count=1))
    store.put("node1", "join", RunRecord(StepStatus.SUCCEEDED, attempt_count=1))

    records = store.records("node1")
    assert list(records) == ["install", "join"]
    assert records["join"].status is StepStatus.SUCCEEDED
    assert store.machines() == ["node1"]


def test_reset_single_step_and_whole_machine(tmp_path: Path) -> None:
    """Reset removes one step or every step of a machine."""
    store = _store(tmp_path)
    for step_id in ("a", "b", "c"):
        store.put("dc", step_id, RunRecord(StepStatus.SUCCEEDED, attempt_count=1))

    assert store.reset("dc", "b") == 1
    assert store.reset("dc", "b") == 0
    assert set(store.records("dc")) == {"a", "c"}

    assert store.reset("dc") == 2
    assert store.records("dc") == {}
    assert not (tmp_path / "machines" / "dc.yml").exists()
    assert store.reset("dc") == 0


def test_reset_last_step_removes_document(tmp_path: Path) -> None:
    """Resetting the only remaining step deletes the machine document."""
    store = _store(tmp_path)
    store.put("dc", "a", RunRecord(StepStatus.FAILED, attempt_count=3))

    assert store.reset("dc", "a") == 1
    assert store.machines() == []


def test_concurrent_puts_for_one_machine_are_serialised(tmp_path: Path) -> None:
    """Parallel writers for the same machine never lose each other's records."""
    store = _store(tmp_path)

    def write(step_id: str) -> None:
        store.put("dc", step_id, RunRecord(StepStatus.SUCCEEDED, attempt_count=1))

    threads = [threading.Thread(target=write, args=(f"step-{n}",)) for n in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store.records("dc")) == 16


def test_malformed_document_raises(tmp_path: Path) -> None:
    """A document that is not a mapping is reported as a registry error."""
    store = _store(tmp_path)
    (tmp_path / "machines").mkdir()
    (tmp_path / "machines" / "dc.yml").write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(StateRegistryError, match="must be a mapping"):
        store.get("dc", "promote")


@pytest.mark.parametrize("machine", ["../precious", "nested/dc", ".hidden", ""])
def test_reset_rejects_names_outside_the_registry(tmp_path: Path, machine: str) -> None:
    """Machine names that could escape the registry directory are refused."""
    store = _store(tmp_path)
    (tmp_path / "machines").mkdir()
    victim = tmp_path / "precious.yml"
    victim.write_text("keep: true\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="Invalid machine name"):
        store.reset(machine)
    with pytest.raises(ValidationError):
        store.put(machine, "promote", RunRecord(status=StepStatus.SUCCEEDED))

    assert victim.exists()


def test_reset_rejects_invalid_step_id(tmp_path: Path) -> None:
    """Step ids are validated before any document is touched."""
    store = _store(tmp_path)
    store.put("dc", "promote", RunRecord(status=StepStatus.SUCCEEDED))

    with pytest.raises(ValidationError, match="Invalid step id"):
        store.reset("dc", "../promote")

    assert store.get("dc", "promote") is not None


def test_reset_without_records_leaves_documents_alone(tmp_path: Path) -> None:
    """A document without step records is not removed by a reset."""
    store = _store(tmp_path)
    document = tmp_path / "machines" / "dc.yml"
    document.parent.mkdir()
    document.write_text("machine: dc\nsteps: {}\n", encoding="utf-8")

    assert store.reset("dc") == 0
    assert document.exists()
