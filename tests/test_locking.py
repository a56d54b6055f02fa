"""Tests for the run and machine lock manager."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from labctl.locking import LockManager, LockTimeoutError


def test_machine_lock_writes_holder_metadata(tmp_path: Path) -> None:
    """A machine lock records the holder and can be re-acquired after release."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "machines" / "dc.lock"
    with manager.machine_lock("dc") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    with manager.machine_lock("dc", timeout=0.2):
        pass
    assert lock_path.exists()


def test_machine_lock_times_out_while_held(tmp_path: Path) -> None:
    """A second holder gives up once the timeout elapses."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0, poll_interval=0.01)

    with manager.machine_lock("node1"):
        with pytest.raises(LockTimeoutError, match="node1.lock"):
            with manager.machine_lock("node1", timeout=0.05):
                pass


def test_global_lock_blocks_a_second_run(tmp_path: Path) -> None:
    """The global lock serialises whole runs."""
    manager = LockManager(tmp_path / "run", default_timeout=0.05, poll_interval=0.01)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_machines(["dc"]):
                pass


def test_mutate_machines_takes_global_then_sorted_machine_locks(tmp_path: Path) -> None:
    """Bundles hold the global lock first, then machine locks in sorted order."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_machines(["node2", "dc", "node2"]) as bundle:
        assert bundle.wait_ms >= 0
        assert bundle.paths == [
            tmp_path / "run" / "labctl.lock",
            tmp_path / "run" / "machines" / "dc.lock",
            tmp_path / "run" / "machines" / "node2.lock",
        ]


def test_mutate_machines_without_global_lock(tmp_path: Path) -> None:
    """Callers may skip the global lock when only machine state changes."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with manager.mutate_machines(["dc"], include_global=False, timeout=0.1) as bundle:
            assert bundle.paths == [tmp_path / "run" / "machines" / "dc.lock"]
