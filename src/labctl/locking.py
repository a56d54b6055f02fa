"""Advisory file locks guarding labctl state.

Locks live under the runtime directory (``/run/labctl`` by default): a global
``labctl.lock`` serialises whole runs, and ``machines/<name>.lock`` guards
the state of a single machine. Bundles always take the global lock first and
machine locks in sorted order so concurrent invocations cannot deadlock. Lock
files persist after release; they carry JSON metadata about the last holder
for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "labctl.lock"


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int
    fd: int


@dataclass(slots=True)
class LockBundle:
    """A group of locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)

    @property
    def paths(self) -> list[Path]:
        """Return the lock file paths held by the bundle."""
        return [handle.path for handle in self.handles]


class LockManager:
    """Acquire global and per-machine locks under *runtime_dir*."""

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        """Configure the lock directory and timeouts."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def global_path(self) -> Path:
        """Return the path of the global lock."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def machine_path(self, name: str) -> Path:
        """Return the lock path for machine *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / "machines" / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        handle = self._acquire(self.global_path(), timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def machine_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for machine *name* for the duration of the block."""
        handle = self._acquire(self.machine_path(name), timeout)
        try:
            yield handle
        finally:
            self._release(handle)

    @contextmanager
    def mutate_machines(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) then each machine lock."""
        bundle = LockBundle()
        with ExitStack() as stack:
            if include_global:
                bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.machine_lock(name, timeout=timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    def _acquire(self, path: Path, timeout: float | None) -> LockHandle:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        start = time.monotonic()
        deadline = start + max(limit, 0.0)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {limit:g}s waiting for lock {path}"
                    ) from None
                time.sleep(self.poll_interval)
        wait_ms = int((time.monotonic() - start) * 1000)
        self._write_metadata(fd, path)
        return LockHandle(path=path, wait_ms=wait_ms, fd=fd)

    @staticmethod
    def _release(handle: LockHandle) -> None:
        try:
            fcntl.flock(handle.fd, fcntl.LOCK_UN)
        finally:
            os.close(handle.fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
