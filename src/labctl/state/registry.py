"""Durable YAML document storage for labctl state.

The registry directory (``<state_dir>/registry`` by default) holds one YAML
document per machine. A write never leaves a torn or missing document behind:
the payload is fsynced into a temporary sibling, renamed over the target and
the directory entry is fsynced after the rename.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

import yaml

DOCUMENT_MODE = 0o640


class StateRegistryError(RuntimeError):
    """Raised when a registry document cannot be read."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and write named YAML documents under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Expand ``~`` in the root path."""
        object.__setattr__(self, "root", self.root.expanduser())

    def path_for(self, name: str) -> Path:
        """Return the filesystem path of document *name*."""
        return self.root / name

    def exists(self, name: str) -> bool:
        """Return ``True`` when document *name* is present."""
        return self.path_for(name).is_file()

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Return the parsed document, or a copy of *default* when absent or empty."""
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        except OSError as exc:
            raise StateRegistryError(f"Unable to read registry file {path}: {exc}") from exc
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return deepcopy(default) if data is None else data

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace document *name* with *payload* atomically and durably."""
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(name)
        fd, temp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{target.name}.")
        temp = Path(temp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp, DOCUMENT_MODE)
            os.replace(temp, target)
            self._sync_directory()
        finally:
            temp.unlink(missing_ok=True)

    def remove(self, name: str) -> bool:
        """Delete document *name*; return ``False`` when it did not exist."""
        try:
            self.path_for(name).unlink()
        except FileNotFoundError:
            return False
        self._sync_directory()
        return True

    def list_names(self, pattern: str = "*.yml") -> list[str]:
        """Return the sorted names of documents matching *pattern*."""
        if not self.root.is_dir():
            return []
        return sorted(path.name for path in self.root.glob(pattern) if path.is_file())

    def _sync_directory(self) -> None:
        try:
            dir_fd = os.open(str(self.root), os.O_RDONLY)
        except OSError:  # pragma: no cover - no directory descriptors on this platform
            return
        try:
            os.fsync(dir_fd)
        except OSError:  # pragma: no cover - filesystem rejects directory fsync
            pass
        finally:
            os.close(dir_fd)


__all__ = ["DOCUMENT_MODE", "StateRegistry", "StateRegistryError"]
