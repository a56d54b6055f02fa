"""Pytest configuration helpers for the labctl test suite."""

from __future__ import annotations

import os

import pytest


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that spawn slow subprocesses during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Spawns slow subprocesses; skipped during mutation run.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture(autouse=True)
def _isolate_labctl_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep LABCTL_* variables from the invoking shell out of every test."""
    for key in list(os.environ):
        if key.startswith("LABCTL_"):
            monkeypatch.delenv(key, raising=False)
