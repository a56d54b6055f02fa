"""Serialise run reports for JSON output and the Markdown summary."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path

from .models import MachineStatus, RunReport, StepResult
from .templates import TemplateEngine

SUMMARY_TEMPLATE = "report/summary.md.j2"


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _step_payload(step: StepResult) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": step.id,
        "status": step.status.value,
        "outcome": step.outcome.value,
        "attempts": step.attempts,
    }
    if step.detail:
        payload["detail"] = step.detail
    if step.failure_kind:
        payload["failure_kind"] = step.failure_kind
    if step.duration_ms is not None:
        payload["duration_ms"] = step.duration_ms
    if step.rollback:
        payload["rollback"] = step.rollback
    return payload


def serialize_report(report: RunReport) -> dict[str, object]:
    """Convert a run report into a JSON-serialisable mapping."""
    totals = {
        status.value: int(report.summary.totals.get(status, 0))
        for status in MachineStatus
    }
    summary_payload = {
        "status": report.summary.status.value,
        "exit_code": report.summary.exit_code,
        "totals": totals,
    }
    machines_payload: list[dict[str, object]] = []
    for result in report.machines:
        machine_payload: dict[str, object] = {
            "name": result.name,
            "status": result.status.value,
            "steps": [_step_payload(step) for step in result.steps],
        }
        if result.detail:
            machine_payload["detail"] = result.detail
        if result.duration_ms is not None:
            machine_payload["duration_ms"] = result.duration_ms
        machines_payload.append(machine_payload)

    metadata_payload = _sanitize_payload(report.metadata) if report.metadata else {}
    return {
        "summary": summary_payload,
        "machines": machines_payload,
        "metadata": metadata_payload,
    }


def _summary_context(
    report: RunReport, inventory: str | None, generated_at: str | None
) -> dict[str, object]:
    stamp = generated_at or datetime.now(tz=UTC).isoformat(timespec="seconds")
    return {
        "report": serialize_report(report),
        "inventory": inventory,
        "generated_at": stamp,
    }


def write_markdown(
    report: RunReport,
    templates: TemplateEngine,
    destination: Path,
    *,
    inventory: str | None = None,
    generated_at: str | None = None,
) -> bool:
    """Write the Markdown summary of *report* to *destination*.

    The file is replaced atomically. Returns ``False`` when *destination*
    already held the same summary.
    """
    return templates.render_to_path(
        SUMMARY_TEMPLATE,
        destination,
        _summary_context(report, inventory, generated_at),
    )


__all__ = ["SUMMARY_TEMPLATE", "serialize_report", "write_markdown"]
