"""Typer-powered command line interface for ``labctl``."""
from __future__ import annotations

import signal
import textwrap
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import ValidationError
from .exit_codes import ExitCode
from .inventory import Inventory, load_inventory
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import MachineStatus, RunReport, StepOutcome, StepResult, StepStatus
from .orchestrator import Orchestrator
from .report import serialize_report, write_markdown
from .runner import ActionRunner
from .state import StateRegistry, StateRegistryError, StateStore
from .templates import TemplateEngine, TemplateRenderError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to labctl's YAML config file.",
)

INVENTORY_ARGUMENT = typer.Argument(
    ...,
    dir_okay=False,
    help="Path to the inventory YAML file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

ONLY_OPTION = typer.Option(
    None,
    "--only",
    help="Comma-separated machines to run (their dependencies are included).",
)

MAX_WORKERS_OPTION = typer.Option(
    None,
    "--max-workers",
    min=1,
    help="Maximum machines provisioned in parallel (defaults to runner.max_workers).",
)

REPORT_FILE_OPTION = typer.Option(
    None,
    "--report-file",
    dir_okay=False,
    help="Also write a Markdown summary of the run to this path.",
)

_MACHINE_STATUS_STYLE = {
    MachineStatus.SUCCEEDED: "[green]succeeded[/green]",
    MachineStatus.FAILED: "[red]failed[/red]",
    MachineStatus.SKIPPED: "[yellow]skipped[/yellow]",
    MachineStatus.CANCELLED: "[magenta]cancelled[/magenta]",
    MachineStatus.NOT_ATTEMPTED: "[dim]not-attempted[/dim]",
}

_RUN_MESSAGES = {
    MachineStatus.SUCCEEDED: "All machines provisioned.",
    MachineStatus.SKIPPED: "Some machines were skipped because a dependency did not succeed.",
    MachineStatus.FAILED: "Provisioning failed.",
    MachineStatus.NOT_ATTEMPTED: "Run cancelled before every machine was provisioned.",
    MachineStatus.CANCELLED: "Run cancelled.",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Declarative provisioning for small lab fleets.

        Machines, their addresses, dependencies and ordered steps are read
        from an inventory file. Steps that already succeeded are skipped on
        later runs, so `labctl run` can be repeated safely after a failure.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    store: StateStore
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    runtime = RuntimeContext(
        config=config,
        store=StateStore(StateRegistry(config.registry_dir / "machines")),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the labctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"labctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _load_inventory(runtime: RuntimeContext, path: Path, op: OperationScope) -> Inventory:
    try:
        inventory = load_inventory(path, templates=runtime.templates)
    except ValidationError as exc:
        if len(exc.problems) > 1:
            for problem in exc.problems:
                console.print(f"  - {escape(problem)}")
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION), errors=exc.problems)
    op.add_step("inventory.load", detail=f"{len(inventory)} machine(s) from {path}")
    return inventory


def _parse_names(raw: str | None) -> list[str]:
    if raw is None:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


@contextmanager
def _cancel_on_interrupt(cancel: threading.Event) -> Iterator[None]:
    """Turn SIGINT into a cancellation request while the block runs."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        console.print(
            "[yellow]Cancellation requested; no new steps will start. Press Ctrl-C "
            "again to stop waiting (commands already running still finish).[/yellow]"
        )

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _describe_steps(steps: Sequence[StepResult]) -> str:
    counts: dict[str, int] = {}
    for step in steps:
        counts[step.outcome.value] = counts.get(step.outcome.value, 0) + 1
    return ", ".join(f"{count} {label}" for label, count in counts.items()) or "-"


def _render_run_report(report: RunReport) -> None:
    """Render a run report in a human-friendly format."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Machine", style="bold")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Detail")
    for result in report.machines:
        table.add_row(
            result.name,
            _MACHINE_STATUS_STYLE[result.status],
            _describe_steps(result.steps),
            escape(result.detail or ""),
        )
    console.print(table)

    for result in report.machines:
        failed = result.failed_step
        if failed is None:
            continue
        console.print(
            f"[red]{result.name}[/red] step '{failed.id}' "
            f"({failed.failure_kind or 'error'}): {escape(failed.detail or '')}"
        )
        if failed.rollback:
            console.print(f"  rollback: {escape(failed.rollback)}")

    summary = report.summary
    totals = " ".join(
        f"{status.value}={summary.totals.get(status, 0)}" for status in MachineStatus
    )
    console.print(
        f"Run summary: {_MACHINE_STATUS_STYLE[summary.status]} (exit={summary.exit_code})"
    )
    console.print(f"Totals: {totals}")


@app.command()
def validate(
    ctx: typer.Context,
    inventory_path: Path = INVENTORY_ARGUMENT,
) -> None:
    """Parse and validate an inventory without running anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"inventory": inventory_path},
        target={"kind": "inventory", "path": inventory_path},
    ) as op:
        inventory = _load_inventory(runtime, inventory_path, op)

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Machine", style="bold")
        table.add_column("Role")
        table.add_column("Address")
        table.add_column("Depends on")
        table.add_column("Steps", justify="right")
        for machine in inventory:
            table.add_row(
                machine.name,
                machine.role.value,
                machine.address,
                ", ".join(machine.depends_on) or "-",
                str(len(machine.steps)),
            )
        console.print(table)
        console.print(f"[green]Inventory is valid ({len(inventory)} machine(s)).[/green]")
        op.success("Inventory validated.", context={"machines": list(inventory.names)})


@app.command()
def plan(
    ctx: typer.Context,
    inventory_path: Path = INVENTORY_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the provisioning order and the waves that may run in parallel."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"inventory": inventory_path, "json": json_output},
        target={"kind": "inventory", "path": inventory_path},
    ) as op:
        inventory = _load_inventory(runtime, inventory_path, op)
        machine_plan = Orchestrator(
            ActionRunner.from_config(runtime.store, runtime.config.runner)
        ).plan(inventory)
        payload = machine_plan.to_dict()

        if json_output:
            console.print_json(data=payload)
            op.success("Reported plan as JSON.", context=payload)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Machine", style="bold")
        table.add_column("Wave", justify="right")
        table.add_column("Depends on")
        waves = {
            machine.name: index
            for index, wave in enumerate(machine_plan.waves, start=1)
            for machine in wave
        }
        for position, machine in enumerate(machine_plan, start=1):
            table.add_row(
                str(position),
                machine.name,
                str(waves[machine.name]),
                ", ".join(machine.depends_on) or "-",
            )
        console.print(table)
        op.success("Reported plan.", context=payload)


@app.command()
def run(
    ctx: typer.Context,
    inventory_path: Path = INVENTORY_ARGUMENT,
    only: str | None = ONLY_OPTION,
    max_workers: int | None = MAX_WORKERS_OPTION,
    json_output: bool = JSON_OPTION,
    report_file: Path | None = REPORT_FILE_OPTION,
) -> None:
    """Provision every machine in dependency order."""
    runtime = _get_runtime(ctx)
    only_names = _parse_names(only)
    workers = max_workers if max_workers is not None else runtime.config.runner.max_workers
    with runtime.logger.operation(
        "run",
        args={
            "inventory": inventory_path,
            "only": only_names or None,
            "max_workers": workers,
            "json": json_output,
            "report_file": report_file,
        },
        target={"kind": "inventory", "path": inventory_path},
    ) as op:
        inventory = _load_inventory(runtime, inventory_path, op)
        orchestrator = Orchestrator(
            ActionRunner.from_config(runtime.store, runtime.config.runner),
            max_workers=workers,
        )
        try:
            machine_plan = orchestrator.plan(inventory, only=only_names)
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION), errors=exc.problems)

        cancel = threading.Event()
        try:
            with runtime.locks.mutate_machines(machine_plan.names) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                with _cancel_on_interrupt(cancel):
                    report = orchestrator.run(
                        inventory,
                        cancel=cancel,
                        op=op,
                        only=only_names,
                        metadata={"inventory": str(inventory_path)},
                    )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        report_payload = serialize_report(report)
        warnings: list[str] = []
        if report_file is not None:
            try:
                write_markdown(
                    report,
                    runtime.templates,
                    report_file,
                    inventory=str(inventory_path),
                )
            except (TemplateRenderError, OSError) as exc:
                warnings.append(f"Could not write report file {report_file}: {exc}")
            else:
                op.add_step("report.write", detail=str(report_file))

        if json_output:
            console.print_json(data=report_payload)
        else:
            _render_run_report(report)
        for warning in warnings:
            console.print(f"[yellow]{escape(warning)}[/yellow]")

        summary = report.summary
        changed = sum(
            1
            for result in report.machines
            for step in result.steps
            if step.outcome is StepOutcome.APPLIED
        )
        message = _RUN_MESSAGES[summary.status]
        log_context = {"report": report_payload}
        if summary.exit_code == 0:
            if warnings:
                op.warning(message, warnings=warnings, changed=changed, context=log_context)
            else:
                op.success(message, changed=changed, context=log_context)
            return

        errors = [
            f"{result.name}: {result.detail}"
            for result in report.machines
            if result.status is not MachineStatus.SUCCEEDED and result.detail
        ]
        if not json_output:
            console.print(f"[red]{message}[/red]")
        op.error(
            message,
            rc=summary.exit_code,
            errors=errors or None,
            warnings=warnings or None,
            changed=changed,
            context=log_context,
        )
        raise typer.Exit(code=summary.exit_code)


state_app = typer.Typer(help="Inspect and reset stored step records.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(state_app, name="state")
app.add_typer(config_app, name="config")


def _record_rows(
    inventory: Inventory,
    store: StateStore,
    names: Sequence[str],
) -> dict[str, list[dict[str, object]]]:
    rows: dict[str, list[dict[str, object]]] = {}
    for name in names:
        machine = inventory.get(name)
        if machine is None:
            continue
        records = store.records(name)
        entries: list[dict[str, object]] = []
        for step in machine.steps:
            record = records.pop(step.id, None)
            entry: dict[str, object] = {"step": step.id, "record": None, "current": True}
            if record is not None:
                entry["record"] = record.to_dict()
                entry["current"] = record.fingerprint == step.fingerprint
            entries.append(entry)
        for step_id, record in records.items():
            entries.append({"step": step_id, "record": record.to_dict(), "current": False})
        rows[name] = entries
    return rows


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    inventory_path: Path = INVENTORY_ARGUMENT,
    machine: str | None = typer.Option(
        None,
        "--machine",
        "-m",
        help="Only show records for this machine.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show stored step records for the machines in an inventory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state show",
        args={"inventory": inventory_path, "machine": machine, "json": json_output},
        target={"kind": "state", "machine": machine},
    ) as op:
        inventory = _load_inventory(runtime, inventory_path, op)
        if machine is not None and inventory.get(machine) is None:
            _command_error(op, f"Machine '{machine}' is not declared in {inventory_path}.")
        names = [machine] if machine is not None else list(inventory.names)
        try:
            rows = _record_rows(inventory, runtime.store, names)
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        if json_output:
            console.print_json(data={"machines": rows})
            op.success("Reported state as JSON.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Machine", style="bold")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Last attempt")
        table.add_column("Detail")
        for name, entries in rows.items():
            if not entries:
                table.add_row(name, "(no steps)", "", "", "", "")
            for entry in entries:
                record = entry["record"]
                if not isinstance(record, Mapping):
                    table.add_row(name, str(entry["step"]), "(never run)", "0", "", "")
                    continue
                detail = str(record.get("error_detail") or "")
                if not entry["current"]:
                    detail = " ".join(part for part in ("step definition changed", detail) if part)
                table.add_row(
                    name,
                    str(entry["step"]),
                    str(record.get("status", StepStatus.PENDING.value)),
                    str(record.get("attempt_count", 0)),
                    str(record.get("last_attempt_at") or ""),
                    escape(detail),
                )
        console.print(table)
        op.success("Reported state.")


@state_app.command("reset")
def state_reset(
    ctx: typer.Context,
    machine: str = typer.Argument(..., help="Machine whose records should be removed."),
    step: str | None = typer.Option(
        None,
        "--step",
        "-s",
        help="Only reset this step (defaults to every step of the machine).",
    ),
) -> None:
    """Forget stored records so the next run re-applies the steps."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state reset",
        args={"machine": machine, "step": step},
        target={"kind": "state", "machine": machine, "step": step},
    ) as op:
        try:
            with runtime.locks.mutate_machines([machine]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                removed = runtime.store.reset(machine, step)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except ValidationError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        scope = f"step '{step}' of '{machine}'" if step else f"'{machine}'"
        if removed == 0:
            console.print(f"[yellow]No records stored for {scope}.[/yellow]")
            op.success("No records to reset.", changed=0)
            return
        console.print(f"[green]Removed {removed} record(s) for {scope}.[/green]")
        op.success("State reset.", changed=removed)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    table.add_row(f"{key}.{sub_key}", str(sub_value))
            else:
                table.add_row(key, str(value))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
