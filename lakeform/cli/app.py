"""
Lakeform CLI.

Composes the loader, the engine and the simulated provider behind
plan / apply / destroy / output / refresh / state / bridge / journal.

Exit codes: 0 success, 1 fatal error (nothing applied), 2 partial failure.
"""

import json
import os
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from lakeform.config import DEFAULT_CONFIG_FILE, load_engine_config
from lakeform.errors import LakeformError, ParseError
from lakeform.journal.store import RunJournal
from lakeform.loader.parser import load_stack
from lakeform.models.declaration import DeclarationSet
from lakeform.models.execution import ApplyResult, NodeStatus
from lakeform.models.plan import Action, Plan
from lakeform.plan.render import plan_to_dict, render_plan
from lakeform.providers.simulated import SimulatedCloud, simulated_registry
from lakeform.reconciler.loop import Reconciler
from lakeform.schema.builtin import default_registry
from lakeform.state.store import StateStore
from lakeform.utils.logger import REDACTED, configure_logging

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

ACTION_STYLES = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.REPLACE: "magenta",
    Action.DELETE: "red",
    Action.NOOP: "dim",
}

STATUS_STYLES = {
    NodeStatus.APPLIED: "green",
    NodeStatus.FAILED: "bold red",
    NodeStatus.SKIPPED: "yellow",
    NodeStatus.BLOCKED: "cyan",
}

app = typer.Typer(
    name="lakeform",
    help="Lakeform - declarative reconciliation for data-lake infrastructure",
    add_completion=False,
    no_args_is_help=True,
)
state_app = typer.Typer(help="Inspect recorded state", no_args_is_help=True)
app.add_typer(state_app, name="state")

console = Console()


class Settings:
    """Options shared by every command."""

    def __init__(
        self,
        stack: Path,
        state: Path,
        var_file: Optional[Path],
        cloud_state: Path,
        config: Optional[Path],
        failure_policy: Optional[str],
        max_workers: Optional[int],
    ):
        self.stack = stack
        self.state = state
        self.var_file = var_file
        self.cloud_state = cloud_state
        self.config = config
        self.failure_policy = failure_policy
        self.max_workers = max_workers


@app.callback()
def main_options(
    ctx: typer.Context,
    stack: Path = typer.Option(Path("."), "--stack", "-s", help="Stack directory or YAML file"),
    state: Path = typer.Option(Path("lakeform.db"), "--state", help="State database"),
    var_file: Optional[Path] = typer.Option(None, "--var-file", help="YAML file of variable values"),
    cloud_state: Path = typer.Option(
        Path(".lakeform-cloud.json"), "--cloud-state", help="Inventory file of the simulated provider"
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Config file (default: lakeform.yaml)"),
    failure_policy: Optional[str] = typer.Option(
        None, "--failure-policy", help="fail_fast or best_effort"
    ),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", help="Concurrent adapter calls"),
    log_level: str = typer.Option(
        os.environ.get("LAKEFORM_LOG_LEVEL", "WARNING"), "--log-level", help="Log level"
    ),
    log_format: str = typer.Option("text", "--log-format", help="text or json"),
):
    """Declarative reconciliation for data-lake infrastructure."""
    try:
        configure_logging(log_level, log_format)
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=EXIT_FATAL)
    ctx.obj = Settings(stack, state, var_file, cloud_state, config, failure_policy, max_workers)


# --- Helpers ---

def _fail(error: LakeformError) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    for cause in error.cause_chain()[1:]:
        console.print(f"  [dim]caused by:[/dim] {escape(cause)}")
    raise typer.Exit(code=EXIT_FATAL)


def _reconciler(ctx: typer.Context, load_declarations: bool = True) -> Reconciler:
    """
    Wire up a Reconciler from the shared options. Raises LakeformError.
    Its stores are closed when the command finishes.
    """
    settings: Settings = ctx.obj
    config = load_engine_config(
        settings.config,
        overrides={
            "failure_policy": settings.failure_policy,
            "max_workers": settings.max_workers,
        },
    )
    if load_declarations:
        # The config and variable files may sit beside the declarations
        declarations = load_stack(
            settings.stack,
            settings.var_file,
            exclude=[settings.config or DEFAULT_CONFIG_FILE, settings.var_file],
        )
    else:
        declarations = DeclarationSet()
    cloud = SimulatedCloud(path=settings.cloud_state)
    reconciler = Reconciler(
        declarations=declarations,
        state_store=StateStore(str(settings.state)),
        providers=simulated_registry(cloud),
        registry=default_registry(),
        journal=RunJournal(str(settings.state)),
        config=config,
        stack=str(settings.stack),
    )
    ctx.call_on_close(reconciler.close)
    return reconciler


def _print_plan(plan: Plan, show_sensitive: bool = False, show_unchanged: bool = False) -> None:
    for line in render_plan(plan, show_sensitive, show_unchanged):
        style = None
        if line.startswith("-/+ "):
            style = ACTION_STYLES[Action.REPLACE]
        elif line.startswith("+ "):
            style = ACTION_STYLES[Action.CREATE]
        elif line.startswith("~ "):
            style = ACTION_STYLES[Action.UPDATE]
        elif line.startswith("- "):
            style = ACTION_STYLES[Action.DELETE]
        elif line.startswith("Plan:"):
            style = "bold"
        console.print(line, style=style, markup=False, highlight=False)


def _print_result(result: ApplyResult) -> None:
    table = Table(title=f"Run {result.run_id}", show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="red")
    for r in result.results:
        status_style = STATUS_STYLES.get(r.status, "")
        table.add_row(
            r.address,
            r.action.value,
            f"[{status_style}]{r.status.value}[/{status_style}]" if status_style else r.status.value,
            str(r.attempts),
            r.error or "",
        )
    console.print(table)
    counts = result.counts()
    summary = ", ".join(f"{n} {s}" for s, n in counts.items() if n)
    if result.success:
        console.print(f"[bold green]Apply complete:[/bold green] {summary or 'nothing to do'}")
    else:
        reason = " (cancelled)" if result.cancelled else " (halted)" if result.halted else ""
        console.print(f"[bold yellow]Apply incomplete{reason}:[/bold yellow] {summary}")


@contextmanager
def _cancel_on_interrupt():
    """Ctrl-C stops scheduling new work; in-flight calls finish."""
    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    def _handler(signum, frame):
        console.print("[yellow]Interrupt received, finishing in-flight operations...[/yellow]")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _run(reconciler: Reconciler, plan: Plan, auto_approve: bool, verb: str) -> None:
    _print_plan(plan)
    if not plan.has_changes:
        raise typer.Exit(code=EXIT_OK)
    if not auto_approve and not Confirm.ask(f"\nDo you want to {verb} these changes?", default=False):
        console.print(f"[yellow]{verb.title()} cancelled.[/yellow]")
        raise typer.Exit(code=EXIT_FATAL)

    with _cancel_on_interrupt() as cancel:
        result = reconciler.apply(plan, cancel_event=cancel)
    _print_result(result)
    raise typer.Exit(code=EXIT_OK if result.success else EXIT_PARTIAL)


def _format_output(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, sort_keys=True, default=str)


# --- Commands ---

@app.command()
def plan(
    ctx: typer.Context,
    show_sensitive: bool = typer.Option(False, "--show-sensitive", help="Reveal sensitive values"),
    show_unchanged: bool = typer.Option(False, "--show-unchanged", help="List unchanged resources too"),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
):
    """Show what apply would change."""
    try:
        reconciler = _reconciler(ctx)
        result = reconciler.plan()
    except LakeformError as e:
        _fail(e)
    if as_json:
        console.print_json(json.dumps(plan_to_dict(result, show_sensitive), default=str))
        return
    _print_plan(result, show_sensitive, show_unchanged)


@app.command()
def apply(
    ctx: typer.Context,
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation prompt"),
):
    """Plan, confirm and apply."""
    try:
        reconciler = _reconciler(ctx)
        result = reconciler.plan()
    except LakeformError as e:
        _fail(e)
    _run(reconciler, result, auto_approve, "apply")


@app.command()
def destroy(
    ctx: typer.Context,
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Skip the confirmation prompt"),
):
    """Delete every resource recorded in state."""
    try:
        reconciler = _reconciler(ctx, load_declarations=False)
        result = reconciler.plan_destroy()
    except LakeformError as e:
        _fail(e)
    _run(reconciler, result, auto_approve, "destroy")


@app.command()
def output(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None, help="Output name (all outputs when omitted)"),
    show_sensitive: bool = typer.Option(False, "--show-sensitive", help="Reveal sensitive values"),
):
    """Print output values."""
    try:
        reconciler = _reconciler(ctx)
        if name is not None:
            value = reconciler.output(name, show_sensitive=show_sensitive)
            console.print(_format_output(value), markup=False, highlight=False)
            return
        values = reconciler.outputs(show_sensitive=show_sensitive)
    except LakeformError as e:
        _fail(e)

    if not values:
        console.print("[dim]No outputs available. Has the stack been applied?[/dim]")
        return
    for key, value in values.items():
        console.print(f"{key} = {_format_output(value)}", markup=False, highlight=False)


@app.command()
def refresh(
    ctx: typer.Context,
    update_state: bool = typer.Option(
        False, "--update-state", help="Record observed attributes so the next plan repairs drift"
    ),
):
    """Compare recorded state with the provider and report drift."""
    try:
        reconciler = _reconciler(ctx, load_declarations=False)
        events = reconciler.refresh(update_state=update_state)
    except LakeformError as e:
        _fail(e)

    if not events:
        console.print("[green]No drift detected.[/green]")
        return
    table = Table(title="Drift", show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Drift", style="yellow")
    table.add_column("Attributes")
    for event in events:
        table.add_row(event.address, event.drift_type, ", ".join(event.attributes))
    console.print(table)
    if update_state:
        console.print("[dim]State updated. Run 'lakeform plan' to see the repair.[/dim]")


@app.command()
def bridge(
    ctx: typer.Context,
    to: Path = typer.Option(..., "--to", help="Variable file to write for the other stack"),
    mappings: List[str] = typer.Option(
        ..., "--output", "-o", help="OUTPUT or OUTPUT=VARIABLE; repeatable"
    ),
):
    """
    Copy outputs of this stack into a variable file for another stack.

    Example: lakeform --stack stacks/snowflake bridge --to aws.vars.yaml \\
        -o storage_aws_iam_user_arn=snowflake_iam_user_arn
    """
    try:
        reconciler = _reconciler(ctx)
        copied: Dict[str, Any] = {}
        sensitive = []
        for mapping in mappings:
            output_name, _, variable = mapping.partition("=")
            variable = variable or output_name
            copied[variable] = reconciler.output(output_name, show_sensitive=True)
            if reconciler.is_output_sensitive(output_name):
                sensitive.append(variable)
    except LakeformError as e:
        _fail(e)

    existing: Dict[str, Any] = {}
    if to.exists():
        try:
            existing = yaml.safe_load(to.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            _fail(ParseError(f"invalid YAML: {e}", source=str(to)))
        if not isinstance(existing, dict):
            console.print(f"[bold red]Error:[/bold red] {to} is not a YAML mapping")
            raise typer.Exit(code=EXIT_FATAL)
    existing.update(copied)
    to.write_text(yaml.safe_dump(existing, sort_keys=True), encoding="utf-8")

    for variable, value in copied.items():
        shown = REDACTED if variable in sensitive else _format_output(value)
        console.print(f"  {variable} = {shown}", markup=False, highlight=False)
    console.print(f"[green]Wrote {len(copied)} value(s) to {to}[/green]")
    if sensitive:
        console.print(f"[yellow]{to} now holds sensitive values; keep it out of version control.[/yellow]")


@app.command()
def journal(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to list"),
    failures: bool = typer.Option(False, "--failures", help="Only runs that did not fully apply"),
    verify: bool = typer.Option(False, "--verify", help="Verify the journal's hash chain"),
):
    """List recorded runs."""
    runs = RunJournal(str(ctx.obj.state))
    try:
        if verify:
            if runs.verify_chain_integrity():
                console.print(f"[green]Journal intact[/green] ({runs.count()} runs)")
                return
            console.print("[bold red]Journal chain is broken: a record was altered.[/bold red]")
            raise typer.Exit(code=EXIT_FATAL)

        records = runs.query_failures() if failures else runs.query_recent(limit)
        if not records:
            console.print("[dim]No runs recorded.[/dim]")
            return
        table = Table(title="Runs", show_header=True, header_style="bold cyan")
        table.add_column("Run", style="cyan")
        table.add_column("Operation")
        table.add_column("Finished")
        table.add_column("Plan")
        table.add_column("Result")
        for record in records:
            planned = ", ".join(f"{n} {a}" for a, n in record.plan_summary.items() if n and a != "noop")
            result = "[green]success[/green]" if record.success else "[red]incomplete[/red]"
            table.add_row(
                record.run_id,
                record.operation,
                record.finished_at.strftime("%Y-%m-%d %H:%M:%S"),
                planned or "no changes",
                result,
            )
        console.print(table)
    finally:
        runs.close()


# --- state subcommands ---

@state_app.command("list")
def state_list(ctx: typer.Context):
    """List recorded resources."""
    store = StateStore(str(ctx.obj.state))
    try:
        snapshot = store.snapshot()
    finally:
        store.close()
    if not snapshot:
        console.print("[dim]State is empty.[/dim]")
        return
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Address", style="cyan")
    table.add_column("Provider id")
    table.add_column("Updated")
    for address, entry in sorted(snapshot.items()):
        table.add_row(address, entry.provider_id or "", entry.updated_at.strftime("%Y-%m-%d %H:%M:%S"))
    console.print(table)


@state_app.command("show")
def state_show(
    ctx: typer.Context,
    address: str = typer.Argument(..., help="Resource address, e.g. aws_s3_bucket.bronze"),
    show_sensitive: bool = typer.Option(False, "--show-sensitive", help="Reveal sensitive values"),
):
    """Show one recorded resource."""
    store = StateStore(str(ctx.obj.state))
    try:
        entry = store.get(address)
    finally:
        store.close()
    if entry is None:
        console.print(f"[bold red]Error:[/bold red] {address} is not in state")
        raise typer.Exit(code=EXIT_FATAL)

    registry = default_registry()
    sensitive = set(entry.sensitive_attributes)
    if registry.has(entry.kind):
        sensitive.update(registry.get(entry.kind).sensitive_attributes())

    lines = [
        f"[bold]kind:[/bold] {entry.kind}",
        f"[bold]provider id:[/bold] {entry.provider_id}",
        f"[bold]updated:[/bold] {entry.updated_at.isoformat()}",
        f"[bold]depends on:[/bold] {', '.join(entry.dependencies) or '-'}",
        "",
    ]
    for name, value in sorted(entry.attributes.items()):
        shown = REDACTED if name in sensitive and not show_sensitive else _format_output(value)
        lines.append(f"{name} = {shown}")
    console.print(Panel.fit("\n".join(lines), title=address, border_style="cyan"))


@state_app.command("export")
def state_export(
    ctx: typer.Context,
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write to a file instead of stdout"),
):
    """Export every state record as one JSON document."""
    store = StateStore(str(ctx.obj.state))
    try:
        document = store.export_document()
    finally:
        store.close()
    text = json.dumps(document, indent=2, sort_keys=True, default=str)
    if out is None:
        typer.echo(text)
        return
    out.write_text(text + "\n", encoding="utf-8")
    console.print(f"[green]Exported {len(document['resources'])} record(s) to {out}[/green]")


def main():
    app()
