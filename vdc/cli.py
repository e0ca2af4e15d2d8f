"""vdc-manager command line.

Usage:
    vdc-manager [OPTIONS] COMMAND [ARGS]...

Commands:
    list             List virtual datacenters
    create           Create a VDC from a topology template
    destroy          Destroy a VDC and everything it owns
    status           Show registry, namespace and backend state
    resources        Show bound devices, addresses and disks
    topology         Draw the bound topology
    cleanup-orphans  Delete resources the topology no longer expects
    start / stop     Power a VDC's VMs on or off

Tables go to stdout; log lines and diagnostics go to stderr. Exit status is
1 for validation, not-found and conflict errors, 2 for operational failures.
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Callable, Coroutine, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from vdc import __version__, topology
from vdc.errors import ErrorCategory, OperationReport, VdcError
from vdc.logging_config import setup_logging
from vdc.namespace import NamespaceCommandError
from vdc.orchestrator import VdcOrchestrator
from vdc.providers.base import ProviderError
from vdc.reconciler import ReconcileReport
from vdc.schemas import Orphan, OrphanKind

T = TypeVar("T")

app = typer.Typer(
    name="vdc-manager",
    help="Virtual datacenter lifecycle manager",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()
err_console = Console(stderr=True)

USER_ERRORS = (ErrorCategory.VALIDATION, ErrorCategory.NOT_FOUND, ErrorCategory.CONFLICT)
# Backend and host tool (ip, qemu-img) failures that reach the CLI unwrapped
HOST_ERRORS = (ProviderError, NamespaceCommandError, OSError)

NameOption = Annotated[str, typer.Option("--name", "-n", help="VDC name")]


def get_orchestrator() -> VdcOrchestrator:
    return VdcOrchestrator()


def exit_code(error: VdcError) -> int:
    return 1 if error.category in USER_ERRORS else 2


def print_error(message: str) -> None:
    err_console.print(f"[bold red]ERROR[/bold red] {escape(message)}")


def print_success(message: str) -> None:
    err_console.print(f"[green]✓[/green] {message}")


def print_report(report: OperationReport) -> None:
    table = Table(title=f"{report.operation} {report.vdc_name}", show_header=True)
    table.add_column("Step", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for step in report.steps:
        result = "[green]ok[/green]" if step.success else "[red]failed[/red]"
        table.add_row(step.step, result, escape(step.detail))
    console.print(table)


def _run(coro: Coroutine[None, None, T]) -> T:
    """Run a command coroutine, turning errors into exit codes."""
    try:
        return asyncio.run(coro)
    except VdcError as e:
        _fail(e)
    except HOST_ERRORS as e:
        _fail_host(e)


def _call(func: Callable[..., T], *args) -> T:
    """Synchronous counterpart of ``_run``."""
    try:
        return func(*args)
    except VdcError as e:
        _fail(e)
    except HOST_ERRORS as e:
        _fail_host(e)


def _fail(error: VdcError):
    if isinstance(error.report, OperationReport):
        print_report(error.report)
    elif isinstance(error.report, ReconcileReport):
        print_orphans(error.report)
    print_error(error.to_error_message())
    raise typer.Exit(exit_code(error))


def _fail_host(error: Exception):
    """Backend or host command failure that escaped the orchestrator."""
    print_error(f"[{ErrorCategory.PROVISIONING.value}] {error}")
    raise typer.Exit(2)


@app.callback()
def main(
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR)",
                     envvar="VDC_LOG_LEVEL"),
    ] = None,
):
    """Manage isolated virtual datacenters on a single host."""
    setup_logging(log_level)


@app.command("version")
def version():
    """Show the version."""
    console.print(__version__)


@app.command("list")
def list_vdcs():
    """List virtual datacenters."""
    listings = _run(get_orchestrator().list_vdcs())
    if not listings:
        console.print("[yellow]No virtual datacenters found.[/yellow]")
        return

    table = Table(title="Virtual Datacenters", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Subnet")
    table.add_column("Namespace")
    table.add_column("VMs", justify="right")
    table.add_column("Switches", justify="right")
    table.add_column("Created")
    for listing in listings:
        record = listing.record
        table.add_row(
            record.name,
            listing.observed_status,
            record.management_subnet,
            record.namespace,
            str(len(record.vms)),
            str(len(record.switches)),
            record.created_at,
        )
    console.print(table)


@app.command("create")
def create(
    name: NameOption,
    config: Annotated[str, typer.Option("--config", "-c", help="Topology template (YAML)")],
    subnet: Annotated[
        str | None, typer.Option("--subnet", "-s", help="Management /24 (default: next free)")
    ] = None,
):
    """Create a VDC from a topology template."""
    report = _run(get_orchestrator().create(name, config, subnet))
    print_report(report)
    print_success(f"VDC '{name}' is running")


@app.command("destroy")
def destroy(
    name: NameOption,
    force: Annotated[bool, typer.Option("--force", "-f", help="Skip confirmation")] = False,
):
    """Destroy a VDC and everything it owns."""
    if not force:
        confirm = typer.confirm(
            f"Destroy VDC '{name}' with all its VMs, networks and files?", err=True
        )
        if not confirm:
            err_console.print("Aborted.")
            raise typer.Exit(1)
    report = _run(get_orchestrator().destroy(name))
    print_report(report)
    print_success(f"VDC '{name}' destroyed")


@app.command("status")
def status(name: NameOption):
    """Show registry, namespace and backend state of a VDC."""
    info = _run(get_orchestrator().status(name))
    record = info.record

    table = Table(title=f"VDC {record.name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", record.status.value)
    table.add_row("Subnet", record.management_subnet)
    table.add_row("Namespace", f"{record.namespace} ({'present' if info.namespace_exists else 'missing'})")
    table.add_row("Created", record.created_at)
    table.add_row("Topology", record.config_file)
    table.add_row("Networks", ", ".join(info.networks) or "-")
    if info.missing:
        table.add_row("Missing", "[red]" + ", ".join(info.missing) + "[/red]")
    console.print(table)

    if info.vms:
        vms = Table(title="VMs", show_header=True)
        vms.add_column("VM", style="cyan")
        vms.add_column("State")
        for vm, state in sorted(info.vms.items()):
            vms.add_row(vm, state)
        console.print(vms)


def _format_size(size: int | None) -> str:
    if size is None:
        return "-"
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return str(size)


@app.command("resources")
def resources(name: NameOption):
    """Show bound devices with addresses, sizing and disks."""
    summary = _call(get_orchestrator().resources, name)

    table = Table(title=f"Resources of {name}", show_header=True)
    table.add_column("Device", style="cyan")
    table.add_column("Role")
    table.add_column("VM")
    table.add_column("Management IP")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Disks")
    for device in summary.bound.devices:
        disks = ", ".join(
            f"{d.file} ({_format_size(d.size_bytes)})" for d in summary.disks.get(device.vm_name, [])
        )
        table.add_row(
            device.local_name,
            device.role.value,
            device.vm_name,
            device.management_ip,
            str(device.resources.cpu),
            f"{device.resources.memory} MiB",
            disks,
        )
    console.print(table)
    console.print(f"Gateway: {summary.bound.gateway}    On disk: {_format_size(summary.total_bytes)}")


@app.command("topology")
def show_topology(name: NameOption):
    """Draw the bound topology and its cabling."""
    bound = _call(get_orchestrator().topology, name)

    console.print(topology.render_diagram(bound), highlight=False)
    rows = topology.cabling_rows(bound)
    if rows:
        table = Table(title="Cabling", show_header=True)
        table.add_column("Network", style="cyan")
        table.add_column("Source")
        table.add_column("Destination")
        for network, src_dev, src_if, dst_dev, dst_if in rows:
            table.add_row(network, f"{src_dev}:{src_if}", f"{dst_dev}:{dst_if}")
        console.print(table)
    for line in topology.summarize_allocation(bound):
        console.print(line, highlight=False)


def print_orphans(report: ReconcileReport) -> None:
    if not report.orphans:
        console.print(f"[green]No orphaned resources for {report.datacenter}.[/green]")
        return

    deleted = {o.identifier for o in report.deleted}
    failed = {f.item: f.error for f in report.errors}
    table = Table(title=f"Orphans of {report.datacenter}", show_header=True)
    table.add_column("Kind", style="cyan")
    table.add_column("Identifier")
    table.add_column("Action")
    for orphan in report.orphans:
        if orphan.identifier in deleted:
            action = "[green]deleted[/green]"
        elif orphan.identifier in failed:
            action = f"[red]failed: {escape(failed[orphan.identifier])}[/red]"
        else:
            action = "kept"
        table.add_row(orphan.kind.value, orphan.identifier, action)
    console.print(table)


def _confirm_batch(kind: OrphanKind, batch: list[Orphan]) -> bool:
    names = ", ".join(o.identifier for o in batch)
    return Confirm.ask(f"Delete {len(batch)} orphaned {kind.value}(s): {names}?", console=err_console)


@app.command("cleanup-orphans")
def cleanup_orphans(
    name: NameOption,
    force: Annotated[bool, typer.Option("--force", "-f", help="Delete without confirmation")] = False,
):
    """Delete resources carrying the VDC prefix that its topology does not expect."""
    report = _run(get_orchestrator().cleanup_orphans(name, force=force, confirm=_confirm_batch))
    print_orphans(report)
    if report.deleted:
        print_success(f"Deleted {len(report.deleted)} orphaned resources")


@app.command("start")
def start(name: NameOption):
    """Start a stopped VDC."""
    report = _run(get_orchestrator().start(name))
    print_report(report)
    print_success(f"VDC '{name}' started")


@app.command("stop")
def stop(name: NameOption):
    """Stop every VM of a VDC."""
    report = _run(get_orchestrator().stop(name))
    print_report(report)
    print_success(f"VDC '{name}' stopped")


if __name__ == "__main__":
    app()
