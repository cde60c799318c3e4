# noqa: D401
"""CLI entry point for the Docker Service Manager."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import get_settings
from .errors import InvalidInputError, PartialTeardownError, PortConflictError
from .logging import configure_logging
from .manager import ServiceManager, get_service_manager
from .models import ImageReference, InstallPlan
from .ports import validate_port
from .shell import missing_binaries

app = typer.Typer(
    name="docker-service-manager",
    help="Docker Service Manager - udocker services supervised in tmux",
    add_completion=False,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Docker Service Manager version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose logging",
    ),
) -> None:
    """Docker Service Manager - udocker services supervised in tmux."""
    if verbose:
        configure_logging("DEBUG")
    else:
        configure_logging(get_settings().log_level)


def _prompt_port(message: str, default: int) -> int:
    """Prompt until the operator enters a valid port."""
    while True:
        answer = typer.prompt(message, default=str(default))
        try:
            return validate_port(answer)
        except InvalidInputError as e:
            console.print(f"[red]{e}[/red]")


def _settle_external_port(
    manager: ServiceManager,
    plan: InstallPlan,
    requested: Optional[int],
    assume_yes: bool,
) -> InstallPlan:
    """Pick the external port, re-prompting with a suggestion on conflicts."""
    if requested is not None:
        plan = plan.model_copy(update={"external_port": validate_port(requested)})
    elif not assume_yes:
        port = _prompt_port(
            f"External port (internal {plan.internal_port})",
            plan.external_port,
        )
        plan = plan.model_copy(update={"external_port": port})

    while True:
        try:
            manager.check_plan(plan)
            return plan
        except PortConflictError as e:
            if assume_yes:
                raise
            console.print(f"[yellow]{e}[/yellow]")
            port = _prompt_port("Choose another external port", e.suggestion or plan.external_port)
            plan = plan.model_copy(update={"external_port": port})


def _print_plan(plan: InstallPlan) -> None:
    table = Table(title="Installation Summary", show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Service", plan.name)
    table.add_row("Image", plan.image)
    table.add_row("Container", plan.container_name)
    table.add_row("Window", plan.window_name)
    table.add_row("Port Mapping", f"{plan.external_port}:{plan.internal_port}")
    table.add_row("Access URL", f"http://localhost:{plan.external_port}")
    console.print(table)


@app.command()
def install(
    image: str = typer.Argument(..., help="Image reference, e.g. nginx or bitnami/redis:7"),
    port: Optional[int] = typer.Option(
        None,
        "--port",
        "-p",
        help="External port (suggested automatically when omitted)",
    ),
    internal_port: Optional[int] = typer.Option(
        None,
        "--internal-port",
        "-i",
        help="Container port (detected from the image when omitted)",
    ),
    container_name: Optional[str] = typer.Option(
        None,
        "--container-name",
        help="Container alias (defaults to <service>_container)",
    ),
    window_name: Optional[str] = typer.Option(
        None,
        "--window-name",
        help="tmux window name (defaults to the service name)",
    ),
    reinstall: bool = typer.Option(
        False,
        "--reinstall",
        help="Replace the service if it is already installed",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not prompt; accept suggested values",
    ),
) -> None:
    """Pull an image and install it as a service."""
    try:
        manager = get_service_manager()
        name = ImageReference.parse(image).service_name

        overwrite = reinstall
        if manager.registry.exists(name) and not reinstall:
            console.print(f"[yellow]Service '{name}' already exists![/yellow]")
            if yes or not typer.confirm("Do you want to reinstall?", default=False):
                console.print("[yellow]Installation cancelled.[/yellow]")
                return
            overwrite = True

        with console.status(f"[bold]Pulling {image}..."):
            plan = manager.prepare(image, overwrite=overwrite)

        try:
            if plan.port_detected:
                console.print(f"[green]✓[/green] Detected container port: {plan.internal_port}")
            else:
                console.print(
                    f"[yellow]Could not detect an exposed port, using {plan.internal_port}[/yellow]"
                )

            if internal_port is None and not yes:
                answer = _prompt_port("Internal port", plan.internal_port)
                if answer != plan.internal_port:
                    internal_port = answer

            plan = manager.apply_overrides(
                plan,
                external_port=port,
                internal_port=internal_port,
                container_name=container_name,
                window_name=window_name,
            )

            plan = _settle_external_port(manager, plan, port, yes)
            _print_plan(plan)

            if not yes and not typer.confirm("Proceed with installation?", default=True):
                manager.discard(plan)
                console.print("[yellow]Installation cancelled.[/yellow]")
                return
        except Exception:
            manager.discard(plan)
            raise

        with console.status("[bold green]Creating container..."):
            record = manager.commit(plan)

        console.print(f"[green]✓[/green] Service '{record.name}' installed")
        console.print(f"[dim]  Port mapping: {record.port_mapping}[/dim]")
        console.print(f"[dim]  Data: {record.data_dir}[/dim]")
        console.print(f"[dim]  Start it with: docker-service-manager run {record.name}[/dim]")

    except typer.Abort:
        console.print("\n[yellow]Installation cancelled.[/yellow]")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    name: str = typer.Argument(..., help="Service name"),
) -> None:
    """Start a service in its tmux window."""
    try:
        manager = get_service_manager()

        with console.status(f"[bold green]Starting {name}..."):
            result = manager.run(name)

        if not result.started:
            console.print(f"[yellow]Service '{name}' is already running[/yellow]")
        else:
            console.print(f"[green]✓[/green] Service '{name}' started")
        console.print(f"[dim]  Access URL: {result.record.access_url}[/dim]")
        console.print(f"[dim]  Attach with: {manager.supervisor.attach_command()}[/dim]")
        console.print(
            f"[dim]  Then switch with: {manager.supervisor.select_command(result.record.window_name)}[/dim]"
        )

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def stop(
    name: str = typer.Argument(..., help="Service name"),
) -> None:
    """Stop a running service without removing it."""
    try:
        manager = get_service_manager()

        with console.status(f"[bold yellow]Stopping {name}..."):
            stopped = manager.stop(name)

        if stopped:
            console.print(f"[green]✓[/green] Service '{name}' stopped")
        else:
            console.print(f"[yellow]Service '{name}' is not running[/yellow]")

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def status(
    name: str = typer.Argument(..., help="Service name"),
) -> None:
    """Show a service's configuration and live status."""
    try:
        manager = get_service_manager()
        record = manager.registry.get(name)
        state = manager.status(name)

        table = Table(title="Service Status", show_header=False)
        table.add_column("Property", style="cyan")
        table.add_column("Value")

        color = "green" if state.label == "Running" else "red"
        table.add_row("Status", f"[bold {color}]{state.label}[/bold {color}]")
        table.add_row("Image", record.image)
        table.add_row("Container", record.container_name)
        table.add_row("Port Mapping", record.port_mapping)
        if not record.port_detected:
            table.add_row("Internal Port", f"{record.internal_port} [dim](default)[/dim]")
        table.add_row("Window", record.window_name)
        table.add_row("Data", str(record.data_dir))
        table.add_row("Installed", record.installed_at.strftime("%Y-%m-%d %H:%M:%S"))
        console.print(table)

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def remove(
    name: str = typer.Argument(..., help="Service name"),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit with status 2 if any teardown step failed",
    ),
) -> None:
    """Remove a service, its container, image and data."""
    try:
        manager = get_service_manager()

        if not yes:
            console.print(
                f"[red]This will permanently delete service '{name}' and all its data.[/red]"
            )
            if typer.prompt("Type 'YES' to confirm", default="") != "YES":
                console.print("[yellow]Removal cancelled.[/yellow]")
                return

        with console.status(f"[bold yellow]Removing {name}..."):
            report = manager.remove(name, strict=strict)

        for error in report.errors:
            console.print(f"[yellow]Warning: {error}[/yellow]")
        if report.existed:
            console.print(f"[green]✓[/green] Service '{name}' removed")
        else:
            console.print(f"[yellow]Service '{name}' was not installed[/yellow]")

    except PartialTeardownError as e:
        for error in e.report.errors:
            console.print(f"[yellow]Warning: {error}[/yellow]")
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(2)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command(name="list")
def list_services() -> None:
    """List installed services with their live status."""
    try:
        manager = get_service_manager()
        listings = manager.list()

        if not listings:
            console.print("[yellow]No services installed[/yellow]")
        else:
            table = Table(title="Installed Services")
            table.add_column("Service", style="cyan")
            table.add_column("Image")
            table.add_column("Ports")
            table.add_column("Status")
            table.add_column("URL")

            for listing in listings:
                record = listing.record
                if listing.is_running:
                    state = "[green]Running[/green]"
                    url = record.access_url
                else:
                    state = "[red]Stopped[/red]"
                    url = "-"
                table.add_row(record.name, record.image, record.port_mapping, state, url)
            console.print(table)

        summary = manager.host_summary()
        if summary.exists:
            console.print(
                f"\n[dim]tmux session '{summary.session_name}': {len(summary.units)} window(s)[/dim]"
            )
            console.print(f"[dim]Attach with: {summary.attach_command}[/dim]")
        else:
            console.print(f"\n[dim]tmux session '{summary.session_name}' is not running[/dim]")

    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def doctor() -> None:
    """Check that udocker and tmux are available."""
    settings = get_settings()
    binaries = [settings.udocker_bin, settings.tmux_bin]
    missing = missing_binaries(binaries)

    for binary in binaries:
        if binary in missing:
            console.print(f"[red]✗[/red] {binary} not found on PATH")
        else:
            console.print(f"[green]✓[/green] {binary}")

    if missing:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
