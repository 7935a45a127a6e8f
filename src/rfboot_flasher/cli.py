"""
rftool CLI

Command-line front end for uploading firmware to rfboot targets through
a usb2rf module.
"""

import sys
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from rfboot_flasher import __version__
from rfboot_flasher.core.actions import (
    add_port as core_add_port,
    create as core_create,
    get_port as core_get_port,
    monitor as core_monitor,
    reset_local as core_reset_local,
    upload_firmware as core_upload_firmware,
)
from rfboot_flasher.core.messages import (
    WarningItem,
    MessageLevel,
    result_to_warnings,
)
from rfboot_flasher.core.results import OperationResult
from rfboot_flasher.protocol.rfboot_protocol import TRANSPORTERS
from rfboot_flasher.protocol.usb2rf_transport import DEFAULT_BAUDRATE
from rfboot_flasher.serial_ports import KNOWN_PORTS_ENV

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("rfboot_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="rftool - upload firmware to rfboot targets over usb2rf")

PORT_ENV = "RFTOOL_PORT"


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation and (verbose or warning.level == MessageLevel.ERROR):
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def finish(result: OperationResult, message: str, verbose: bool = False) -> None:
    """Render a result and exit non-zero on failure."""
    print_warnings_from_result(result, verbose=verbose)
    if not result.ok:
        print_error(f"{result.operation.capitalize()} failed")
        sys.exit(1)
    print_success(message)


def set_verbose(verbose: bool) -> None:
    if verbose:
        logger.setLevel(logging.DEBUG)


PortOption = typer.Option(
    None, "--port", "-p", envvar=PORT_ENV, help="Serial port (skips discovery)"
)
KnownPortsOption = typer.Option(
    None, "--known-ports", envvar=KNOWN_PORTS_ENV, help="Known usb2rf ports file (default ~/.usb2rf)"
)
BaudOption = typer.Option(DEFAULT_BAUDRATE, "--baud", "-b", help="usb2rf serial speed")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Log wire traffic")


@app.command()
def upload(
    firmware: Path = typer.Argument(..., help="Raw application binary (.bin)"),
    port: Optional[str] = PortOption,
    known_ports: Optional[Path] = KnownPortsOption,
    baud: int = BaudOption,
    timeout: float = typer.Option(
        10.0, "--timeout", "-t", help="Seconds to wait for rfboot (handshake and header)"
    ),
    method: str = typer.Option(
        "flow", "--method", "-m", help=f"Transfer method: {'|'.join(sorted(TRANSPORTERS))}"
    ),
    project: Path = typer.Option(Path("."), "--project", help="Project directory"),
    verbose: bool = VerboseOption,
) -> None:
    """Upload firmware to the target running rfboot."""
    set_verbose(verbose)
    print_header("Upload Firmware")

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Sending packets...", total=None)

        def on_progress(sent: int, total: int) -> None:
            progress.update(task, completed=sent, total=total)

        result = core_upload_firmware(
            firmware,
            project_dir=project,
            port=port,
            known_ports=known_ports,
            baudrate=baud,
            timeout=timeout,
            method=method,
            progress_cb=on_progress,
        )

    if result.ok and not result.skipped:
        table = Table(title="Upload")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        for name, value in result.upload_rows():
            table.add_row(name, value)
        console.print(table)

    finish(result, "Upload complete", verbose)


@app.command()
def send(
    firmware: Path = typer.Argument(..., help="Raw application binary (.bin)"),
    port: Optional[str] = PortOption,
    known_ports: Optional[Path] = KnownPortsOption,
    baud: int = BaudOption,
    timeout: float = typer.Option(10.0, "--timeout", "-t", help="Seconds to wait for rfboot"),
    method: str = typer.Option("flow", "--method", "-m", help="Transfer method"),
    project: Path = typer.Option(Path("."), "--project", help="Project directory"),
    verbose: bool = VerboseOption,
) -> None:
    """Alias for upload."""
    upload(
        firmware=firmware,
        port=port,
        known_ports=known_ports,
        baud=baud,
        timeout=timeout,
        method=method,
        project=project,
        verbose=verbose,
    )


@app.command()
def create(
    name: str = typer.Argument(..., help="Project name (alphanumeric)"),
) -> None:
    """Create a project with random RF addresses and XTEA key."""
    print_header(f"Create Project {name}")
    result = core_create(name)
    if result.ok:
        console.print(f"Application SyncWord = {result.metadata['app_address']}")
        console.print(f"rfboot SyncWord = {result.metadata['rfboot_address']}")
        console.print(f"rfboot channel = {result.metadata['rfboot_channel']}")
        console.print(f"Application channel = {result.metadata['app_channel']}")
    finish(result, f"Project created in {result.target or name}")


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def monitor(
    command: Optional[List[str]] = typer.Argument(
        None, help="Terminal program to start; the port path is appended"
    ),
    port: Optional[str] = typer.Option(None, "--port", envvar=PORT_ENV, help="Serial port"),
    known_ports: Optional[Path] = KnownPortsOption,
    baud: int = typer.Option(DEFAULT_BAUDRATE, "--baud", help="usb2rf serial speed"),
    project: Path = typer.Option(Path("."), "--project", help="Project directory"),
) -> None:
    """
    Point usb2rf at the application and optionally open a terminal.

    Put options meant for the terminal program after "--", e.g.
    rftool monitor -- picocom -b 38400
    """
    result = core_monitor(
        command,
        project_dir=project,
        port=port,
        known_ports=known_ports,
        baudrate=baud,
    )
    finish(result, f"usb2rf set to {result.target or 'the application'}")


@app.command()
def resetlocal(
    port: Optional[str] = PortOption,
    known_ports: Optional[Path] = KnownPortsOption,
    baud: int = BaudOption,
) -> None:
    """Reset the local usb2rf module."""
    result = core_reset_local(port=port, known_ports=known_ports, baudrate=baud)
    finish(result, "usb2rf module reset")


@app.command()
def getport(known_ports: Optional[Path] = KnownPortsOption) -> None:
    """Print the serial port of the connected usb2rf module."""
    result = core_get_port(known_ports)
    print_warnings_from_result(result)
    if not result.ok:
        sys.exit(1)
    typer.echo(result.port)


@app.command()
def addport(
    known_ports: Optional[Path] = KnownPortsOption,
    timeout: float = typer.Option(60.0, "--timeout", "-t", help="Seconds to wait for the device"),
) -> None:
    """Wait for a usb2rf module to be plugged in and remember it."""
    print_header("Add Port")
    console.print("Plug in the usb2rf module now...")
    result = core_add_port(known_ports, timeout=timeout)
    finish(result, f"Port {result.port} registered")


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())

    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Device", style="magenta")
    table.add_column("Description", style="green")

    for port in ports_list:
        table.add_row(port.device, port.name or "-", port.description or "-")

    console.print(table)


@app.command()
def version() -> None:
    """Show the rftool version."""
    typer.echo(__version__)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
