"""
nano firmware flasher CLI

Thin command-line front-end over the core workflows: device details,
runtime update, application deployment, ESP32 flashing and firmware
cache / archive management.
"""

import importlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from nano_firmware_flasher import __version__
from nano_firmware_flasher.config import FlasherSettings
from nano_firmware_flasher.core.actions import UpdateOrchestrator
from nano_firmware_flasher.core.errors import FlasherError
from nano_firmware_flasher.core.messages import ExitCode, MessageLevel, MessageItem, result_to_messages
from nano_firmware_flasher.core.output import ConsoleSink, VerbosityLevel
from nano_firmware_flasher.core.parsing import (
    parse_address,
    parse_flash_size,
    parse_partition_table_size,
    parse_platform,
)
from nano_firmware_flasher.core.results import OperationResult
from nano_firmware_flasher.firmware import (
    FirmwareArchiveManager,
    FirmwarePackageResolver,
    PackageChannel,
    RepositoryClient,
)
from nano_firmware_flasher.firmware.versions import FirmwareVersion
from nano_firmware_flasher.protocol import (
    DebugEngine,
    DeviceInfo,
    SerialTransportSession,
    VirtualDeviceSession,
    list_serial_ports,
)
from nano_firmware_flasher.protocol.transport import TransportSession

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("nano_firmware_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="nano firmware flasher - update nano devices and manage firmware packages")

VIRTUAL_PREFIX = "virtual://"

_state = {
    "verbosity": VerbosityLevel.NORMAL,
}


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


def print_message(item: MessageItem, verbose: bool = False) -> None:
    """Print a structured message with optional remediation."""
    if item.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif item.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} {item.title}", style=style)
    if verbose and item.detail:
        console.print(f"   {item.detail}", style="dim")
    if verbose and item.remediation:
        console.print(f"   → {item.remediation}", style="cyan")


def _verbose() -> bool:
    return _state["verbosity"] >= VerbosityLevel.DETAILED


def finish(result: OperationResult, success_text: Optional[str] = None) -> None:
    """Print an operation result and exit non-zero on failure."""
    for item in result_to_messages(result):
        print_message(item, verbose=not result.ok or _verbose())

    if _state["verbosity"] >= VerbosityLevel.DIAGNOSTIC:
        for line in result.logs:
            console.print(f"   {line}", style="dim", markup=False)

    if not result.ok:
        console.print(result.to_summary(), style="dim", markup=False, highlight=False)
        raise typer.Exit(1)
    if success_text:
        print_success(success_text)


def exit_with(code: ExitCode) -> None:
    if code != ExitCode.OK:
        print_error(f"{code.name}: {code.description}")
        raise typer.Exit(1)


def _settings() -> FlasherSettings:
    try:
        return FlasherSettings.from_env()
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)


def _client(settings: FlasherSettings) -> RepositoryClient:
    return RepositoryClient(base_url=settings.repository_url, timeout=settings.http_timeout)


def _resolver(settings: FlasherSettings) -> FirmwarePackageResolver:
    return FirmwarePackageResolver(
        cache_path=settings.cache_path,
        client=_client(settings),
        sink=ConsoleSink(console),
        verbosity=_state["verbosity"],
    )


def _orchestrator(settings: FlasherSettings) -> UpdateOrchestrator:
    return UpdateOrchestrator(
        resolver=_resolver(settings),
        sink=ConsoleSink(console),
        verbosity=_state["verbosity"],
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        per_step_timeout=settings.per_step_timeout,
    )


def load_debug_engine(engine_path: str) -> DebugEngine:
    """
    Instantiate a debug engine from "package.module:ClassName".

    Raises:
        ValueError: If the engine_path is malformed or the class is not a DebugEngine.
    """
    module_name, _, class_name = engine_path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Invalid debug engine '{engine_path}'. Use package.module:ClassName.")
    module = importlib.import_module(module_name)
    engine_class = getattr(module, class_name, None)
    if engine_class is None or not issubclass(engine_class, DebugEngine):
        raise ValueError(f"'{engine_path}' is not a DebugEngine")
    return engine_class()


def open_session(port: str, engine: Optional[str]) -> TransportSession:
    """Serial session for a port, or the virtual device for virtual://."""
    if port.startswith(VIRTUAL_PREFIX):
        return VirtualDeviceSession(endpoint=port)
    engine = engine or os.environ.get("NANOFF_DEBUG_ENGINE")
    if not engine:
        print_error("A debug engine is required for serial devices (--engine or NANOFF_DEBUG_ENGINE).")
        raise typer.Exit(1)
    try:
        return SerialTransportSession(port, load_debug_engine(engine))
    except (ImportError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def _channel(preview: bool) -> PackageChannel:
    return PackageChannel.from_preview(preview)


@app.callback()
def main_options(
    verbosity: str = typer.Option(
        "normal", "--verbosity", "-v",
        help="quiet, minimal, normal, detailed or diagnostic",
    ),
) -> None:
    """Global options."""
    try:
        level = VerbosityLevel[verbosity.strip().upper()]
    except KeyError:
        print_error(f"Invalid verbosity '{verbosity}'")
        raise typer.Exit(1)
    _state["verbosity"] = level
    if level >= VerbosityLevel.DIAGNOSTIC:
        logger.setLevel(logging.DEBUG)
    elif level >= VerbosityLevel.DETAILED:
        logger.setLevel(logging.INFO)


@app.command()
def version() -> None:
    """Show the tool version."""
    console.print(f"nano firmware flasher {__version__}")


@app.command("list-ports")
def list_ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Device", style="magenta")
    table.add_column("Description", style="green")

    for port in ports_list:
        table.add_row(port["device"], port["name"], port["description"])

    console.print(table)


@app.command("device-details")
def device_details(
    port: str = typer.Option(..., "--port", "-p", help="Serial port, or virtual://N"),
    engine: Optional[str] = typer.Option(None, "--engine", help="Debug engine, package.module:ClassName"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Connect to a device and show what it reports."""
    session = open_session(port, engine)
    result = _orchestrator(_settings()).get_device_details(session)

    if output_json:
        console.print(json.dumps(result.to_dict(), indent=2, default=str))
        if not result.ok:
            raise typer.Exit(1)
        return

    if result.ok:
        table = Table(title="Device Details")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        for name in ("endpoint", "target_name", "platform", "firmware_kind", "runtime_version", "bootloader_version"):
            table.add_row(name, str(result.metadata.get(name) or "-"))
        console.print(table)
    finish(result)


@app.command()
def update(
    port: str = typer.Option(..., "--port", "-p", help="Serial port, or virtual://N"),
    engine: Optional[str] = typer.Option(None, "--engine", help="Debug engine, package.module:ClassName"),
    fw_version: Optional[str] = typer.Option(None, "--fw-version", help="Package version (default: latest)"),
    preview: bool = typer.Option(False, "--preview", help="Use preview packages"),
    clr_file: Optional[Path] = typer.Option(None, "--clr-file", help="Update with a local CLR .bin file"),
    archive_path: Optional[Path] = typer.Option(None, "--archive-path", help="Take the package from a firmware archive"),
    no_downgrade: bool = typer.Option(False, "--no-downgrade", help="Fail instead of installing an older version"),
    show_fw_only: bool = typer.Option(False, "--show-fw-only", help="Only show the device target and platform"),
) -> None:
    """Update the runtime of a nano device."""
    if fw_version:
        try:
            FirmwareVersion.parse(fw_version)
        except ValueError as e:
            print_error(str(e))
            raise typer.Exit(1)

    session = open_session(port, engine)
    result = _orchestrator(_settings()).update_runtime(
        session,
        version=fw_version,
        channel=_channel(preview),
        runtime_file=clr_file,
        archive_directory=archive_path,
        allow_downgrade=not no_downgrade,
        show_firmware_only=show_fw_only,
    )
    if result.metadata.get("up_to_date"):
        finish(result, "Device is up to date")
    else:
        finish(result, f"Updated {result.target} {result.version}".strip())


@app.command()
def deploy(
    port: str = typer.Option(..., "--port", "-p", help="Serial port, or virtual://N"),
    image: Path = typer.Option(..., "--image", "-i", help="Deployment image (.bin)"),
    engine: Optional[str] = typer.Option(None, "--engine", help="Debug engine, package.module:ClassName"),
    address: Optional[str] = typer.Option(None, "--address", help="Override deployment address (0x..)"),
) -> None:
    """Deploy an application image to a nano device."""
    try:
        deploy_address = parse_address(address)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    session = open_session(port, engine)
    result = _orchestrator(_settings()).deploy_application(session, image, address=deploy_address)
    finish(result, f"Deployed {image.name}")


@app.command("flash-esp32")
def flash_esp32(
    port: str = typer.Option(..., "--port", "-p", help="Serial port the ESP32 is attached to"),
    target: str = typer.Option(..., "--target", "-t", help="Target name"),
    flash_size: Optional[str] = typer.Option(None, "--flash-size", help="Chip flash size (4MB, 0x400000)"),
    chip_type: str = typer.Option("ESP32", "--chip-type", help="Chip sub-variant (ESP32-C3, ESP32-S3, ...)"),
    partition_table_size: Optional[int] = typer.Option(None, "--partition-table-size", help="Partition table size override in MB"),
    fw_version: Optional[str] = typer.Option(None, "--fw-version", help="Package version (default: latest)"),
    preview: bool = typer.Option(False, "--preview", help="Use preview packages"),
    archive_path: Optional[Path] = typer.Option(None, "--archive-path", help="Take the package from a firmware archive"),
) -> None:
    """Flash bootloader, partition table and runtime to an ESP32 with esptool."""
    try:
        size = parse_flash_size(flash_size)
        table_size = parse_partition_table_size(partition_table_size)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)
    if size is None and table_size is None:
        print_error("Either --flash-size or --partition-table-size is required")
        raise typer.Exit(1)

    device_info = DeviceInfo(target_name=target, platform="esp32", flash_size=size, chip_type=chip_type)
    result = _orchestrator(_settings()).flash_esp32_firmware(
        port,
        device_info,
        target_name=target,
        version=fw_version,
        channel=_channel(preview),
        partition_table_size=table_size,
        archive_directory=archive_path,
    )
    finish(result, f"Flashed {target} {result.version}")


def _print_targets(title: str, packages) -> None:
    if not packages:
        print_warning("No targets found")
        return
    table = Table(title=title)
    table.add_column("Target", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Platform", style="magenta")
    for package in sorted(packages, key=lambda p: (p.name, p.parsed_version)):
        table.add_row(package.name, package.version, package.platform or "-")
    console.print(table)


@app.command("list-targets")
def list_targets(
    platform: Optional[str] = typer.Option(None, "--platform", help="esp32, stm32, ti_simplelink, gg11"),
    preview: bool = typer.Option(False, "--preview", help="List preview packages"),
    community: bool = typer.Option(False, "--community", help="List community targets"),
) -> None:
    """List targets available in the package repository."""
    try:
        platform_filter = parse_platform(platform)
    except ValueError as e:
        print_error(str(e))
        exit_with(ExitCode.E9013)

    try:
        packages = _client(_settings()).list_packages(community=community, preview=preview, platform=platform_filter)
    except FlasherError as e:
        print_error(e.message)
        exit_with(e.exit_code)
    _print_targets("Repository Targets", packages)


@app.command("archive-list")
def archive_list(
    archive_path: Path = typer.Option(..., "--archive-path", help="Firmware archive directory"),
    platform: Optional[str] = typer.Option(None, "--platform", help="esp32, stm32, ti_simplelink, gg11"),
    preview: bool = typer.Option(False, "--preview", help="List preview packages"),
) -> None:
    """List targets present in a firmware archive."""
    try:
        platform_filter = parse_platform(platform)
    except ValueError as e:
        print_error(str(e))
        exit_with(ExitCode.E9013)

    manager = FirmwareArchiveManager(archive_path, sink=ConsoleSink(console))
    packages = manager.get_target_list(preview=preview, platform=platform_filter, verbosity=_state["verbosity"])
    _print_targets("Archived Targets", packages)


@app.command("archive-add")
def archive_add(
    archive_path: Path = typer.Option(..., "--archive-path", help="Firmware archive directory"),
    platform: Optional[str] = typer.Option(None, "--platform", help="esp32, stm32, ti_simplelink, gg11"),
    target: Optional[str] = typer.Option(None, "--target", "-t", help="Single target (default: all of the platform)"),
    fw_version: Optional[str] = typer.Option(None, "--fw-version", help="Package version (default: latest)"),
    preview: bool = typer.Option(False, "--preview", help="Use preview packages"),
    keep_all: bool = typer.Option(False, "--keep-all", help="Keep older versions in the archive"),
    workers: int = typer.Option(1, "--workers", min=1, help="Targets downloaded in parallel"),
) -> None:
    """Add packages from the repository to a firmware archive."""
    try:
        platform_filter = parse_platform(platform)
    except ValueError as e:
        print_error(str(e))
        exit_with(ExitCode.E9013)
    if target is None and platform_filter is None:
        print_error("Either --target or --platform is required")
        exit_with(ExitCode.E9000)

    settings = _settings()
    manager = FirmwareArchiveManager(archive_path, client=_client(settings), sink=ConsoleSink(console))
    code = manager.download_firmware_from_repository(
        preview=preview,
        platform=platform_filter,
        target_name=target,
        version=fw_version,
        keep_all_versions=keep_all,
        verbosity=_state["verbosity"],
        max_workers=workers,
    )
    exit_with(code)
    print_success(f"Archive updated: {manager.archive_path}")


@app.command("clear-cache")
def clear_cache() -> None:
    """Remove the local firmware cache."""
    resolver = _resolver(_settings())
    try:
        resolver.clear_cache()
    except FlasherError as e:
        print_error(e.message)
        exit_with(e.exit_code)
    print_success(f"Cleared {resolver.cache_path}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
