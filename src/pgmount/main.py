import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from pgmount import __version__
from pgmount.config import AppConfig, load_config
from pgmount.daemon.service import BatchResult, Daemon
from pgmount.devices.models import Device
from pgmount.errors import (
    ConfigError,
    DiscoveryError,
    MountError,
    NotificationError,
    PartialBatchFailure,
    UnlockError,
    UnmountError,
)
from pgmount.notify import Notifier, NullNotifier, init_notifications
from pgmount.utils.logging import setup_logging

# Create CLI app
app = typer.Typer(
    name="pgmount",
    help="Automounter for removable storage",
    add_completion=False
)

console = Console()
logger = logging.getLogger(__name__)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to the YAML config file")
NoConfigOption = typer.Option(False, "--no-config", help="Ignore the config file and use defaults")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
QuietOption = typer.Option(False, "--quiet", "-q", help="Only log errors")

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_size(size_bytes: int) -> str:
    """Human readable size with 1024-based units."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(SIZE_UNITS) - 1:
        size /= 1024
        unit += 1
    return f"{size:.1f} {SIZE_UNITS[unit]}"


def _fail(message: str) -> None:
    print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=1)


def _load_settings(config_path: Optional[Path], no_config: bool, verbose: bool, quiet: bool) -> AppConfig:
    """Load the configuration and set up logging from it."""
    try:
        config = AppConfig() if no_config else load_config(config_path)
    except ConfigError as e:
        setup_logging(AppConfig().logging, verbose=verbose, quiet=quiet)
        _fail(str(e))
    setup_logging(config.logging, verbose=verbose or config.verbose, quiet=quiet or config.quiet)
    return config


def _make_notifier(config: AppConfig) -> Notifier:
    if not config.notifications.enabled:
        return NullNotifier()
    try:
        return init_notifications()
    except NotificationError as e:
        logger.warning(f"Notifications disabled: {e}")
        return NullNotifier()


def _report_batch(result: BatchResult, verb: str) -> None:
    for failure in result.failures:
        print(f"[red]Failed[/red] {failure.path}: {failure.error}")
    print(f"{result.succeeded} device(s) {verb}, {len(result.failures)} failed")
    try:
        result.raise_for_failures()
    except PartialBatchFailure as e:
        _fail(str(e))


@app.callback()
def callback():
    """pgmount: mount removable devices automatically."""


@app.command()
def version():
    """Show the version."""
    print(f"pgmount {__version__}")


@app.command()
def daemon(
    config_path: Optional[Path] = ConfigOption,
    no_config: bool = NoConfigOption,
    automount: Optional[bool] = typer.Option(
        None, "--automount/--no-automount", help="Mount devices as they appear"
    ),
    notify: Optional[bool] = typer.Option(
        None, "--notify/--no-notify", help="Show desktop notifications"
    ),
    mount_all: bool = typer.Option(
        False, "--mount-all", help="Mount every present device at startup"
    ),
    poll_interval: Optional[float] = typer.Option(
        None, "--poll-interval", help="Seconds between device scans"
    ),
    verbose: bool = VerboseOption,
    quiet: bool = QuietOption,
):
    """Watch for removable devices and mount them."""
    config = _load_settings(config_path, no_config, verbose, quiet)

    # Override config with command line arguments
    if automount is not None:
        config.automount = automount
    if notify is not None:
        config.notifications.enabled = notify
    if poll_interval is not None:
        if poll_interval <= 0:
            _fail("--poll-interval must be positive")
        config.poll_interval = poll_interval

    service = Daemon(config, notifier=_make_notifier(config))
    try:
        asyncio.run(_run_daemon(service, mount_all))
    except KeyboardInterrupt:
        print("\nShutting down...")
    except DiscoveryError as e:
        logger.error(f"Device discovery failed: {e}")
        _fail(str(e))


async def _run_daemon(service: Daemon, mount_all: bool) -> None:
    await service.start()
    service.install_signal_handlers()
    if mount_all:
        # Let the first tick's automounts finish so they are not attempted twice
        await service.wait_idle()
        result = await service.mount_all()
        for failure in result.failures:
            logger.warning(f"Could not mount {failure.path}: {failure.error}")
    await service.wait_for_stop()


@app.command()
def mount(
    target: Optional[str] = typer.Argument(None, help="Device path or name, e.g. /dev/da0p1"),
    all_devices: bool = typer.Option(False, "--all", "-a", help="Mount all removable devices"),
    fs_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filesystem type"),
    options: Optional[str] = typer.Option(None, "--options", "-o", help="Comma-separated mount options"),
    config_path: Optional[Path] = ConfigOption,
    no_config: bool = NoConfigOption,
    verbose: bool = VerboseOption,
    quiet: bool = QuietOption,
):
    """Mount a removable device."""
    if not target and not all_devices:
        _fail("specify a device or --all")
    config = _load_settings(config_path, no_config, verbose, quiet)
    service = Daemon(config, notifier=_make_notifier(config))
    option_list = [o.strip() for o in options.split(",") if o.strip()] if options is not None else None

    if all_devices:
        result = _run_or_fail(_mount_all(service))
        _report_batch(result, "mounted")
        return

    mounted = _run_or_fail(_mount_one(service, target, fs_type, option_list))
    print(f"Mounted [bold]{mounted.path}[/bold] at {mounted.mount_point}")


async def _mount_all(service: Daemon) -> BatchResult:
    try:
        return await service.mount_all()
    finally:
        await service.drain()


async def _mount_one(service: Daemon, target: str, fs_type: Optional[str],
                     options: Optional[List[str]]) -> Device:
    try:
        device = await service.find_device(target)
        if device is None:
            raise MountError(f"device not found: {target}")
        return await service.mount_device(device, fs_type=fs_type, options=options)
    finally:
        await service.drain()


@app.command()
def umount(
    target: Optional[str] = typer.Argument(None, help="Device path, name or mount point"),
    all_devices: bool = typer.Option(False, "--all", "-a", help="Unmount all removable devices"),
    force: bool = typer.Option(False, "--force", "-f", help="Force the unmount"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Power off the disk afterwards"),
    config_path: Optional[Path] = ConfigOption,
    no_config: bool = NoConfigOption,
    verbose: bool = VerboseOption,
    quiet: bool = QuietOption,
):
    """Unmount a removable device."""
    if not target and not all_devices:
        _fail("specify a device, a mount point or --all")
    config = _load_settings(config_path, no_config, verbose, quiet)
    service = Daemon(config, notifier=_make_notifier(config))

    if all_devices:
        result = _run_or_fail(_unmount_all(service, force, detach))
        _report_batch(result, "unmounted")
        return

    unmounted = _run_or_fail(_unmount_one(service, target, force, detach))
    print(f"Unmounted [bold]{unmounted.path}[/bold]")


async def _unmount_all(service: Daemon, force: bool, detach: bool) -> BatchResult:
    try:
        return await service.unmount_all(force=force, detach=detach)
    finally:
        await service.drain()


async def _unmount_one(service: Daemon, target: str, force: bool, detach: bool) -> Device:
    try:
        device = await service.find_device(target)
        if device is None:
            raise UnmountError(f"device not found: {target}")
        return await service.unmount_device(device, force=force, detach=detach)
    finally:
        await service.drain()


def _run_or_fail(coro):
    try:
        return asyncio.run(coro)
    except (DiscoveryError, MountError, UnmountError, UnlockError) as e:
        logger.debug(f"Command failed: {e}")
        _fail(str(e))


@app.command()
def info(
    all_devices: bool = typer.Option(False, "--all", "-a", help="Include whole disks"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show UUIDs and flags"),
    config_path: Optional[Path] = ConfigOption,
    no_config: bool = NoConfigOption,
    quiet: bool = QuietOption,
):
    """List removable devices."""
    config = _load_settings(config_path, no_config, False, quiet)
    service = Daemon(config)
    devices = _run_or_fail(service.scan())
    if not all_devices:
        devices = [d for d in devices if d.is_partition]

    if not devices:
        print("No removable devices found")
        return

    console.print(build_device_table(devices, verbose))


def build_device_table(devices: List[Device], verbose: bool = False) -> Table:
    """Rich table describing a list of devices."""
    table = Table(title="Removable devices")
    table.add_column("Device", style="cyan")
    table.add_column("Label")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("Mounted at")
    if verbose:
        table.add_column("UUID")
        table.add_column("Encrypted")
        table.add_column("Removable")

    for device in devices:
        row = [
            device.path,
            device.label or "-",
            device.fs_type or "-",
            format_size(device.size_bytes),
            device.mount_point if device.is_mounted else "-",
        ]
        if verbose:
            encrypted = "no"
            if device.is_encrypted:
                encrypted = "unlocked" if device.is_unlocked else "locked"
            row += [device.volume_id or "-", encrypted, "yes" if device.is_removable else "no"]
        table.add_row(*row)
    return table


if __name__ == "__main__":
    app()
