"""
blockmodem CLI - XMODEM-1K / YMODEM file transfer

Command-line interface for sending and receiving files over a serial link.
"""

import click
import sys
import os
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# Rich library for colorized output and progress bars
from rich.console import Console
from rich.progress import (
    Progress, SpinnerColumn, BarColumn, TextColumn,
    DownloadColumn, TransferSpeedColumn, TimeElapsedColumn
)
from rich.panel import Panel
from rich.table import Table
from rich import box
import yaml

from blockmodem import __version__
from blockmodem.batch import XModem1K, YModem, check_dos_filename
from blockmodem.cancel import CancelToken
from blockmodem.channel import Impairment, SerialChannel, pipe_pair
from blockmodem.config import AppConfig, TransferConfig, load_config
from blockmodem.errors import FatalTransferError, LocallyCancelled
from blockmodem.protocol import TransferEngine, TransferStatistics

# Initialize rich console
console = Console()

# Exit codes
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_ARGUMENT_ERROR = 2
EXIT_CONFIG_ERROR = 3
EXIT_PROTOCOL_ERROR = 5
EXIT_FILE_ERROR = 6
EXIT_VERIFICATION_ERROR = 7
EXIT_CANCELLED = 130


def format_bytes(bytes_val: float) -> str:
    """
    Format bytes as human-readable string

    Args:
        bytes_val: Bytes value

    Returns:
        Formatted string (e.g., "1.5 MB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if abs(bytes_val) < 1024.0:
            return f"{bytes_val:.1f} {unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f} PB"


def success(message: str) -> None:
    """Print success message in green"""
    console.print(f"✓ {message}", style="bold green")


def error(message: str) -> None:
    """Print error message in red"""
    console.print(f"✗ {message}", style="bold red")


def warning(message: str) -> None:
    """Print warning message in yellow"""
    console.print(f"⚠ {message}", style="bold yellow")


def info(message: str) -> None:
    """Print info message in blue"""
    console.print(f"ℹ {message}", style="blue")


def metric(label: str, value: str) -> None:
    """Print metric in cyan"""
    console.print(f"{label}: ", style="cyan", end="")
    console.print(value, style="bold cyan")


def setup_logging(verbose: bool) -> None:
    """
    Setup logging configuration

    Args:
        verbose: Enable verbose/debug logging
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def statistics_table(title: str, results: List[TransferStatistics]) -> Table:
    """Build a summary table of transfer statistics"""
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="bold")

    total_bytes = sum(r.bytes_transferred for r in results)
    elapsed = sum(r.elapsed_time() for r in results)
    modes = {r.edc_mode.value for r in results if r.edc_mode}

    table.add_row("Transfers", str(len(results)))
    table.add_row("Data", format_bytes(total_bytes))
    table.add_row("Error detection", ", ".join(sorted(modes)) or "n/a")
    table.add_row("Blocks sent", str(sum(r.blocks_sent for r in results)))
    table.add_row("Blocks received", str(sum(r.blocks_received for r in results)))
    table.add_row("Retransmissions", str(sum(r.retransmissions for r in results)))
    table.add_row("Duplicates", str(sum(r.duplicates for r in results)))
    table.add_row("NAKs sent/received",
                  f"{sum(r.naks_sent for r in results)}/{sum(r.naks_received for r in results)}")
    table.add_row("Timeouts", str(sum(r.timeouts for r in results)))
    if elapsed > 0:
        table.add_row("Throughput", f"{format_bytes(total_bytes / elapsed)}/s")
    return table


def run_cancellable(task: Callable[[], Any], cancel: CancelToken) -> Any:
    """
    Run a transfer in a worker thread so Ctrl+C can cancel it cleanly

    The main thread waits for the worker; KeyboardInterrupt sets the cancel
    token, which makes the engine send the cancellation burst and raise
    LocallyCancelled in the worker.

    Args:
        task: Transfer to run
        cancel: Token shared with the transfer

    Returns:
        The task's return value (its exception is re-raised)
    """
    outcome: Dict[str, Any] = {}

    def worker():
        try:
            outcome['result'] = task()
        except BaseException as e:
            outcome['error'] = e

    thread = threading.Thread(target=worker, name="transfer", daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.2)
        except KeyboardInterrupt:
            warning("Cancelling transfer...")
            cancel.cancel()

    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('result')


def apply_overrides(app_config: AppConfig, port: Optional[str], baudrate: Optional[int],
                    timeout: Optional[float], retries: Optional[int],
                    block_size: Optional[int]) -> AppConfig:
    """Apply command-line overrides on top of the loaded configuration"""
    if port:
        app_config.serial.port = port
    if baudrate:
        app_config.serial.baudrate = baudrate
    if timeout:
        app_config.transfer.block_timeout = timeout
    if retries:
        app_config.transfer.max_errors = retries
    if block_size:
        app_config.transfer.block_size = block_size
    app_config.transfer.validate()
    app_config.serial.validate()
    return app_config


def transfer_options(func):
    """Options shared by send and receive"""
    func = click.option('--block-size', type=click.Choice(['128', '1024']), default=None,
                        help='Data block size')(func)
    func = click.option('--retries', type=int, default=None,
                        help='Consecutive errors before aborting')(func)
    func = click.option('--timeout', type=float, default=None,
                        help='Per-block timeout in seconds')(func)
    func = click.option('--baudrate', '-b', type=int, default=None, help='Serial baud rate')(func)
    func = click.option('--port', '-p', type=str, default=None,
                        help='Serial device or pyserial URL (e.g. /dev/ttyUSB0, socket://host:7000)')(func)
    func = click.option('--xmodem', is_flag=True, help='Use XMODEM-1K (no header block)')(func)
    return func


def _prepare(ctx, port, baudrate, timeout, retries, block_size) -> Optional[AppConfig]:
    try:
        app_config = apply_overrides(ctx.obj['app_config'], port, baudrate, timeout, retries,
                                     int(block_size) if block_size else None)
    except ValueError as e:
        error(f"Invalid configuration: {e}")
        return None
    if not app_config.serial.port:
        error("No serial port given (use --port or the 'serial.port' configuration key)")
        return None
    return app_config


def _report_failure(ctx, action: str, e: Exception) -> int:
    """Print an error and map it to an exit code"""
    if isinstance(e, LocallyCancelled):
        warning(f"{action} cancelled")
        return EXIT_CANCELLED
    if isinstance(e, FatalTransferError):
        error(f"{action} failed: {e}")
        return EXIT_PROTOCOL_ERROR
    if isinstance(e, OSError):
        error(f"{action} failed: {e}")
        return EXIT_FILE_ERROR
    if isinstance(e, ValueError):
        error(f"{action} failed: {e}")
        return EXIT_ARGUMENT_ERROR

    error(f"{action} failed: {e}")
    if ctx.obj['verbose']:
        import traceback
        console.print(traceback.format_exc(), style="red dim")
    return EXIT_GENERAL_ERROR


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(), help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx, config: Optional[str], verbose: bool):
    """
    blockmodem - XMODEM-1K / YMODEM file transfer

    Exit Codes:
      0 - Success
      1 - General error
      2 - Command-line argument error
      3 - Configuration error
      5 - Protocol error (timeout, retry limit, cancelled by peer)
      6 - File operation error
      7 - Verification error
      130 - Cancelled locally
    """
    # Check for NO_COLOR environment variable
    if os.environ.get('NO_COLOR'):
        console.no_color = True

    ctx.ensure_object(dict)
    ctx.obj['config'] = config or 'blockmodem.yaml'
    ctx.obj['verbose'] = verbose

    # Setup logging
    setup_logging(verbose)

    try:
        ctx.obj['app_config'] = load_config(ctx.obj['config'])
    except ValueError as e:
        error(f"Configuration error: {e}")
        ctx.exit(EXIT_CONFIG_ERROR)


@main.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@transfer_options
@click.pass_context
def send(ctx, files, xmodem: bool, port, baudrate, timeout, retries, block_size):
    """Send one or more files (YMODEM batch unless --xmodem)"""
    app_config = _prepare(ctx, port, baudrate, timeout, retries, block_size)
    if app_config is None:
        ctx.exit(EXIT_CONFIG_ERROR)

    if xmodem and len(files) > 1:
        error("XMODEM-1K sends a single file")
        ctx.exit(EXIT_ARGUMENT_ERROR)

    if not xmodem:
        try:
            for f in files:
                check_dos_filename(Path(f).name)
        except ValueError as e:
            error(str(e))
            ctx.exit(EXIT_ARGUMENT_ERROR)

    total = sum(Path(f).stat().st_size for f in files)
    cancel = CancelToken()

    try:
        with SerialChannel.open(app_config.serial) as channel, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            console=console
        ) as progress:
            task = progress.add_task("Waiting for receiver...", total=total)

            def advance(count: int) -> None:
                progress.update(task, advance=count, description="Sending")

            if xmodem:
                modem = XModem1K(channel, app_config.transfer, cancel, advance)
                results = [run_cancellable(lambda: modem.send(files[0]), cancel)]
            else:
                modem = YModem(channel, app_config.transfer, cancel, advance)
                results = run_cancellable(lambda: modem.batch_send(*files), cancel)
    except Exception as e:
        ctx.exit(_report_failure(ctx, "Send", e))

    success(f"Sent {len(files)} file(s), {format_bytes(total)}")
    console.print(statistics_table("Transfer Summary", results))
    ctx.exit(EXIT_SUCCESS)


@main.command()
@click.argument('target', required=False, type=click.Path(), default='.')
@transfer_options
@click.pass_context
def receive(ctx, target: str, xmodem: bool, port, baudrate, timeout, retries, block_size):
    """Receive files into TARGET (a directory; a file path with --xmodem)"""
    app_config = _prepare(ctx, port, baudrate, timeout, retries, block_size)
    if app_config is None:
        ctx.exit(EXIT_CONFIG_ERROR)

    target_path = Path(target)
    if not xmodem and not target_path.is_dir():
        error(f"Not a directory: {target}")
        ctx.exit(EXIT_FILE_ERROR)
    if xmodem and target_path.is_dir():
        error("XMODEM-1K carries no file name; give a file path as TARGET")
        ctx.exit(EXIT_ARGUMENT_ERROR)

    cancel = CancelToken()
    received: List[Path] = []
    results: List[TransferStatistics] = []

    try:
        with SerialChannel.open(app_config.serial) as channel, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            console=console
        ) as progress:
            task = progress.add_task("Waiting for sender...", total=None)

            def advance(count: int) -> None:
                progress.update(task, advance=count, description="Receiving")

            if xmodem:
                modem = XModem1K(channel, app_config.transfer, cancel, advance)
                results.append(run_cancellable(lambda: modem.receive(target_path), cancel))
                received.append(target_path)
            else:
                modem = YModem(channel, app_config.transfer, cancel, advance)
                received = run_cancellable(lambda: modem.receive_files_in_directory(target_path), cancel)
    except Exception as e:
        ctx.exit(_report_failure(ctx, "Receive", e))

    if not received:
        info("Sender ended the batch without files")
    for path in received:
        success(f"Received {path} ({format_bytes(path.stat().st_size)})")
    if results:
        console.print(statistics_table("Transfer Summary", results))
    ctx.exit(EXIT_SUCCESS)


@main.command()
@click.option('--size', type=int, default=64 * 1024, help='Bytes to transfer')
@click.option('--corrupt-rate', type=float, default=0.0, help='Probability of flipping a bit in each byte')
@click.option('--seed', type=int, default=None, help='Random seed for the line noise')
@click.option('--checksum', is_flag=True, help='Force the legacy checksum mode')
@click.pass_context
def selftest(ctx, size: int, corrupt_rate: float, seed: Optional[int], checksum: bool):
    """Transfer random data through an in-memory loopback link"""
    if size < 0 or not 0.0 <= corrupt_rate < 1.0:
        error("size must be non-negative and corrupt-rate within [0, 1)")
        ctx.exit(EXIT_ARGUMENT_ERROR)

    config = TransferConfig(
        handshake_timeout=10.0,
        probe_interval=0.2,
        crc_probe_window=0.0 if checksum else 5.0,
        block_timeout=1.0,
        purge_timeout=0.05,
        poll_interval=0.05,
        max_errors=ctx.obj['app_config'].transfer.max_errors,
    )
    payload = os.urandom(size)
    sender_end, receiver_end = pipe_pair(Impairment(corrupt_rate=corrupt_rate, seed=seed))
    received = bytearray()
    cancel = CancelToken()

    chunks = [payload[i:i + config.block_size] for i in range(0, len(payload), config.block_size)]
    sender = TransferEngine(sender_end, sender_end, config, cancel)
    receiver = TransferEngine(receiver_end, receiver_end, config, cancel)

    outcome: Dict[str, Any] = {}

    def run_sender():
        try:
            outcome['sent'] = sender.send(chunks)
        except FatalTransferError as e:
            outcome['sender_error'] = e

    info(f"Transferring {format_bytes(size)} through loopback (corrupt rate {corrupt_rate})")
    thread = threading.Thread(target=run_sender, name="selftest-sender", daemon=True)
    thread.start()

    try:
        with console.status("[bold blue]Transferring..."):
            receive_stats = run_cancellable(lambda: receiver.receive(received.extend), cancel)
    except Exception as e:
        thread.join(config.handshake_timeout)
        ctx.exit(_report_failure(ctx, "Self-test", e))
    thread.join(config.handshake_timeout)

    if 'sender_error' in outcome:
        error(f"Sender failed: {outcome['sender_error']}")
        ctx.exit(EXIT_PROTOCOL_ERROR)

    if bytes(received[:size]) != payload:
        error("Received data does not match")
        ctx.exit(EXIT_VERIFICATION_ERROR)

    success("Loopback transfer verified")
    console.print(statistics_table("Sender", [outcome['sent']]))
    console.print(statistics_table("Receiver", [receive_stats]))
    ctx.exit(EXIT_SUCCESS)


@main.command()
@click.option('--show', is_flag=True, help='Show current configuration')
@click.pass_context
def config(ctx, show: bool):
    """Manage configuration settings"""
    config_path = ctx.obj['config']
    info(f"Configuration file: {config_path}")

    if not show:
        info("Use --show to display the effective configuration")
        ctx.exit(EXIT_SUCCESS)

    if not Path(config_path).exists():
        warning(f"Configuration file not found: {config_path}")
        info("Using default configuration")

    content = yaml.safe_dump(ctx.obj['app_config'].to_dict(), sort_keys=False)
    console.print(Panel(content, title="Configuration", border_style="blue"))
    ctx.exit(EXIT_SUCCESS)


if __name__ == '__main__':
    sys.exit(main())
