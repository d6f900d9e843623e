"""CLI interface for backupd."""

import sys
from typing import Optional

import click

from backupd import configure_logging
from backupd.backup.compression import CompressionError, PREFERENCE_ORDER
from backupd.config import get_config
from backupd.daemon import (
    ProcessController,
    DaemonStatus,
    LifecycleError,
    require_root,
)
from backupd.job_config import ConfigError


HELP_TEXT = f"""\
Automatic backup system

Usage: backupd {{start|stop|status|help}}

Commands:
start     - start the backup system in the background
stop      - stop the backup system
status    - check whether the backup system is running
help      - show this help

Configuration file format:
Each line holds fields separated by '|':
source_dir|backup_dir|secret|schedule|[retention]

Fields:
source_dir  - directory to back up
backup_dir  - where backups are stored
secret      - encryption secret for the backup
schedule    - when to back up:
              HH:MM  - at that time every day
              hourly - on every poll tick
              daily  - every day at 00:00
              weekly - Mondays at 00:00
retention   - (optional) how many backups to keep (default 1)

Example lines:
/home/user|/backups|secret123|daily|3
/var/www|/backups|qwerty|weekly|5
/etc|/backups|adminpass|12:00|7
/data|/backups|mypass|hourly

Compressors: {', '.join(PREFERENCE_ORDER)} (auto-detected in that order), zip (on request)
Encryption: AES-256-GCM (AES zip for the zip compressor)
"""


# Global controller instance
_controller: Optional[ProcessController] = None


def get_controller(console: bool = False) -> ProcessController:
    """Get or create the process controller."""
    global _controller
    if _controller is None:
        config = get_config()
        configure_logging(config, console=console)
        _controller = ProcessController(config)
    return _controller


def _check_root(controller: ProcessController):
    try:
        require_root(controller.config)
    except LifecycleError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)


class BackupdGroup(click.Group):
    """Command group whose -h/--help prints the full usage text."""

    def get_help(self, ctx):
        return HELP_TEXT.rstrip()


@click.group(cls=BackupdGroup, context_settings={"help_option_names": ["-h", "--help"]})
def cli():
    """backupd - scheduled encrypted directory backups"""
    pass


@cli.command()
@click.option("--foreground", is_flag=True, help="Run in this process instead of detaching")
def start(foreground: bool):
    """Start the backup system."""
    controller = get_controller(console=foreground)
    _check_root(controller)

    click.echo("Starting backup system")
    try:
        report = controller.start(foreground=foreground)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        click.echo(HELP_TEXT, err=True)
        sys.exit(1)
    except (CompressionError, LifecycleError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not foreground and report.status is DaemonStatus.RUNNING:
        click.echo(f"Backup system started (PID {report.pid})")


@cli.command()
def stop():
    """Stop the backup system."""
    controller = get_controller()
    _check_root(controller)

    try:
        report = controller.stop()
    except LifecycleError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if report.status is DaemonStatus.RUNNING:
        click.echo(f"Backup system stopped (PID {report.pid})")
    elif report.status is DaemonStatus.STALE_LOCK:
        click.echo(f"Removed stale lock record ({report})")
    else:
        click.echo("Backup system is not running")


@cli.command()
def status():
    """Check whether the backup system is running."""
    controller = get_controller()
    _check_root(controller)

    click.echo(str(controller.status()))


@cli.command(name="help")
def help_command():
    """Show usage and configuration format."""
    click.echo(HELP_TEXT)


def main():
    cli(prog_name="backupd")
