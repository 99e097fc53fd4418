"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the service runner, and status
formatting helpers used across every command group.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, TypeVar

import click
from rich.console import Console

from .. import SKLINK_HOME
from ..config import SyncConfig
from ..errors import SyncError, TerminalAction
from ..secret_store import SecretStore
from ..service import DeviceSyncService, http_transport
from ..state import SyncStatus
from ..transport import Transport

console = Console()
logger = logging.getLogger("sklink.cli")

T = TypeVar("T")

home_option = click.option(
    "--home", default=SKLINK_HOME, type=click.Path(), help="SKLink home directory.",
)


def make_transport(config: SyncConfig, secret_store: SecretStore) -> Transport:
    """Transport used by every command."""
    return http_transport(config, secret_store)


def open_service(home: str) -> DeviceSyncService:
    return DeviceSyncService.from_home(Path(home).expanduser(), transport_factory=make_transport)


def run_with_service(home: str, action: Callable[[DeviceSyncService], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh service; SyncError exits with status 1."""

    async def _run() -> Any:
        service = open_service(home)
        try:
            return await action(service)
        finally:
            await service.aclose()

    try:
        return asyncio.run(_run())
    except SyncError as exc:
        fail(exc)


def fail(error: SyncError) -> NoReturn:
    """Print a sync error the way the terminal screen would, then exit."""
    console.print(f"\n  [bold red]{error.code.value}[/] {error.message}")
    if error.is_security_event:
        console.print("  [red]This attempt was rejected for your safety. Start a new pairing.[/]")
    elif error.terminal_action == TerminalAction.RETRY:
        console.print("  [dim]Try again.[/]")
    console.print()
    sys.exit(1)


def status_icon(status: SyncStatus) -> str:
    """Map sync status to a Rich-formatted indicator."""
    return {
        SyncStatus.READY: "[bold green]READY[/]",
        SyncStatus.REGISTERED: "[bold cyan]REGISTERED[/]",
        SyncStatus.STALE: "[bold yellow]STALE[/]",
        SyncStatus.RECOVERY: "[bold red]RECOVERY[/]",
        SyncStatus.ORPHANED: "[bold red]ORPHANED[/]",
        SyncStatus.FRESH: "[dim]FRESH[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def next_step_hint(status: SyncStatus) -> str:
    return {
        SyncStatus.FRESH: "Run [cyan]sklink enable[/] to register this device.",
        SyncStatus.REGISTERED: "Pair with a trusted device: [cyan]sklink pair claim CODE[/]",
        SyncStatus.STALE: "Run [cyan]sklink keys refresh[/] to catch up.",
        SyncStatus.RECOVERY: "Run [cyan]sklink keys refresh --recover[/].",
        SyncStatus.ORPHANED: "Run [cyan]sklink reset --reinitialize[/].",
        SyncStatus.READY: "All set.",
    }.get(status, "")
