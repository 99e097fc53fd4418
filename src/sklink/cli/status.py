"""Lifecycle commands: login, status, enable, reset."""

from __future__ import annotations

from pathlib import Path

import click
from rich.panel import Panel

from ..secret_store import ACCESS_TOKEN_KEY, FileSecretStore
from ..service import DeviceSyncService
from ..state import SyncSnapshot, SyncStatus
from ._common import console, home_option, next_step_hint, run_with_service, status_icon


def print_snapshot(snapshot: SyncSnapshot) -> None:
    """Render the sync status panel."""
    local = f"v{snapshot.local_key_version}" if snapshot.local_key_version else "[dim]none[/]"
    server = f"v{snapshot.server_key_version}" if snapshot.server_key_version else "[dim]none[/]"
    lines = [
        f"Status: {status_icon(snapshot.status)}",
        f"Device: [cyan]{snapshot.device_id or 'not registered'}[/]",
        f"Trust: {snapshot.trust_state.value if snapshot.trust_state else '[dim]n/a[/]'}",
        f"Key version: {local} (server {server})",
    ]
    if snapshot.error_code:
        lines.append(f"Last error: [red]{snapshot.error_code.value}[/] {snapshot.error_message}")
    console.print()
    console.print(Panel("\n".join(lines), title="SKLink Sync", border_style="cyan"))
    console.print(f"  {next_step_hint(snapshot.status)}\n")


def register_status_commands(main: click.Group) -> None:
    """Register login, status, enable, and reset."""

    @main.command()
    @home_option
    @click.option("--token", required=True, help="Access token from your account.")
    def login(home, token):
        """Store the access token this device uses."""
        home_path = Path(home).expanduser()
        FileSecretStore(home_path).set_secret(ACCESS_TOKEN_KEY, token)
        console.print("\n  [green]Signed in.[/] Token stored in the local secret store.\n")

    @main.command()
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(home, json_out):
        """Show this device's sync status."""

        async def _detect(service: DeviceSyncService) -> SyncSnapshot:
            return await service.detect()

        snapshot = run_with_service(home, _detect)
        if json_out:
            click.echo(snapshot.model_dump_json(indent=2))
            return
        print_snapshot(snapshot)

    @main.command()
    @home_option
    def enable(home):
        """Register this device and set up sync.

        The first device creates the team key. Later devices register
        and then pair with a trusted one.
        """

        async def _enable(service: DeviceSyncService) -> SyncSnapshot:
            return await service.enable_sync()

        snapshot = run_with_service(home, _enable)
        if snapshot.status == SyncStatus.READY:
            console.print("\n  [bold green]Sync enabled.[/] This device holds the team key.")
        print_snapshot(snapshot)

    @main.command()
    @home_option
    @click.option("--reinitialize", is_flag=True, help="Create a new team key right away.")
    @click.option("--local-only", is_flag=True, help="Forget this device locally; leave the server alone.")
    @click.confirmation_option(prompt="Every device will have to enroll again. Continue?")
    def reset(home, reinitialize, local_only):
        """Reset sync for all devices."""

        async def _reset(service: DeviceSyncService) -> SyncSnapshot:
            if local_only:
                return await service.clear_sync_data()
            if reinitialize:
                return await service.reinitialize_sync()
            return await service.reset_sync()

        snapshot = run_with_service(home, _reset)
        console.print("\n  [yellow]Sync reset.[/]")
        print_snapshot(snapshot)
