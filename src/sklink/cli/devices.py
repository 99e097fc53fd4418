"""Device commands: list, rename, revoke."""

from __future__ import annotations

import json

import click
from rich.table import Table

from ..models import Device, TrustState
from ..service import DeviceSyncService
from ._common import console, home_option, run_with_service

_TRUST_STYLE = {
    TrustState.TRUSTED: "[green]trusted[/]",
    TrustState.UNTRUSTED: "[yellow]untrusted[/]",
    TrustState.REVOKED: "[red]revoked[/]",
}


def register_devices_commands(main: click.Group) -> None:
    """Register the devices command group."""

    @main.group()
    def devices():
        """Devices in your sync group."""

    @devices.command("list")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def devices_list(home, json_out):
        """List every device and its trust state."""

        async def _list(service: DeviceSyncService) -> list[Device]:
            return await service.list_devices()

        items = run_with_service(home, _list)
        if json_out:
            click.echo(json.dumps([d.to_wire() for d in items], indent=2))
            return
        if not items:
            console.print("\n  [dim]No devices registered.[/]\n")
            return

        table = Table(title="Devices", show_lines=False)
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Platform")
        table.add_column("Trust")
        table.add_column("Key")
        table.add_column("Last seen", style="dim")
        for d in items:
            name = f"{d.name} [bold](this device)[/]" if d.is_current else d.name
            table.add_row(
                d.id,
                name,
                d.platform.value,
                _TRUST_STYLE.get(d.trust_state, d.trust_state.value),
                f"v{d.trusted_key_version}" if d.trusted_key_version else "-",
                d.last_seen_at.strftime("%Y-%m-%d %H:%M") if d.last_seen_at else "never",
            )
        console.print()
        console.print(table)
        console.print()

    @devices.command("rename")
    @home_option
    @click.argument("device_id")
    @click.argument("name")
    def devices_rename(home, device_id, name):
        """Rename a device."""

        async def _rename(service: DeviceSyncService) -> Device:
            return await service.rename_device(device_id, name)

        device = run_with_service(home, _rename)
        console.print(f"\n  Renamed [dim]{device.id}[/] to [cyan]{device.name}[/]\n")

    @devices.command("revoke")
    @home_option
    @click.argument("device_id")
    @click.confirmation_option(prompt="The device will lose access to all new data. Continue?")
    def devices_revoke(home, device_id):
        """Revoke a device and rotate the team key."""

        async def _revoke(service: DeviceSyncService) -> Device:
            return await service.revoke_device(device_id)

        device = run_with_service(home, _revoke)
        console.print(f"\n  [red]Revoked[/] [cyan]{device.name}[/] ({device.id})")
        console.print("  [dim]Key rotated; the device cannot read anything new.[/]\n")
