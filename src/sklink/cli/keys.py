"""Team key commands: rotate, refresh."""

from __future__ import annotations

import click

from ..service import DeviceSyncService
from ..state import SyncSnapshot
from ._common import console, home_option, run_with_service


def register_keys_commands(main: click.Group) -> None:
    """Register the keys command group."""

    @main.group()
    def keys():
        """Team root key management."""

    @keys.command("rotate")
    @home_option
    def keys_rotate(home):
        """Issue a new root key version to every trusted device."""

        async def _rotate(service: DeviceSyncService) -> int:
            await service.detect()
            return await service.rotate_keys()

        version = run_with_service(home, _rotate)
        console.print(f"\n  [green]Rotated.[/] Team key is now [bold]v{version}[/]\n")

    @keys.command("refresh")
    @home_option
    @click.option("--recover", is_flag=True, help="Start over as a new device if local keys are lost.")
    def keys_refresh(home, recover):
        """Install the latest key version from this device's envelope."""

        async def _refresh(service: DeviceSyncService) -> SyncSnapshot:
            if recover:
                return await service.handle_recovery()
            return await service.refresh_keys()

        snapshot = run_with_service(home, _refresh)
        console.print(
            f"\n  Status: [bold]{snapshot.status.value}[/]"
            f"  key v{snapshot.local_key_version or '-'}\n"
        )
