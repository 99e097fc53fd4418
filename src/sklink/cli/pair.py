"""Pairing commands: issue a code on a trusted device, claim it on a new one."""

from __future__ import annotations

import click
from rich.panel import Panel

from ..models import ConfirmPairingResult
from ..service import DeviceSyncService
from ._common import console, home_option, run_with_service


def _show_sas(sas: str) -> None:
    console.print(
        Panel(
            f"[bold]{sas[:3]} {sas[3:]}[/]",
            title="Security code",
            subtitle="must match the other device",
            border_style="yellow",
        )
    )


def register_pair_commands(main: click.Group) -> None:
    """Register the pair command group."""

    @main.group()
    def pair():
        """Add a device to your sync group."""

    @pair.command("issue")
    @home_option
    def pair_issue(home):
        """Show a pairing code on this (trusted) device."""

        async def _issue(service: DeviceSyncService) -> None:
            await service.detect()
            session = await service.start_pairing()
            console.print()
            console.print(
                Panel(
                    f"[bold cyan]{session.code}[/]",
                    title="Pairing code",
                    subtitle=f"expires {session.expires_at:%H:%M:%S} UTC",
                    border_style="cyan",
                )
            )
            console.print("  Enter this code on the new device: [cyan]sklink pair claim CODE[/]")
            console.print("  [dim]Waiting for the other device...[/]")

            session = await service.wait_for_claimer()
            if session.require_sas:
                _show_sas(service.compute_sas())
                if not click.confirm("  Do both devices show the same code?", default=False):
                    await service.reject_pairing()
                await service.approve_pairing()
            await service.complete_pairing()

        run_with_service(home, _issue)
        console.print("\n  [bold green]Key sent.[/] The new device is joining the group.\n")

    @pair.command("claim")
    @home_option
    @click.argument("code")
    def pair_claim(home, code):
        """Join the sync group with a code from a trusted device."""

        async def _claim(service: DeviceSyncService) -> ConfirmPairingResult:
            session = await service.claim_pairing(code)
            if session.require_sas:
                _show_sas(service.compute_sas())
                if not click.confirm("  Do both devices show the same code?", default=False):
                    await service.reject_pairing()
                service.acknowledge_sas()
            console.print("  [dim]Waiting for the key...[/]")
            bundle = await service.wait_for_key_bundle()
            return await service.confirm_pairing_as_claimer(bundle)

        result = run_with_service(home, _claim)
        console.print(
            f"\n  [bold green]Paired.[/] This device is trusted at key v{result.key_version}.\n"
        )
