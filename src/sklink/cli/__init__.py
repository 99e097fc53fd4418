"""
SKLink CLI — pair devices and manage the team key from a terminal.

Each command group lives in its own module and is registered on the
main Click group here.

Entry point: sklink.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sklink")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def main(verbose):
    """SKLink — sovereign device pairing.

    Add devices to your encrypted sync group. The server never sees a key.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .status import register_status_commands
from .devices import register_devices_commands
from .keys import register_keys_commands
from .pair import register_pair_commands
from .config_cmd import register_config_commands

register_status_commands(main)
register_devices_commands(main)
register_keys_commands(main)
register_pair_commands(main)
register_config_commands(main)
