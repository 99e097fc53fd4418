"""Configuration commands: show, set-url."""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from ..config import config_path, load_config, save_config
from ._common import console, home_option


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group("config")
    def config_group():
        """View or change SKLink settings."""

    @config_group.command("show")
    @home_option
    def config_show(home):
        """Print the effective configuration."""
        home_path = Path(home).expanduser()
        config = load_config(home_path)
        console.print(f"\n  [dim]{config_path(home_path)}[/]\n")
        click.echo(yaml.dump(config.model_dump(mode="json"), default_flow_style=False))

    @config_group.command("set-url")
    @home_option
    @click.argument("url")
    def config_set_url(home, url):
        """Point this device at a sync server."""
        if not url.startswith(("http://", "https://")):
            raise click.BadParameter("URL must start with http:// or https://", param_hint="URL")
        home_path = Path(home).expanduser()
        config = load_config(home_path)
        config.api_base_url = url.rstrip("/")
        path = save_config(home_path, config)
        console.print(f"\n  Server set to [cyan]{config.api_base_url}[/] ([dim]{path}[/])\n")
