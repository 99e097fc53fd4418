"""
SKLink configuration — ``<home>/config/config.yaml``.

Defaults are usable out of the box; the file only needs the values
you change. ``SKLINK_API_URL`` in the environment overrides the
configured server URL.
"""

from __future__ import annotations

import logging
import os
import platform
import socket
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import SKLINK_HOME, __version__
from .models import DevicePlatform

logger = logging.getLogger("sklink.config")

DEFAULT_API_URL = "https://sync.sklink.local/api/v1"

_PLATFORMS = {
    "darwin": DevicePlatform.MACOS,
    "windows": DevicePlatform.WINDOWS,
    "linux": DevicePlatform.LINUX,
    "ios": DevicePlatform.IOS,
    "android": DevicePlatform.ANDROID,
}


def detect_platform() -> DevicePlatform:
    """Map the running OS onto a DevicePlatform."""
    return _PLATFORMS.get(platform.system().lower(), DevicePlatform.UNKNOWN)


def _default_device_name() -> str:
    return f"{socket.gethostname()} ({detect_platform().value})"


class SyncConfig(BaseModel):
    """Device sync configuration."""

    api_base_url: str = DEFAULT_API_URL
    device_name: str = Field(default_factory=_default_device_name)
    platform: DevicePlatform = Field(default_factory=detect_platform)
    app_version: str = __version__
    poll_interval_seconds: float = Field(default=2.0, gt=0)
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    rotate_on_revoke: bool = True


def resolve_home(home: Optional[Path | str] = None) -> Path:
    """Expand the home directory, defaulting to SKLINK_HOME."""
    return Path(home or SKLINK_HOME).expanduser()


def config_path(home: Path) -> Path:
    return home / "config" / "config.yaml"


def load_config(home: Path) -> SyncConfig:
    """Load configuration, falling back to defaults on any problem.

    Args:
        home: SKLink home directory.

    Returns:
        SyncConfig with environment overrides applied.
    """
    config = SyncConfig()
    path = config_path(home)
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            config = SyncConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load config %s: %s", path, exc)

    env_url = os.environ.get("SKLINK_API_URL")
    if env_url:
        config.api_base_url = env_url
    return config


def save_config(home: Path, config: SyncConfig) -> Path:
    """Persist configuration as yaml.

    Returns:
        Path of the written file.
    """
    path = config_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    path.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    logger.info("Saved config to %s", path)
    return path
