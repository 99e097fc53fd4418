"""
Local secret store — where the device keeps its long-term keys.

Scoped read/write of named secrets. Nothing here talks to the
network. The file store keeps one JSON document under
``<home>/secrets/secrets.json`` with owner-only permissions.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger("sklink.secret_store")

SYNC_IDENTITY_KEY = "sync_identity"
ACCESS_TOKEN_KEY = "sync_access_token"


class SecretStore(ABC):
    """Abstract key/value store for device secrets."""

    @abstractmethod
    def get_secret(self, name: str) -> Optional[str]:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def set_secret(self, name: str, value: str) -> None:
        """Store ``value`` under ``name``, replacing any previous value."""

    @abstractmethod
    def delete_secret(self, name: str) -> None:
        """Remove ``name``. Missing names are ignored."""


class MemorySecretStore(SecretStore):
    """Process-local store. Used by tests and ephemeral sessions."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get_secret(self, name: str) -> Optional[str]:
        return self._data.get(name)

    def set_secret(self, name: str, value: str) -> None:
        self._data[name] = value

    def delete_secret(self, name: str) -> None:
        self._data.pop(name, None)


class FileSecretStore(SecretStore):
    """JSON-file store with 0600 permissions.

    Args:
        home: SKLink home directory (~/.sklink).
    """

    def __init__(self, home: Path) -> None:
        self._dir = home / "secrets"
        self._file = self._dir / "secrets.json"

    def get_secret(self, name: str) -> Optional[str]:
        return self._load().get(name)

    def set_secret(self, name: str, value: str) -> None:
        data = self._load()
        data[name] = value
        self._save(data)

    def delete_secret(self, name: str) -> None:
        data = self._load()
        if data.pop(name, None) is not None:
            self._save(data)

    def _load(self) -> dict[str, str]:
        if not self._file.exists():
            return {}
        try:
            data = json.loads(self._file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to load secret store: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._dir, 0o700)
        tmp = self._file.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self._file)
