"""
Security audit trail for key and pairing events.

One JSON object per line under ``<home>/security/audit.log``. Lines
are only ever appended; a torn or hand-edited line is skipped on read
instead of failing the whole log.

Nothing secret is ever written here: device ids, session ids and key
versions only.

Usage:
    auditor = Auditor(home)
    auditor.record("KEYS_ROTATE", "v1 -> v2", device_id=device_id)
    failures = auditor.entries(event_type="SECURITY_VERIFICATION_FAILED")
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("sklink.audit")

AUDIT_LOG_NAME = "audit.log"
SECURITY_EVENT = "SECURITY_VERIFICATION_FAILED"


class AuditEntry(BaseModel):
    """One line of the audit log."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    device_id: Optional[str] = None
    metadata: Optional[dict] = None


class Auditor:
    """Audit log of one SKLink home.

    ``record`` is the best-effort sink the protocol layers call: a
    failing disk is logged and never interrupts pairing or rotation.
    ``append`` is the strict variant and raises ``OSError``.

    Args:
        home: SKLink home directory, or None to only log.
    """

    def __init__(self, home: Optional[Path] = None) -> None:
        self._home = home

    @property
    def path(self) -> Optional[Path]:
        if self._home is None:
            return None
        return self._home / "security" / AUDIT_LOG_NAME

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Write ``entry`` as one line.

        Raises:
            OSError: The log cannot be written.
            ValueError: This auditor has no home.
        """
        path = self.path
        if path is None:
            raise ValueError("Auditor has no home directory")
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        return entry

    def record(
        self,
        event_type: str,
        detail: str,
        device_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[AuditEntry]:
        """Log an event; returns the written entry, or None if nothing hit disk."""
        if event_type == SECURITY_EVENT:
            logger.warning("Security event: %s", detail)
        if self._home is None:
            logger.debug("Audit (no home): %s: %s", event_type, detail)
            return None
        entry = AuditEntry(event_type=event_type, detail=detail, device_id=device_id, metadata=metadata)
        try:
            return self.append(entry)
        except OSError as exc:
            logger.debug("Audit log unavailable: %s: %s (%s)", event_type, detail, exc)
            return None

    def entries(self, limit: int = 0, event_type: Optional[str] = None) -> list[AuditEntry]:
        """Parsed entries, oldest first.

        Args:
            limit: Keep only the newest ``limit`` entries (0 keeps all).
            event_type: Only entries of this type.
        """
        path = self.path
        if path is None or not path.exists():
            return []
        found: list[AuditEntry] = []
        with path.open(encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = AuditEntry.model_validate_json(line)
                except ValidationError:
                    logger.debug("Skipping malformed audit line %d", number)
                    continue
                if event_type is None or entry.event_type == event_type:
                    found.append(entry)
        return found[-limit:] if limit > 0 else found


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Entries of the audit log under ``home`` (see ``Auditor.entries``)."""
    return Auditor(home).entries(limit)
