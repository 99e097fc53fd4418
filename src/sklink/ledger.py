"""
Key ledger — the versioned team root key and its per-device envelopes.

The root key never crosses the wire in plaintext. Each version is
sealed once per trusted device to that device's X25519 public key;
every device opens its own envelope locally.

Version lifecycle:
    initialize   v1 (or next after a reset), sealed only to the owner
    rotate       vN+1, one envelope per trusted device, one signed commit
    install      a version received through pairing
    refresh      re-open this device's envelope when it fell behind

Commits are two-phase: the server hands out a challenge and the
expected version, the device signs
``(version, challenge, sorted envelope hashes)`` with its Ed25519 key.
The server accepts the whole set or nothing.

Usage:
    ledger = KeyLedger(api, registry, auditor)
    await ledger.initialize(owner_device)
    version = await ledger.rotate_keys()
    dek = ledger.data_encryption_key()
"""

from __future__ import annotations

import logging
from typing import Optional

from . import crypto
from .audit import Auditor
from .errors import AuthenticationFailed, InvalidKey, SyncError, SyncErrorCode
from .models import (
    Device,
    EnrollmentMode,
    KeyCommitRequest,
    KeyEnvelope,
    TrustState,
)
from .registry import DeviceRegistry
from .transport import SyncApiClient

logger = logging.getLogger("sklink.ledger")


class KeyLedger:
    """Versioned root key management for one device.

    Args:
        api: Server command client.
        registry: Source of this device's identity and keys.
        auditor: Security audit sink.
    """

    def __init__(
        self,
        api: SyncApiClient,
        registry: DeviceRegistry,
        auditor: Optional[Auditor] = None,
    ) -> None:
        self._api = api
        self._registry = registry
        self._auditor = auditor or Auditor()

    # -------------------------------------------------------------------
    # Local key material
    # -------------------------------------------------------------------

    @property
    def current_version(self) -> Optional[int]:
        """Installed root-key version, or None."""
        identity = self._registry.identity
        return identity.key_version if identity.has_root_key else None

    def root_key(self) -> bytes:
        """Installed root key.

        Raises:
            SyncError: ROOT_KEY_NOT_FOUND when nothing is installed.
        """
        identity = self._registry.identity
        if not identity.has_root_key:
            raise SyncError(SyncErrorCode.ROOT_KEY_NOT_FOUND, "No root key installed")
        return crypto.b64decode(identity.root_key or "")

    def data_encryption_key(self, version: Optional[int] = None) -> bytes:
        """Data encryption key for the installed version.

        Only the current version is held locally; asking for any other
        raises ROOT_KEY_NOT_FOUND.
        """
        current = self.current_version
        if current is None or (version is not None and version != current):
            raise SyncError(
                SyncErrorCode.ROOT_KEY_NOT_FOUND,
                f"Root key v{version if version is not None else '?'} is not installed",
            )
        return crypto.derive_data_encryption_key(self.root_key(), current)

    def install(self, root_key: bytes, version: int, source: str = "pairing") -> None:
        """Store a root key as this device's current version.

        Raises:
            SyncError: INVALID_STATE when ``version`` is older than the
                installed one.
            InvalidKey: ``root_key`` is not 32 bytes.
        """
        if len(root_key) != crypto.KEY_SIZE:
            raise InvalidKey(f"Root key must be {crypto.KEY_SIZE} bytes")
        identity = self._registry.identity
        if identity.has_root_key and version < (identity.key_version or 0):
            raise SyncError(
                SyncErrorCode.INVALID_STATE,
                f"Refusing to downgrade root key v{identity.key_version} to v{version}",
            )
        self._registry.save_identity(identity.model_copy(update={
            "root_key": crypto.b64encode(root_key),
            "key_version": version,
        }))
        logger.info("Installed root key v%d (%s)", version, source)
        self._auditor.record(
            "KEYS_INSTALL",
            f"Installed root key v{version} via {source}",
            device_id=identity.device_id,
            metadata={"key_version": version, "source": source},
        )

    def clear(self) -> None:
        """Drop the installed root key. Device keys are kept."""
        identity = self._registry.load_identity()
        if identity is None or not identity.has_root_key:
            return
        self._registry.save_identity(identity.model_copy(update={
            "root_key": None,
            "key_version": None,
        }))
        logger.info("Cleared local root key")

    # -------------------------------------------------------------------
    # Bootstrap
    # -------------------------------------------------------------------

    async def initialize(self, owner_device: Device) -> EnrollmentMode:
        """Bootstrap the team key from this device.

        Generates a root key, seals it only to ``owner_device`` and
        commits it as the current version. When the server already has
        a team key nothing is generated and the server's mode is
        returned (PAIR for an untrusted device, READY for a trusted one).

        Returns:
            EnrollmentMode.READY after a bootstrap, else the server mode.
        """
        challenge = await self._api.initialize_keys()
        if challenge.mode != EnrollmentMode.BOOTSTRAP:
            logger.info("Team key already exists (mode=%s)", challenge.mode.value)
            return challenge.mode

        root_key = crypto.generate_root_key()
        version = challenge.key_version
        envelope = self._seal(root_key, version, owner_device)
        commit = self._signed_commit(version, [envelope], challenge.challenge)
        await self._api.commit_initialize_keys(commit)

        self.install(root_key, version, source="initialize")
        self._auditor.record(
            "KEYS_INITIALIZE",
            f"Initialized team root key v{version}",
            device_id=owner_device.id,
            metadata={"key_version": version},
        )
        return EnrollmentMode.READY

    # -------------------------------------------------------------------
    # Rotation
    # -------------------------------------------------------------------

    async def rotate(
        self,
        new_version: int,
        trusted_devices: list[Device],
        challenge: str = "",
    ) -> int:
        """Generate and commit a new root key version.

        One envelope per trusted device, all in one signed commit. If
        any device lacks a registered public key the rotation stops
        before anything is sent.

        Args:
            new_version: Version the server expects next.
            trusted_devices: Devices that must receive the new key.
            challenge: Server challenge bound into the signature.

        Returns:
            The committed version.

        Raises:
            SyncError: ENVELOPE_MISSING when a device cannot be sealed to.
        """
        current = self.current_version
        if current is not None and new_version <= current:
            raise SyncError(
                SyncErrorCode.INVALID_STATE,
                f"New version v{new_version} must be greater than v{current}",
            )
        devices = [d for d in trusted_devices if d.trust_state == TrustState.TRUSTED]
        if not devices:
            raise SyncError(SyncErrorCode.INVALID_STATE, "No trusted devices to rotate for")

        root_key = crypto.generate_root_key()
        envelopes = [self._seal(root_key, new_version, device) for device in devices]
        commit = self._signed_commit(new_version, envelopes, challenge)
        result = await self._api.commit_rotate_keys(commit)

        self.install(root_key, result.key_version, source="rotation")
        self._auditor.record(
            "KEYS_ROTATE",
            f"Rotated team root key v{current} -> v{result.key_version}",
            device_id=self._registry.device_id,
            metadata={
                "old_version": current,
                "new_version": result.key_version,
                "envelopes": len(envelopes),
            },
        )
        return result.key_version

    async def rotate_keys(self) -> int:
        """Ask the server for a rotation challenge, then rotate."""
        challenge = await self._api.rotate_keys()
        return await self.rotate(
            challenge.key_version, challenge.trusted_devices, challenge.challenge,
        )

    async def refresh_from_envelope(self) -> int:
        """Install the server's current version from this device's envelope.

        Returns:
            The installed version.
        """
        device_id = self._registry.require_device_id()
        keys = self._registry.device_keys()
        envelope = await self._api.get_envelope(device_id)
        if envelope.device_id != device_id:
            raise AuthenticationFailed("Envelope addressed to another device")
        root_key = crypto.open_envelope(
            keys.encryption,
            crypto.b64decode(envelope.envelope),
            crypto.envelope_binding(device_id, envelope.key_version),
        )
        self.install(root_key, envelope.key_version, source="envelope")
        return envelope.key_version

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    @staticmethod
    def _seal(root_key: bytes, version: int, device: Device) -> KeyEnvelope:
        if not device.encryption_public_key:
            raise SyncError(
                SyncErrorCode.ENVELOPE_MISSING,
                f"Device {device.id} has no registered encryption key",
            )
        sealed = crypto.seal_envelope(
            crypto.b64decode(device.encryption_public_key),
            root_key,
            crypto.envelope_binding(device.id, version),
        )
        return KeyEnvelope(device_id=device.id, key_version=version, envelope=crypto.b64encode(sealed))

    def _signed_commit(
        self, version: int, envelopes: list[KeyEnvelope], challenge: str,
    ) -> KeyCommitRequest:
        keys = self._registry.device_keys()
        hashes = [crypto.sha256_hex(crypto.b64decode(e.envelope)) for e in envelopes]
        message = crypto.rotation_signing_message(version, hashes, challenge)
        return KeyCommitRequest(
            device_id=self._registry.require_device_id(),
            key_version=version,
            envelopes=envelopes,
            signature=crypto.b64encode(crypto.sign(keys.signing_secret_key, message)),
        )
