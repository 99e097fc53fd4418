"""
Device registry — who this device is, and which devices share the key.

The local half (device id, long-term X25519 + Ed25519 keys) lives in
the secret store as one ``SyncIdentity`` document. The server half
(name, platform, trust state) is reached through ``SyncApiClient``.

Trust rules:
    - new devices register ``untrusted``; only the bootstrap device
      becomes trusted without pairing (see KeyLedger.initialize)
    - a revoked device is left out of the next rotation and regains
      trust only by pairing again
    - the last trusted device cannot be revoked
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from . import crypto
from .audit import Auditor
from .errors import ApiError, SyncError, SyncErrorCode
from .models import Device, DevicePlatform, RegisterResult, SyncIdentity, TrustState
from .secret_store import SYNC_IDENTITY_KEY, SecretStore
from .transport import SyncApiClient

logger = logging.getLogger("sklink.registry")


class DeviceRegistry:
    """Device identity, registration, and trust tracking.

    Args:
        api: Server command client.
        secret_store: Holds the ``SyncIdentity``.
        auditor: Security audit sink.
    """

    def __init__(
        self,
        api: SyncApiClient,
        secret_store: SecretStore,
        auditor: Optional[Auditor] = None,
    ) -> None:
        self._api = api
        self._secrets = secret_store
        self._auditor = auditor or Auditor()
        identity = self.load_identity()
        if identity is not None and identity.device_id:
            self._api.device_id = identity.device_id

    # -------------------------------------------------------------------
    # Local identity
    # -------------------------------------------------------------------

    def load_identity(self) -> Optional[SyncIdentity]:
        """Read the identity from the secret store.

        Returns:
            The stored identity, or None when absent or unreadable.
        """
        raw = self._secrets.get_secret(SYNC_IDENTITY_KEY)
        if not raw:
            return None
        try:
            return SyncIdentity.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Stored sync identity is corrupt: %d errors", exc.error_count())
            return None

    def save_identity(self, identity: SyncIdentity) -> None:
        self._secrets.set_secret(SYNC_IDENTITY_KEY, identity.model_dump_json())
        self._api.device_id = identity.device_id

    @property
    def identity(self) -> SyncIdentity:
        """Stored identity, or an empty one."""
        return self.load_identity() or SyncIdentity()

    @property
    def device_id(self) -> Optional[str]:
        return self.identity.device_id

    def require_device_id(self) -> str:
        device_id = self.device_id
        if not device_id:
            raise SyncError(SyncErrorCode.NO_DEVICE, "This device is not registered")
        return device_id

    def device_keys(self) -> crypto.DeviceKeys:
        """Long-term keys of this device.

        Raises:
            SyncError: NO_DEVICE when no keys are stored.
            InvalidKey: Stored keys are not valid base64.
        """
        identity = self.identity
        if not identity.has_device_keys:
            raise SyncError(SyncErrorCode.NO_DEVICE, "No device keys stored")
        return crypto.DeviceKeys(
            encryption=crypto.KeyPair(
                public_key=crypto.b64decode(identity.encryption_public_key or ""),
                secret_key=crypto.b64decode(identity.encryption_secret_key or ""),
            ),
            signing_public_key=crypto.b64decode(identity.signing_public_key or ""),
            signing_secret_key=crypto.b64decode(identity.signing_secret_key or ""),
        )

    def forget(self) -> None:
        """Delete the local identity, keys included."""
        self._secrets.delete_secret(SYNC_IDENTITY_KEY)
        self._api.device_id = None
        logger.info("Local sync identity removed")

    # -------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------

    async def register(
        self,
        name: str,
        platform: DevicePlatform = DevicePlatform.UNKNOWN,
        app_version: Optional[str] = None,
    ) -> RegisterResult:
        """Register this device with the sync server.

        Reuses stored device keys when present, otherwise generates a
        fresh identity. Only public keys leave the device.

        Returns:
            RegisterResult with the server-assigned id and the
            enrollment mode (BOOTSTRAP when no team key exists yet).
        """
        identity = self.identity
        if identity.has_device_keys:
            keys = self.device_keys()
        else:
            keys = crypto.DeviceKeys.generate()

        self._api.device_id = None
        result = await self._api.register_device(
            name=name,
            platform=platform,
            app_version=app_version,
            encryption_public_key=crypto.b64encode(keys.encryption.public_key),
            signing_public_key=crypto.b64encode(keys.signing_public_key),
        )

        self.save_identity(SyncIdentity(
            device_id=result.device_id,
            device_name=name,
            encryption_secret_key=crypto.b64encode(keys.encryption.secret_key),
            encryption_public_key=crypto.b64encode(keys.encryption.public_key),
            signing_secret_key=crypto.b64encode(keys.signing_secret_key),
            signing_public_key=crypto.b64encode(keys.signing_public_key),
        ))
        logger.info("Registered device %s (mode=%s)", result.device_id, result.mode.value)
        return result

    async def list(self) -> list[Device]:
        """All devices of the signed-in user, this one flagged ``is_current``."""
        current = self.device_id
        devices = await self._api.list_devices()
        return [d.model_copy(update={"is_current": d.id == current}) for d in devices]

    async def get_current(self) -> Optional[Device]:
        """Server record of this device, or None if it is unknown there."""
        device_id = self.device_id
        if not device_id:
            return None
        try:
            device = await self._api.get_device(device_id)
        except ApiError as exc:
            if exc.code == SyncErrorCode.DEVICE_NOT_FOUND.value:
                logger.warning("Device %s no longer exists on the server", device_id)
                return None
            raise
        return device.model_copy(update={"is_current": True})

    async def trusted_devices(self) -> list[Device]:
        return [d for d in await self.list() if d.trust_state == TrustState.TRUSTED]

    async def rename(self, device_id: str, name: str) -> Device:
        name = name.strip()
        if not name:
            raise SyncError(SyncErrorCode.INVALID_STATE, "Device name cannot be empty")
        device = await self._api.rename_device(device_id, name)
        if device_id == self.device_id:
            self.save_identity(self.identity.model_copy(update={"device_name": name}))
        return device

    async def revoke(self, device_id: str) -> Device:
        """Revoke a device's trust.

        Raises:
            ApiError: LAST_TRUSTED_DEVICE when it is the only trusted device.
        """
        device = await self._api.revoke_device(device_id)
        self._auditor.record(
            "DEVICE_REVOKE",
            f"Revoked device '{device.name}'",
            device_id=self.device_id,
            metadata={"revoked_device_id": device_id},
        )
        return device
