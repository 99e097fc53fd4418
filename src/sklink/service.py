"""
Device sync service -- the lifecycle manager and the UI surface.

Owns the state store and composes registry, ledger and pairing
coordinator. Every public method either returns a result or raises
``SyncError``; nothing else reaches the caller.

    sklink enable      ->  register -> bootstrap or wait for pairing
    sklink pair issue  ->  start -> wait for claim -> SAS -> approve -> complete
    sklink pair claim  ->  claim -> SAS -> wait for bundle -> confirm
    sklink status      ->  detect (FRESH / REGISTERED / READY / STALE / RECOVERY)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from .audit import Auditor
from .config import SyncConfig, load_config, resolve_home
from .errors import SyncError, SyncErrorCode, normalize_error
from .ledger import KeyLedger
from .models import (
    ClaimerSession,
    ConfirmPairingResult,
    Device,
    KeyBundlePayload,
    PairingSession,
    TrustState,
    utcnow,
)
from .pairing import PairingCoordinator
from .registry import DeviceRegistry
from .secret_store import ACCESS_TOKEN_KEY, FileSecretStore, SecretStore
from .state import (
    ClearError,
    DetectFailed,
    DetectStarted,
    DetectSucceeded,
    OperationFinished,
    OperationStarted,
    Reset,
    StateStore,
    SyncSnapshot,
    SyncStatus,
    detect_status,
)
from .transport import HttpTransport, SyncApiClient, Transport

logger = logging.getLogger("sklink.service")

TransportFactory = Callable[[SyncConfig, SecretStore], Transport]


def http_transport(config: SyncConfig, secret_store: SecretStore) -> Transport:
    """Default transport: REST against ``config.api_base_url``."""
    return HttpTransport(
        config.api_base_url,
        secret_store,
        timeout=config.request_timeout_seconds,
    )


class DeviceSyncService:
    """Device sync for one device.

    Args:
        transport: How requests reach the server.
        secret_store: Device keys, root key, access token.
        config: Sync configuration (defaults if omitted).
        home: SKLink home for the audit log (None: log only).
        clock: Current UTC time, for pairing TTL checks.
    """

    def __init__(
        self,
        transport: Transport,
        secret_store: SecretStore,
        config: Optional[SyncConfig] = None,
        home: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or SyncConfig()
        self.secret_store = secret_store
        self.auditor = Auditor(home)
        self.store = StateStore()
        self.api = SyncApiClient(transport)
        self.registry = DeviceRegistry(self.api, secret_store, self.auditor)
        self.ledger = KeyLedger(self.api, self.registry, self.auditor)
        self.pairing = PairingCoordinator(
            self.api,
            self.registry,
            self.ledger,
            self.store,
            auditor=self.auditor,
            poll_interval=self.config.poll_interval_seconds,
            clock=clock,
        )

    @classmethod
    def from_home(
        cls,
        home: Optional[Path] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> "DeviceSyncService":
        """Build a service from ``<home>``: config, file secret store, HTTP.

        Args:
            home: SKLink home directory.
            transport_factory: Builds the transport from config and
                secret store. Defaults to ``http_transport``.
        """
        home = resolve_home(home)
        config = load_config(home)
        secret_store = FileSecretStore(home)
        transport = (transport_factory or http_transport)(config, secret_store)
        return cls(transport, secret_store, config=config, home=home)

    async def aclose(self) -> None:
        await self.api.transport.aclose()

    def sign_in(self, access_token: str) -> None:
        """Store the access token used for every request."""
        self.secret_store.set_secret(ACCESS_TOKEN_KEY, access_token)

    def sign_out(self) -> None:
        self.secret_store.delete_secret(ACCESS_TOKEN_KEY)

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    def snapshot(self) -> SyncSnapshot:
        """Read-only view of the current state."""
        return self.store.snapshot()

    @property
    def status(self) -> SyncStatus:
        return self.store.state.status

    def clear_error(self) -> None:
        self.store.dispatch(ClearError())

    async def detect(self) -> SyncSnapshot:
        """Recompute the sync status from local identity and the server.

        Runs independently of any pairing in progress. A missing or
        rejected access token resets the status to FRESH and is
        reported in the snapshot, not raised.
        """
        self.store.dispatch(DetectStarted())
        try:
            identity = self.registry.load_identity()
            device: Optional[Device] = None
            server_version: Optional[int] = None
            trusted_count = 0
            if identity is not None and identity.device_id:
                device = await self.registry.get_current()
                key_status = await self.api.get_key_status()
                server_version = key_status.key_version
                trusted_count = key_status.trusted_device_count
            status = detect_status(identity, device, server_version, trusted_count)
        except Exception as exc:
            error = self._error(exc)
            self.store.dispatch(DetectFailed(error))
            if error.code == SyncErrorCode.NO_ACCESS_TOKEN:
                logger.info("Not signed in; sync state reset")
                return self.snapshot()
            raise error from exc

        if device is not None and device.trust_state == TrustState.REVOKED:
            self.ledger.clear()
        self.store.dispatch(DetectSucceeded(
            status=status,
            device_id=identity.device_id if identity else None,
            trust_state=device.trust_state if device else None,
            local_key_version=self.ledger.current_version,
            server_key_version=server_version,
            detected_at=utcnow(),
        ))
        logger.debug("Detected sync status %s", status.value)
        return self.snapshot()

    # -------------------------------------------------------------------
    # Enablement
    # -------------------------------------------------------------------

    async def enable_sync(self) -> SyncSnapshot:
        """Register this device and bootstrap the team key if none exists.

        Ends READY on the first device, REGISTERED (waiting for pairing)
        on any later one.
        """
        async with self._operation("enable_sync"):
            device = await self.registry.get_current()
            if device is None:
                result = await self.registry.register(
                    self.config.device_name, self.config.platform, self.config.app_version,
                )
                self.auditor.record(
                    "SYNC_ENABLE",
                    f"Registered device '{self.config.device_name}'",
                    device_id=result.device_id,
                    metadata={"mode": result.mode.value},
                )
                device = await self.registry.get_current()
            if device is None:
                raise SyncError(SyncErrorCode.DEVICE_NOT_FOUND, "Registration did not persist")
            if device.trust_state != TrustState.TRUSTED:
                await self.ledger.initialize(device)
        return await self.detect()

    async def reset_sync(self) -> SyncSnapshot:
        """Wipe the team key server-side; every device must enroll again."""
        async with self._operation("reset_sync"):
            await self.pairing.cancel_pairing()
            await self.api.reset_team()
            self.ledger.clear()
            self.auditor.record(
                "SYNC_RESET", "Reset sync for all devices", device_id=self.registry.device_id,
            )
        return await self.detect()

    async def reinitialize_sync(self) -> SyncSnapshot:
        """Recover from ORPHANED: reset the team key, then bootstrap again."""
        await self.reset_sync()
        return await self.enable_sync()

    async def clear_sync_data(self) -> SyncSnapshot:
        """Forget this device locally. Nothing is sent to the server."""
        await self.pairing.cancel_pairing()
        self.registry.forget()
        self.store.dispatch(Reset())
        return self.snapshot()

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------

    async def rotate_keys(self) -> int:
        """Issue a new root key version to every trusted device."""
        async with self._operation("rotate_keys"):
            version = await self.ledger.rotate_keys()
        await self.detect()
        return version

    async def refresh_keys(self) -> SyncSnapshot:
        """Catch up from STALE by opening this device's envelope."""
        async with self._operation("refresh_keys"):
            await self.ledger.refresh_from_envelope()
        return await self.detect()

    async def handle_recovery(self) -> SyncSnapshot:
        """Get out of RECOVERY.

        With device keys intact the current envelope is reopened.
        Without them the device starts over as a new, untrusted device
        that has to pair again.
        """
        async with self._operation("handle_recovery"):
            identity = self.registry.identity
            recovered = False
            if identity.has_device_keys:
                try:
                    await self.ledger.refresh_from_envelope()
                    recovered = True
                except Exception as exc:
                    logger.warning("Envelope recovery failed: %s", normalize_error(exc).code.value)
            if not recovered:
                self.ledger.clear()
                self.registry.forget()
        if not recovered:
            return await self.enable_sync()
        return await self.detect()

    # -------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------

    async def list_devices(self) -> list[Device]:
        async with self._operation("list_devices"):
            return await self.registry.list()

    async def rename_device(self, device_id: str, name: str) -> Device:
        async with self._operation("rename_device"):
            return await self.registry.rename(device_id, name)

    async def revoke_device(self, device_id: str) -> Device:
        """Revoke a device, then rotate so it cannot read new data."""
        async with self._operation("revoke_device"):
            device = await self.registry.revoke(device_id)
            if self.config.rotate_on_revoke and device_id != self.registry.device_id:
                snapshot = await self.detect()
                if snapshot.status == SyncStatus.READY:
                    await self.ledger.rotate_keys()
                else:
                    logger.warning("Not rotating after revoke: device is %s", snapshot.status.value)
        await self.detect()
        return device

    # -------------------------------------------------------------------
    # Pairing (the coordinator already returns SyncError)
    # -------------------------------------------------------------------

    async def start_pairing(self) -> PairingSession:
        return await self.pairing.start_pairing()

    async def poll_for_claimer_connection(self) -> Optional[PairingSession]:
        return await self.pairing.poll_for_claimer_connection()

    async def wait_for_claimer(self) -> PairingSession:
        return await self.pairing.wait_for_claimer()

    async def approve_pairing(self) -> None:
        await self.pairing.approve_pairing()

    async def complete_pairing(self) -> None:
        await self.pairing.complete_pairing()

    async def reject_pairing(self) -> None:
        await self.pairing.reject_pairing()

    async def claim_pairing(self, code: str) -> ClaimerSession:
        return await self.pairing.claim_pairing(code)

    def acknowledge_sas(self) -> None:
        self.pairing.acknowledge_sas()

    async def poll_for_key_bundle(self) -> Optional[KeyBundlePayload]:
        return await self.pairing.poll_for_key_bundle()

    async def wait_for_key_bundle(self) -> KeyBundlePayload:
        return await self.pairing.wait_for_key_bundle()

    async def confirm_pairing_as_claimer(self, bundle: KeyBundlePayload) -> ConfirmPairingResult:
        result = await self.pairing.confirm_pairing_as_claimer(bundle)
        await self.detect()
        return result

    async def cancel_pairing(self) -> None:
        await self.pairing.cancel_pairing()

    def compute_sas(self) -> str:
        return self.pairing.compute_sas()

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _error(self, exc: BaseException) -> SyncError:
        error = normalize_error(exc)
        if error.is_security_event and not isinstance(exc, SyncError):
            self.auditor.record(
                "SECURITY_VERIFICATION_FAILED",
                error.message,
                device_id=self.registry.device_id,
            )
        return error

    @asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        self.store.dispatch(OperationStarted(name))
        try:
            yield
        except Exception as exc:
            error = self._error(exc)
            self.store.dispatch(OperationFinished(name, error))
            if error.code == SyncErrorCode.NO_ACCESS_TOKEN:
                self.store.dispatch(DetectFailed(error))
            if error is exc:
                raise
            raise error from exc
        self.store.dispatch(OperationFinished(name))
