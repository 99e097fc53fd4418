"""Tests for sklink.service — the device sync lifecycle."""

from __future__ import annotations

import pytest

from sklink import crypto
from sklink.audit import read_audit_log
from sklink.errors import AuthenticationFailed, SyncError, SyncErrorCode
from sklink.models import TrustState
from sklink.state import PairingStep, SyncStatus


@pytest.fixture
def issuer(make_device):
    return make_device("laptop")


# ---------------------------------------------------------------------------
# Enablement and detection
# ---------------------------------------------------------------------------


class TestEnable:
    """First device bootstraps; later devices wait for pairing."""

    @pytest.mark.asyncio
    async def test_first_device_is_ready(self, issuer, relay, tmp_path) -> None:
        snapshot = await issuer.enable_sync()

        assert snapshot.status == SyncStatus.READY
        assert snapshot.local_key_version == 1
        assert snapshot.server_key_version == 1
        assert snapshot.trust_state == TrustState.TRUSTED
        assert relay.team_key_version("user-1") == 1
        assert list(relay.envelopes_for("user-1", 1)) == [snapshot.device_id]
        events = [e.event_type for e in read_audit_log(tmp_path / "laptop")]
        assert "SYNC_ENABLE" in events
        assert "KEYS_INITIALIZE" in events

    @pytest.mark.asyncio
    async def test_second_device_is_registered(self, issuer, make_device, relay) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        snapshot = await phone.enable_sync()

        assert snapshot.status == SyncStatus.REGISTERED
        assert snapshot.local_key_version is None
        assert relay.team_key_version("user-1") == 1

    @pytest.mark.asyncio
    async def test_enable_is_idempotent(self, issuer, relay) -> None:
        first = await issuer.enable_sync()
        second = await issuer.enable_sync()
        assert first.device_id == second.device_id
        assert second.status == SyncStatus.READY
        assert relay.team_key_version("user-1") == 1

    @pytest.mark.asyncio
    async def test_unregistered_detect_is_fresh(self, issuer) -> None:
        snapshot = await issuer.detect()
        assert snapshot.status == SyncStatus.FRESH
        assert snapshot.error_code is None

    @pytest.mark.asyncio
    async def test_signed_out_detect_is_fresh(self, issuer) -> None:
        """A missing token resets status and is reported, not raised."""
        await issuer.enable_sync()
        issuer.sign_out()

        snapshot = await issuer.detect()

        assert snapshot.status == SyncStatus.FRESH
        assert snapshot.error_code == SyncErrorCode.NO_ACCESS_TOKEN

    @pytest.mark.asyncio
    async def test_signed_out_keeps_pairing(self, issuer) -> None:
        await issuer.enable_sync()
        await issuer.start_pairing()
        issuer.sign_out()

        snapshot = await issuer.detect()

        assert snapshot.status == SyncStatus.FRESH
        assert snapshot.pairing_step == PairingStep.WAITING_CLAIM

    @pytest.mark.asyncio
    async def test_revoked_token(self, issuer, relay, user_token) -> None:
        await issuer.enable_sync()
        relay.revoke_token(user_token)
        snapshot = await issuer.detect()
        assert snapshot.status == SyncStatus.FRESH
        assert snapshot.error_code == SyncErrorCode.NO_ACCESS_TOKEN

    @pytest.mark.asyncio
    async def test_enable_without_token_raises(self, issuer) -> None:
        issuer.sign_out()
        with pytest.raises(SyncError) as excinfo:
            await issuer.enable_sync()
        assert excinfo.value.code == SyncErrorCode.NO_ACCESS_TOKEN
        assert issuer.snapshot().error_code == SyncErrorCode.NO_ACCESS_TOKEN
        assert issuer.snapshot().operation is None

    @pytest.mark.asyncio
    async def test_operation_without_token_resets(self, issuer) -> None:
        await issuer.enable_sync()
        issuer.sign_out()
        with pytest.raises(SyncError) as excinfo:
            await issuer.rotate_keys()
        assert excinfo.value.code == SyncErrorCode.NO_ACCESS_TOKEN
        assert issuer.snapshot().status == SyncStatus.FRESH

    @pytest.mark.asyncio
    async def test_listener_sees_operation(self, issuer) -> None:
        operations: list = []
        issuer.store.subscribe(lambda state: operations.append(state.operation))
        await issuer.enable_sync()
        assert "enable_sync" in operations
        assert operations[-1] is None


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class TestKeys:
    """Rotation, staleness, and recovery."""

    @pytest.mark.asyncio
    async def test_rotation_wraps_every_trusted_device(
        self, issuer, make_device, pair_devices, relay,
    ) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        tablet = make_device("tablet")
        for device in (phone, tablet):
            await device.enable_sync()
            await pair_devices(issuer, device)

        version = await issuer.rotate_keys()

        assert version == 2
        envelopes = relay.envelopes_for("user-1", 2)
        assert set(envelopes) == {
            issuer.registry.device_id, phone.registry.device_id, tablet.registry.device_id,
        }
        phone_keys = phone.registry.device_keys()
        root = crypto.open_envelope(
            phone_keys.encryption,
            crypto.b64decode(envelopes[phone.registry.device_id]),
            crypto.envelope_binding(phone.registry.device_id, 2),
        )
        assert root == issuer.ledger.root_key()
        with pytest.raises(AuthenticationFailed):
            crypto.open_envelope(
                phone_keys.encryption, crypto.b64decode(envelopes[tablet.registry.device_id]),
            )

    @pytest.mark.asyncio
    async def test_other_devices_become_stale_then_refresh(
        self, issuer, make_device, pair_devices,
    ) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await pair_devices(issuer, phone)

        await issuer.rotate_keys()
        snapshot = await phone.detect()
        assert snapshot.status == SyncStatus.STALE
        assert snapshot.local_key_version == 1
        assert snapshot.server_key_version == 2

        snapshot = await phone.refresh_keys()
        assert snapshot.status == SyncStatus.READY
        assert phone.ledger.root_key() == issuer.ledger.root_key()

    @pytest.mark.asyncio
    async def test_lost_root_key_is_recovery(self, issuer) -> None:
        await issuer.enable_sync()
        issuer.ledger.clear()

        snapshot = await issuer.detect()
        assert snapshot.status == SyncStatus.RECOVERY

        snapshot = await issuer.handle_recovery()
        assert snapshot.status == SyncStatus.READY
        assert snapshot.local_key_version == 1

    @pytest.mark.asyncio
    async def test_recovery_without_envelope_starts_over(
        self, issuer, make_device, pair_devices,
    ) -> None:
        """A paired device has no envelope for its pairing version."""
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await pair_devices(issuer, phone)
        old_id = phone.registry.device_id
        phone.ledger.clear()

        snapshot = await phone.handle_recovery()

        assert snapshot.status == SyncStatus.REGISTERED
        assert snapshot.device_id != old_id

    @pytest.mark.asyncio
    async def test_rotate_requires_trust(self, issuer, make_device) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        with pytest.raises(SyncError) as excinfo:
            await phone.rotate_keys()
        assert excinfo.value.code == SyncErrorCode.INVALID_STATE

    @pytest.mark.asyncio
    async def test_data_encryption_key_tracks_version(self, issuer) -> None:
        await issuer.enable_sync()
        dek_v1 = issuer.ledger.data_encryption_key()
        await issuer.rotate_keys()
        assert issuer.ledger.data_encryption_key() != dek_v1
        with pytest.raises(SyncError) as excinfo:
            issuer.ledger.data_encryption_key(1)
        assert excinfo.value.code == SyncErrorCode.ROOT_KEY_NOT_FOUND


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class TestDevices:
    """Listing, renaming, revoking."""

    @pytest.mark.asyncio
    async def test_list_marks_current(self, issuer, make_device) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()

        devices = await issuer.list_devices()

        assert [d.name for d in devices] == ["laptop", "phone"]
        assert [d.is_current for d in devices] == [True, False]

    @pytest.mark.asyncio
    async def test_rename(self, issuer) -> None:
        snapshot = await issuer.enable_sync()
        device = await issuer.rename_device(snapshot.device_id, "work laptop")
        assert device.name == "work laptop"
        assert issuer.registry.identity.device_name == "work laptop"

    @pytest.mark.asyncio
    async def test_rename_empty(self, issuer) -> None:
        snapshot = await issuer.enable_sync()
        with pytest.raises(SyncError) as excinfo:
            await issuer.rename_device(snapshot.device_id, "   ")
        assert excinfo.value.code == SyncErrorCode.INVALID_STATE

    @pytest.mark.asyncio
    async def test_revoke_rotates_out_the_device(
        self, issuer, make_device, pair_devices, relay, tmp_path,
    ) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await pair_devices(issuer, phone)
        phone_id = phone.registry.device_id

        revoked = await issuer.revoke_device(phone_id)

        assert revoked.trust_state == TrustState.REVOKED
        assert relay.team_key_version("user-1") == 2
        assert phone_id not in relay.envelopes_for("user-1", 2)
        assert issuer.status == SyncStatus.READY
        events = [e.event_type for e in read_audit_log(tmp_path / "laptop")]
        assert "DEVICE_REVOKE" in events
        assert "KEYS_ROTATE" in events

        with pytest.raises(SyncError):
            await phone.refresh_keys()
        snapshot = await phone.detect()
        assert snapshot.status == SyncStatus.REGISTERED
        assert phone.ledger.current_version is None

    @pytest.mark.asyncio
    async def test_revoked_device_cannot_open_new_version(
        self, issuer, make_device, pair_devices, relay,
    ) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await pair_devices(issuer, phone)
        phone_keys = phone.registry.device_keys()

        await issuer.revoke_device(phone.registry.device_id)

        for sealed in relay.envelopes_for("user-1", 2).values():
            with pytest.raises(AuthenticationFailed):
                crypto.open_envelope(phone_keys.encryption, crypto.b64decode(sealed))

    @pytest.mark.asyncio
    async def test_last_trusted_device(self, issuer) -> None:
        snapshot = await issuer.enable_sync()
        with pytest.raises(SyncError) as excinfo:
            await issuer.revoke_device(snapshot.device_id)
        assert excinfo.value.code == SyncErrorCode.LAST_TRUSTED_DEVICE

    @pytest.mark.asyncio
    async def test_revoke_untrusted_device_still_rotates(self, issuer, make_device, relay) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await issuer.revoke_device(phone.registry.device_id)
        assert relay.team_key_version("user-1") == 2


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


class TestReset:
    """Team reset and local wipe."""

    @pytest.mark.asyncio
    async def test_reset_then_reinitialize(self, issuer, make_device, pair_devices, relay) -> None:
        await issuer.enable_sync()
        phone = make_device("phone")
        await phone.enable_sync()
        await pair_devices(issuer, phone)

        snapshot = await issuer.reset_sync()
        assert snapshot.status == SyncStatus.REGISTERED
        assert snapshot.server_key_version is None
        assert issuer.ledger.current_version is None
        assert (await phone.detect()).status == SyncStatus.REGISTERED

        snapshot = await issuer.reinitialize_sync()
        assert snapshot.status == SyncStatus.READY
        assert snapshot.local_key_version == 2

    @pytest.mark.asyncio
    async def test_clear_sync_data(self, issuer) -> None:
        await issuer.enable_sync()
        snapshot = await issuer.clear_sync_data()
        assert snapshot.status == SyncStatus.FRESH
        assert issuer.registry.load_identity() is None
        assert (await issuer.detect()).status == SyncStatus.FRESH
