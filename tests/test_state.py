"""Tests for sklink.state — status detection, reducer, store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from sklink.errors import SyncError, SyncErrorCode
from sklink.models import ClaimerSession, Device, PairingSession, SyncIdentity, TrustState
from sklink.state import (
    ClaimerSessionStarted,
    ClearPairing,
    DetectFailed,
    DetectStarted,
    DetectSucceeded,
    KeyBundleReceived,
    OperationFinished,
    OperationStarted,
    PairingApproved,
    PairingCanceled,
    PairingClaimed,
    PairingCompleted,
    PairingExpired,
    PairingModeSelected,
    PairingRole,
    PairingStarted,
    PairingStep,
    Reset,
    SasAcknowledged,
    StateStore,
    SyncState,
    SyncStatus,
    can_transition,
    detect_status,
    reduce,
)

EXPIRES = datetime(2026, 1, 1, 12, 5, tzinfo=timezone.utc)


def _identity(root: bool = True, version: int = 1, keys: bool = True) -> SyncIdentity:
    return SyncIdentity(
        device_id="dev-1",
        encryption_secret_key="c2VjcmV0" if keys else None,
        encryption_public_key="cHVibGlj",
        signing_secret_key="c2lnbg==" if keys else None,
        signing_public_key="cHVi",
        root_key="cm9vdA==" if root else None,
        key_version=version if root else None,
    )


def _device(trust: TrustState = TrustState.TRUSTED) -> Device:
    return Device(id="dev-1", user_id="user-1", name="laptop", trust_state=trust)


def _issuer_session(require_sas: bool = True) -> PairingSession:
    return PairingSession(
        session_id="sid-1",
        code="AB12CD",
        code_hash="0" * 64,
        ephemeral_public_key=b"\x01" * 32,
        ephemeral_secret_key=b"\x02" * 32,
        expires_at=EXPIRES,
        key_version=1,
        require_sas=require_sas,
    )


def _claimed(session: PairingSession) -> PairingSession:
    return session.model_copy(update={
        "claimer_device_id": "dev-2",
        "claimer_public_key": b"\x03" * 32,
        "session_key": b"\x04" * 32,
        "sas": "123456",
    })


def _claimer_session() -> ClaimerSession:
    return ClaimerSession(
        session_id="sid-1",
        issuer_public_key=b"\x01" * 32,
        ephemeral_public_key=b"\x03" * 32,
        session_key=b"\x04" * 32,
        sas="123456",
        key_version=1,
        expires_at=EXPIRES,
    )


def _run(*events, state: SyncState | None = None) -> SyncState:
    state = state or SyncState()
    for event in events:
        state = reduce(state, event)
    return state


# ---------------------------------------------------------------------------
# detect_status
# ---------------------------------------------------------------------------


class TestDetectStatus:
    """Status derived from local identity versus server facts."""

    def test_no_identity_is_fresh(self) -> None:
        assert detect_status(None, None, None) == SyncStatus.FRESH

    def test_unknown_device_is_fresh(self) -> None:
        assert detect_status(_identity(), None, 1) == SyncStatus.FRESH

    def test_untrusted_is_registered(self) -> None:
        status = detect_status(_identity(root=False), _device(TrustState.UNTRUSTED), 1, 1)
        assert status == SyncStatus.REGISTERED

    def test_untrusted_without_any_trusted_device_is_orphaned(self) -> None:
        status = detect_status(_identity(root=False), _device(TrustState.UNTRUSTED), 2, 0)
        assert status == SyncStatus.ORPHANED

    def test_revoked_is_registered(self) -> None:
        status = detect_status(_identity(root=False), _device(TrustState.REVOKED), 2, 1)
        assert status == SyncStatus.REGISTERED

    def test_trusted_without_team_key_is_registered(self) -> None:
        assert detect_status(_identity(), _device(), None, 0) == SyncStatus.REGISTERED

    def test_ready_when_versions_match(self) -> None:
        assert detect_status(_identity(version=3), _device(), 3, 2) == SyncStatus.READY

    def test_stale_when_behind(self) -> None:
        assert detect_status(_identity(version=2), _device(), 3, 2) == SyncStatus.STALE

    def test_recovery_when_ahead(self) -> None:
        assert detect_status(_identity(version=4), _device(), 3, 2) == SyncStatus.RECOVERY

    def test_recovery_when_root_key_lost(self) -> None:
        assert detect_status(_identity(root=False), _device(), 3, 2) == SyncStatus.RECOVERY

    def test_recovery_when_device_keys_lost(self) -> None:
        assert detect_status(_identity(keys=False), _device(), 1, 1) == SyncStatus.RECOVERY


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitions:
    """Pairing step transition rules."""

    def test_idle_always_reachable(self) -> None:
        for step in PairingStep:
            assert can_transition(step, PairingStep.IDLE)

    def test_terminal_steps_only_go_idle(self) -> None:
        for step in (PairingStep.SUCCESS, PairingStep.ERROR, PairingStep.EXPIRED):
            assert step.is_terminal
            assert not can_transition(step, PairingStep.DISPLAY_CODE)

    def test_display_code_cannot_expire_directly(self) -> None:
        assert not can_transition(PairingStep.DISPLAY_CODE, PairingStep.EXPIRED)

    def test_active_steps(self) -> None:
        assert not PairingStep.IDLE.is_active
        assert PairingStep.WAITING_CLAIM.is_active
        assert not PairingStep.SUCCESS.is_active


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


class TestReducer:
    """Pure state transitions."""

    def test_reduce_does_not_mutate(self) -> None:
        state = SyncState()
        new_state = reduce(state, DetectStarted())
        assert state.detecting is False
        assert new_state.detecting is True

    def test_detect_succeeded_clears_error(self) -> None:
        state = _run(
            OperationFinished("x", SyncError(SyncErrorCode.NETWORK_ERROR)),
            DetectSucceeded(status=SyncStatus.READY, device_id="dev-1", local_key_version=1),
        )
        assert state.status == SyncStatus.READY
        assert state.error is None
        assert state.local_key_version == 1

    def test_operation_lifecycle(self) -> None:
        state = _run(OperationStarted("rotate_keys"))
        assert state.operation == "rotate_keys"
        state = reduce(state, OperationFinished("rotate_keys"))
        assert state.operation is None

    def test_issuer_happy_path(self) -> None:
        session = _issuer_session()
        state = _run(
            PairingModeSelected(PairingRole.ISSUER),
            PairingStarted(session),
        )
        assert state.pairing_step == PairingStep.WAITING_CLAIM
        state = _run(PairingClaimed(_claimed(session)), state=state)
        assert state.pairing_step == PairingStep.VERIFY_SAS
        state = _run(PairingApproved(), state=state)
        assert state.pairing_step == PairingStep.TRANSFERRING
        assert state.pairing.sas_confirmed
        state = _run(PairingCompleted(), state=state)
        assert state.pairing_step == PairingStep.SUCCESS
        assert state.pairing is None

    def test_claim_without_sas_skips_verification(self) -> None:
        session = _issuer_session(require_sas=False)
        state = _run(
            PairingModeSelected(PairingRole.ISSUER),
            PairingStarted(session),
            PairingClaimed(_claimed(session)),
        )
        assert state.pairing_step == PairingStep.TRANSFERRING

    def test_claimer_happy_path(self) -> None:
        state = _run(
            PairingModeSelected(PairingRole.CLAIMER),
            ClaimerSessionStarted(_claimer_session()),
            SasAcknowledged(),
            KeyBundleReceived(1),
        )
        assert state.pairing_step == PairingStep.TRANSFERRING
        assert state.claimer is not None
        state = reduce(state, PairingCompleted())
        assert state.pairing_step == PairingStep.SUCCESS
        assert state.claimer is None

    def test_invalid_transition_raises(self) -> None:
        with pytest.raises(SyncError) as excinfo:
            reduce(SyncState(), PairingApproved())
        assert excinfo.value.code == SyncErrorCode.INVALID_STATE

    def test_expired_drops_session_keys(self) -> None:
        session = _issuer_session()
        state = _run(
            PairingModeSelected(PairingRole.ISSUER),
            PairingStarted(session),
            PairingExpired(),
        )
        assert state.pairing_step == PairingStep.EXPIRED
        assert state.pairing is None
        assert state.pairing_error.code == SyncErrorCode.SESSION_EXPIRED

    def test_cancel_from_any_step(self) -> None:
        state = _run(
            PairingModeSelected(PairingRole.CLAIMER),
            ClaimerSessionStarted(_claimer_session()),
            PairingCanceled(),
        )
        assert state.pairing_step == PairingStep.IDLE
        assert state.claimer is None
        assert state.pairing_role is None

    def test_clear_after_terminal(self) -> None:
        state = _run(
            PairingModeSelected(PairingRole.ISSUER),
            PairingStarted(_issuer_session()),
            PairingExpired(),
            ClearPairing(),
        )
        assert state.pairing_step == PairingStep.IDLE
        assert state.pairing_error is None

    def test_no_access_token_keeps_pairing(self) -> None:
        """Losing the token resets status but leaves a running pairing alone."""
        state = _run(
            DetectSucceeded(status=SyncStatus.READY, device_id="dev-1", local_key_version=1),
            PairingModeSelected(PairingRole.ISSUER),
            PairingStarted(_issuer_session()),
            DetectFailed(SyncError(SyncErrorCode.NO_ACCESS_TOKEN)),
        )
        assert state.status == SyncStatus.FRESH
        assert state.device_id is None
        assert state.error.code == SyncErrorCode.NO_ACCESS_TOKEN
        assert state.pairing_step == PairingStep.WAITING_CLAIM
        assert state.pairing is not None

    def test_other_detect_failure_keeps_status(self) -> None:
        state = _run(
            DetectSucceeded(status=SyncStatus.READY, device_id="dev-1"),
            DetectFailed(SyncError(SyncErrorCode.NETWORK_ERROR)),
        )
        assert state.status == SyncStatus.READY
        assert state.error.code == SyncErrorCode.NETWORK_ERROR

    def test_reset(self) -> None:
        state = _run(DetectSucceeded(status=SyncStatus.READY, device_id="dev-1"), Reset())
        assert state == SyncState()

    def test_unknown_event(self) -> None:
        with pytest.raises(TypeError):
            reduce(SyncState(), object())


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TestStateStore:
    """Listener notification and snapshots."""

    def test_listeners_notified(self) -> None:
        store = StateStore()
        seen: list[SyncState] = []
        store.subscribe(seen.append)
        store.dispatch(DetectStarted())
        assert len(seen) == 1
        assert seen[0].detecting

    def test_no_notification_without_change(self) -> None:
        store = StateStore()
        seen: list[SyncState] = []
        store.subscribe(seen.append)
        store.dispatch(ClearPairing())
        assert seen == []

    def test_unsubscribe(self) -> None:
        store = StateStore()
        seen: list[SyncState] = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        store.dispatch(DetectStarted())
        assert seen == []

    def test_failing_listener_does_not_break_dispatch(self) -> None:
        store = StateStore()

        def broken(state: SyncState) -> None:
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.dispatch(DetectStarted())
        assert store.state.detecting

    def test_snapshot_has_no_secrets(self) -> None:
        store = StateStore()
        session = _issuer_session()
        store.dispatch(PairingModeSelected(PairingRole.ISSUER))
        store.dispatch(PairingStarted(_claimed(session)))
        snapshot = store.snapshot()
        dumped = snapshot.model_dump_json()
        assert snapshot.pairing_session_id == "sid-1"
        assert snapshot.pairing_expires_at == EXPIRES
        assert "AB12CD" not in dumped
        assert "123456" not in dumped

    def test_snapshot_is_frozen(self) -> None:
        snapshot = StateStore().snapshot()
        with pytest.raises(ValidationError):
            snapshot.status = SyncStatus.READY

    def test_detected_at_recorded(self) -> None:
        store = StateStore()
        store.dispatch(DetectSucceeded(
            status=SyncStatus.READY,
            detected_at=EXPIRES - timedelta(minutes=5),
        ))
        assert store.state.detected_at == EXPIRES - timedelta(minutes=5)
