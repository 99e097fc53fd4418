"""
Sync state machine — one composed status for everything above.

Status:
    FRESH       no device, no keys
    REGISTERED  device known to the server, not provisioned
    READY       trusted, local key version == server version
    STALE       trusted, local key version behind the server
    RECOVERY    trusted, but local key material is lost or corrupt
    ORPHANED    server has a team key but no trusted device is left

Status is computed by ``detect_status`` from local identity versus
what the server reports; nothing is pushed.

State changes go through ``reduce(state, event)``, a pure function
over frozen event dataclasses. ``StateStore`` holds the current
state, applies events one at a time, and notifies listeners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

from pydantic import BaseModel, ConfigDict

from .errors import SyncError, SyncErrorCode
from .models import ClaimerSession, Device, PairingSession, SyncIdentity, TrustState

logger = logging.getLogger("sklink.state")


class SyncStatus(str, Enum):
    FRESH = "FRESH"
    REGISTERED = "REGISTERED"
    READY = "READY"
    STALE = "STALE"
    RECOVERY = "RECOVERY"
    ORPHANED = "ORPHANED"


class PairingRole(str, Enum):
    ISSUER = "issuer"
    CLAIMER = "claimer"


class PairingStep(str, Enum):
    """Client-local pairing screen."""

    IDLE = "idle"
    SELECT_MODE = "select_mode"
    DISPLAY_CODE = "display_code"
    ENTER_CODE = "enter_code"
    WAITING_CLAIM = "waiting_claim"
    VERIFY_SAS = "verify_sas"
    WAITING_APPROVAL = "waiting_approval"
    TRANSFERRING = "transferring"
    SUCCESS = "success"
    ERROR = "error"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (PairingStep.SUCCESS, PairingStep.ERROR, PairingStep.EXPIRED)

    @property
    def is_active(self) -> bool:
        return self != PairingStep.IDLE and not self.is_terminal


# Any step may go back to IDLE (cancel / clear).
PAIRING_TRANSITIONS: dict[PairingStep, frozenset[PairingStep]] = {
    PairingStep.IDLE: frozenset({
        PairingStep.SELECT_MODE, PairingStep.DISPLAY_CODE, PairingStep.ENTER_CODE,
    }),
    PairingStep.SELECT_MODE: frozenset({PairingStep.DISPLAY_CODE, PairingStep.ENTER_CODE}),
    PairingStep.DISPLAY_CODE: frozenset({PairingStep.WAITING_CLAIM, PairingStep.ERROR}),
    PairingStep.ENTER_CODE: frozenset({
        PairingStep.VERIFY_SAS, PairingStep.WAITING_APPROVAL,
        PairingStep.ERROR, PairingStep.EXPIRED,
    }),
    PairingStep.WAITING_CLAIM: frozenset({
        PairingStep.VERIFY_SAS, PairingStep.TRANSFERRING,
        PairingStep.ERROR, PairingStep.EXPIRED,
    }),
    PairingStep.VERIFY_SAS: frozenset({
        PairingStep.WAITING_APPROVAL, PairingStep.TRANSFERRING,
        PairingStep.ERROR, PairingStep.EXPIRED,
    }),
    PairingStep.WAITING_APPROVAL: frozenset({
        PairingStep.TRANSFERRING, PairingStep.ERROR, PairingStep.EXPIRED,
    }),
    PairingStep.TRANSFERRING: frozenset({
        PairingStep.SUCCESS, PairingStep.ERROR, PairingStep.EXPIRED,
    }),
    PairingStep.SUCCESS: frozenset(),
    PairingStep.ERROR: frozenset(),
    PairingStep.EXPIRED: frozenset(),
}


def can_transition(current: PairingStep, target: PairingStep) -> bool:
    return target == PairingStep.IDLE or target in PAIRING_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncState:
    """Everything the lifecycle manager tracks. Never mutated in place."""

    status: SyncStatus = SyncStatus.FRESH
    device_id: Optional[str] = None
    trust_state: Optional[TrustState] = None
    local_key_version: Optional[int] = None
    server_key_version: Optional[int] = None
    detecting: bool = False
    detected_at: Optional[datetime] = None
    operation: Optional[str] = None
    error: Optional[SyncError] = None
    pairing_role: Optional[PairingRole] = None
    pairing_step: PairingStep = PairingStep.IDLE
    pairing: Optional[PairingSession] = None
    claimer: Optional[ClaimerSession] = None
    pairing_error: Optional[SyncError] = None


class SyncSnapshot(BaseModel):
    """Read-only view for the UI. Holds no key material."""

    model_config = ConfigDict(frozen=True)

    status: SyncStatus
    device_id: Optional[str] = None
    trust_state: Optional[TrustState] = None
    local_key_version: Optional[int] = None
    server_key_version: Optional[int] = None
    detecting: bool = False
    operation: Optional[str] = None
    error_code: Optional[SyncErrorCode] = None
    error_message: Optional[str] = None
    pairing_role: Optional[PairingRole] = None
    pairing_step: PairingStep = PairingStep.IDLE
    pairing_session_id: Optional[str] = None
    pairing_expires_at: Optional[datetime] = None
    require_sas: Optional[bool] = None
    pairing_error_code: Optional[SyncErrorCode] = None

    @classmethod
    def of(cls, state: SyncState) -> "SyncSnapshot":
        session = state.pairing or state.claimer
        return cls(
            status=state.status,
            device_id=state.device_id,
            trust_state=state.trust_state,
            local_key_version=state.local_key_version,
            server_key_version=state.server_key_version,
            detecting=state.detecting,
            operation=state.operation,
            error_code=state.error.code if state.error else None,
            error_message=state.error.message if state.error else None,
            pairing_role=state.pairing_role,
            pairing_step=state.pairing_step,
            pairing_session_id=session.session_id if session else None,
            pairing_expires_at=session.expires_at if session else None,
            require_sas=session.require_sas if session else None,
            pairing_error_code=state.pairing_error.code if state.pairing_error else None,
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetectStarted:
    pass


@dataclass(frozen=True)
class DetectSucceeded:
    status: SyncStatus
    device_id: Optional[str] = None
    trust_state: Optional[TrustState] = None
    local_key_version: Optional[int] = None
    server_key_version: Optional[int] = None
    detected_at: Optional[datetime] = None


@dataclass(frozen=True)
class DetectFailed:
    error: SyncError


@dataclass(frozen=True)
class OperationStarted:
    name: str


@dataclass(frozen=True)
class OperationFinished:
    name: str
    error: Optional[SyncError] = None


@dataclass(frozen=True)
class PairingModeSelected:
    role: Optional[PairingRole] = None


@dataclass(frozen=True)
class PairingStarted:
    session: PairingSession


@dataclass(frozen=True)
class PairingClaimed:
    session: PairingSession


@dataclass(frozen=True)
class PairingApproved:
    pass


@dataclass(frozen=True)
class ClaimerSessionStarted:
    session: ClaimerSession


@dataclass(frozen=True)
class SasAcknowledged:
    pass


@dataclass(frozen=True)
class KeyBundleReceived:
    key_version: int


@dataclass(frozen=True)
class PairingCompleted:
    pass


@dataclass(frozen=True)
class PairingExpired:
    pass


@dataclass(frozen=True)
class PairingCanceled:
    pass


@dataclass(frozen=True)
class PairingFailed:
    error: SyncError


@dataclass(frozen=True)
class ClearPairing:
    pass


@dataclass(frozen=True)
class ClearError:
    pass


@dataclass(frozen=True)
class Reset:
    pass


SyncEvent = Union[
    DetectStarted, DetectSucceeded, DetectFailed,
    OperationStarted, OperationFinished,
    PairingModeSelected, PairingStarted, PairingClaimed, PairingApproved,
    ClaimerSessionStarted, SasAcknowledged, KeyBundleReceived,
    PairingCompleted, PairingExpired, PairingCanceled, PairingFailed,
    ClearPairing, ClearError, Reset,
]


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

def _step(state: SyncState, target: PairingStep, **changes) -> SyncState:
    if not can_transition(state.pairing_step, target):
        raise SyncError(
            SyncErrorCode.INVALID_STATE,
            f"Cannot move from {state.pairing_step.value} to {target.value}",
        )
    return replace(state, pairing_step=target, **changes)


def _end_pairing(state: SyncState, target: PairingStep, error: Optional[SyncError] = None) -> SyncState:
    # Session keys never outlive the flow.
    return _step(state, target, pairing=None, claimer=None, pairing_error=error)


def _detect_failed(state: SyncState, event: DetectFailed) -> SyncState:
    if event.error.code == SyncErrorCode.NO_ACCESS_TOKEN:
        return replace(
            state,
            status=SyncStatus.FRESH,
            device_id=None,
            trust_state=None,
            local_key_version=None,
            server_key_version=None,
            detecting=False,
            error=event.error,
        )
    return replace(state, detecting=False, error=event.error)


def _detect_succeeded(state: SyncState, event: DetectSucceeded) -> SyncState:
    return replace(
        state,
        status=event.status,
        device_id=event.device_id,
        trust_state=event.trust_state,
        local_key_version=event.local_key_version,
        server_key_version=event.server_key_version,
        detected_at=event.detected_at,
        detecting=False,
        error=None,
    )


def _mode_selected(state: SyncState, event: PairingModeSelected) -> SyncState:
    if event.role is None:
        return _step(state, PairingStep.SELECT_MODE, pairing_role=None, pairing_error=None)
    target = PairingStep.DISPLAY_CODE if event.role == PairingRole.ISSUER else PairingStep.ENTER_CODE
    return _step(state, target, pairing_role=event.role, pairing_error=None)


def _pairing_claimed(state: SyncState, event: PairingClaimed) -> SyncState:
    target = PairingStep.VERIFY_SAS if event.session.require_sas else PairingStep.TRANSFERRING
    return _step(state, target, pairing=event.session)


def _claimer_started(state: SyncState, event: ClaimerSessionStarted) -> SyncState:
    target = PairingStep.VERIFY_SAS if event.session.require_sas else PairingStep.WAITING_APPROVAL
    return _step(state, target, claimer=event.session)


def _pairing_approved(state: SyncState, event: PairingApproved) -> SyncState:
    session = state.pairing.model_copy(update={"sas_confirmed": True}) if state.pairing else None
    return _step(state, PairingStep.TRANSFERRING, pairing=session)


def _reset(state: SyncState, event: Reset) -> SyncState:
    return SyncState()


_REDUCERS: dict[type, Callable[[SyncState, object], SyncState]] = {
    DetectStarted: lambda s, e: replace(s, detecting=True),
    DetectSucceeded: _detect_succeeded,
    DetectFailed: _detect_failed,
    OperationStarted: lambda s, e: replace(s, operation=e.name, error=None),
    OperationFinished: lambda s, e: replace(s, operation=None, error=e.error),
    PairingModeSelected: _mode_selected,
    PairingStarted: lambda s, e: _step(s, PairingStep.WAITING_CLAIM, pairing=e.session),
    PairingClaimed: _pairing_claimed,
    PairingApproved: _pairing_approved,
    ClaimerSessionStarted: _claimer_started,
    SasAcknowledged: lambda s, e: _step(s, PairingStep.WAITING_APPROVAL),
    KeyBundleReceived: lambda s, e: _step(s, PairingStep.TRANSFERRING),
    PairingCompleted: lambda s, e: _end_pairing(s, PairingStep.SUCCESS),
    PairingExpired: lambda s, e: _end_pairing(
        s, PairingStep.EXPIRED,
        SyncError(SyncErrorCode.SESSION_EXPIRED, "Pairing session expired"),
    ),
    PairingCanceled: lambda s, e: replace(
        s, pairing_step=PairingStep.IDLE, pairing_role=None,
        pairing=None, claimer=None, pairing_error=None,
    ),
    PairingFailed: lambda s, e: _end_pairing(s, PairingStep.ERROR, e.error),
    ClearPairing: lambda s, e: replace(
        s, pairing_step=PairingStep.IDLE, pairing_role=None,
        pairing=None, claimer=None, pairing_error=None,
    ),
    ClearError: lambda s, e: replace(s, error=None),
    Reset: _reset,
}


def reduce(state: SyncState, event: SyncEvent) -> SyncState:
    """Apply one event. Pure: returns a new state, never mutates.

    Raises:
        SyncError: INVALID_STATE for a pairing step the current step
            cannot reach.
        TypeError: Unknown event type.
    """
    handler = _REDUCERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown sync event: {type(event).__name__}")
    return handler(state, event)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_status(
    identity: Optional[SyncIdentity],
    device: Optional[Device],
    server_key_version: Optional[int],
    trusted_device_count: int = 0,
) -> SyncStatus:
    """Derive the sync status from local and server facts.

    Args:
        identity: What the secret store holds (None if nothing).
        device: The server's record of this device (None if unknown).
        server_key_version: Server's current root-key version (None if
            the team key is not initialized).
        trusted_device_count: Trusted devices the server knows about.
    """
    if identity is None or not identity.device_id or device is None:
        return SyncStatus.FRESH

    if device.trust_state != TrustState.TRUSTED:
        if server_key_version is not None and trusted_device_count == 0:
            return SyncStatus.ORPHANED
        return SyncStatus.REGISTERED

    if server_key_version is None:
        return SyncStatus.REGISTERED
    if not identity.has_device_keys or not identity.has_root_key:
        return SyncStatus.RECOVERY

    local = identity.key_version or 0
    if local < server_key_version:
        return SyncStatus.STALE
    if local > server_key_version:
        return SyncStatus.RECOVERY
    return SyncStatus.READY


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

Listener = Callable[[SyncState], None]


class StateStore:
    """Holds the current ``SyncState`` and applies events atomically."""

    def __init__(self, initial: Optional[SyncState] = None) -> None:
        self._state = initial or SyncState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> SyncState:
        return self._state

    def dispatch(self, event: SyncEvent) -> SyncState:
        new_state = reduce(self._state, event)
        if new_state == self._state:
            return self._state
        self._state = new_state
        logger.debug("%s -> status=%s step=%s", type(event).__name__,
                     new_state.status.value, new_state.pairing_step.value)
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as exc:
                logger.warning("State listener failed: %s", exc)
        return new_state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SyncSnapshot:
        return SyncSnapshot.of(self._state)
