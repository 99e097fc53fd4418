"""
Pairing coordinator — teach a new device the team key.

Two roles:

    Issuer (trusted)                         Claimer (new device)
    ----------------                         --------------------
    ephemeral E_i, code C
    POST /pairing {H(C), E_i.pub}
    show C  ............ out of band ......> user types C
                                             ephemeral E_c
                                             POST /pairing/claim {C, E_c.pub}
    poll -> claimed, E_c.pub                 <- E_i.pub, requireSas
    K = HKDF(ECDH(E_i, E_c), "pairing")      K = HKDF(ECDH(E_c, E_i), "pairing")
    show SAS(ECDH)                           show SAS(ECDH)
    user confirms -> approve
    bundle = AEAD_K(root key), signed
    complete ------------------------------> poll messages, verify, decrypt
                                             confirm -> trusted at version

Only the code hash reaches the server before a claim. Session keys
and SAS live in memory for one flow and are dropped on every exit.
Polling runs as a ``PollingTask`` whose ``CancellationToken`` is
checked before every state change; canceling stops the task before
any further request is sent.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import ValidationError

from . import crypto
from .audit import Auditor
from .errors import AuthenticationFailed, InvalidKey, SyncError, SyncErrorCode, normalize_error
from .ledger import KeyLedger
from .models import (
    PAIRING_MESSAGE_ADAPTER,
    ClaimerSession,
    ConfirmPairingResult,
    ControlAction,
    ControlMessage,
    KeyBundleMessage,
    KeyBundlePayload,
    PairingSession,
    PairingStatus,
    TrustState,
    utcnow,
)
from .registry import DeviceRegistry
from .state import (
    ClaimerSessionStarted,
    ClearPairing,
    DetectFailed,
    KeyBundleReceived,
    PairingApproved,
    PairingCanceled,
    PairingClaimed,
    PairingCompleted,
    PairingExpired,
    PairingFailed,
    PairingModeSelected,
    PairingRole,
    PairingStarted,
    PairingStep,
    SasAcknowledged,
    StateStore,
    can_transition,
)
from .transport import SyncApiClient

logger = logging.getLogger("sklink.pairing")

T = TypeVar("T")

Clock = Callable[[], datetime]

DEFAULT_POLL_INTERVAL = 2.0


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class CancellationToken:
    """One-way cancel flag shared between a poller and its owner."""

    def __init__(self) -> None:
        self._canceled = False

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        self._canceled = True

    def raise_if_canceled(self) -> None:
        if self._canceled:
            raise SyncError(SyncErrorCode.SESSION_CANCELED, "Pairing was canceled")


class PollingTask(Generic[T]):
    """Repeat an async step until it returns a result.

    The step returns None for "not yet". Any exception ends the task.

    Args:
        step: Coroutine function taking the cancellation token.
        interval: Seconds between polls.
        token: Shared cancellation token.
    """

    def __init__(
        self,
        step: Callable[[CancellationToken], Awaitable[Optional[T]]],
        interval: float = DEFAULT_POLL_INTERVAL,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self._step = step
        self._interval = interval
        self.token = token or CancellationToken()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "PollingTask[T]":
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return self

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> T:
        while True:
            self.token.raise_if_canceled()
            result = await self._step(self.token)
            if result is not None:
                return result
            self.token.raise_if_canceled()
            await asyncio.sleep(self._interval)

    def cancel(self) -> None:
        """Stop polling. The token flips first so no late step can act."""
        self.token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> T:
        if self._task is None:
            self.start()
        try:
            return await self._task
        except asyncio.CancelledError:
            if self.token.canceled:
                raise SyncError(SyncErrorCode.SESSION_CANCELED, "Pairing was canceled") from None
            raise


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class PairingCoordinator:
    """Runs the issuer and claimer sides of pairing.

    At most one pairing flow (issuer or claimer) is active per device;
    its state lives in ``store``.

    Args:
        api: Server command client.
        registry: This device's identity.
        ledger: Root key source (issuer) and sink (claimer).
        store: Shared sync state.
        auditor: Security audit sink.
        poll_interval: Seconds between polls.
        clock: Current UTC time, for local TTL checks.
    """

    def __init__(
        self,
        api: SyncApiClient,
        registry: DeviceRegistry,
        ledger: KeyLedger,
        store: StateStore,
        auditor: Optional[Auditor] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Clock = utcnow,
    ) -> None:
        self._api = api
        self._registry = registry
        self._ledger = ledger
        self._store = store
        self._auditor = auditor or Auditor()
        self._poll_interval = poll_interval
        self._clock = clock
        self._poller: Optional[PollingTask] = None

    @property
    def step(self) -> PairingStep:
        return self._store.state.pairing_step

    @property
    def is_polling(self) -> bool:
        return self._poller is not None and self._poller.running

    # -------------------------------------------------------------------
    # Issuer
    # -------------------------------------------------------------------

    async def start_pairing(self) -> PairingSession:
        """Open a pairing session and return it (code included).

        Raises:
            SyncError: PAIRING_IN_PROGRESS, ROOT_KEY_NOT_FOUND, or any
                server rejection.
        """
        self._begin(PairingRole.ISSUER)
        try:
            if self._ledger.current_version is None:
                raise SyncError(SyncErrorCode.ROOT_KEY_NOT_FOUND, "Only a device holding the key can issue")
            ephemeral = crypto.generate_keypair()
            code = crypto.generate_pairing_code()
            code_hash = crypto.hash_pairing_code(code)
            response = await self._api.create_pairing(code_hash, crypto.b64encode(ephemeral.public_key))
        except Exception as exc:
            raise self._fail(exc) from exc

        session = PairingSession(
            session_id=response.session_id,
            code=code,
            code_hash=code_hash,
            ephemeral_public_key=ephemeral.public_key,
            ephemeral_secret_key=ephemeral.secret_key,
            expires_at=response.expires_at,
            key_version=response.key_version,
            require_sas=response.require_sas,
        )
        self._store.dispatch(PairingStarted(session))
        logger.info("Pairing session %s opened, expires %s", session.session_id, session.expires_at)
        return session

    async def poll_for_claimer_connection(
        self, token: Optional[CancellationToken] = None,
    ) -> Optional[PairingSession]:
        """One poll for a claim.

        Returns:
            The session with session key and SAS once claimed, else None.
        """
        session = self._issuer_session()
        if session.is_claimed:
            return session
        try:
            self._check_ttl(session.expires_at)
            view = await self._api.get_pairing(session.session_id)
            if token is not None and token.canceled:
                return None
            if view.status == PairingStatus.EXPIRED:
                self._check_ttl(session.expires_at, force=True)
            if view.status == PairingStatus.CANCELED:
                raise SyncError(SyncErrorCode.SESSION_CANCELED, "Pairing session was canceled")
            if view.status == PairingStatus.OPEN:
                return None
            if view.status.is_terminal or not view.claimer_ephemeral_public_key:
                raise SyncError(SyncErrorCode.SESSION_INVALID, f"Unexpected session state {view.status.value}")

            claimer_public = crypto.b64decode(view.claimer_ephemeral_public_key)
            shared = crypto.compute_shared_secret(session.ephemeral_secret_key, claimer_public)
            claimed = session.model_copy(update={
                "status": view.status,
                "claimer_device_id": view.claimer_device_id,
                "claimer_public_key": claimer_public,
                "session_key": crypto.derive_session_key(shared, crypto.PAIRING_CONTEXT),
                "sas": crypto.compute_sas(shared),
            })
        except Exception as exc:
            raise self._fail(exc) from exc

        self._store.dispatch(PairingClaimed(claimed))
        logger.info("Pairing session %s claimed by %s", claimed.session_id, claimed.claimer_device_id)
        return claimed

    async def wait_for_claimer(self, interval: Optional[float] = None) -> PairingSession:
        """Poll until the session is claimed, expires, or is canceled."""
        return await self._poll(self.poll_for_claimer_connection, interval)

    async def approve_pairing(self) -> None:
        """The user confirmed the SAS matches."""
        session = self._issuer_session()
        if self.step != PairingStep.VERIFY_SAS:
            raise SyncError(SyncErrorCode.INVALID_STATE, f"Cannot approve from {self.step.value}")
        try:
            self._check_ttl(session.expires_at)
            await self._api.approve_pairing(session.session_id)
        except Exception as exc:
            raise self._fail(exc) from exc
        self._store.dispatch(PairingApproved())

    async def complete_pairing(self) -> None:
        """Encrypt, sign, and deliver the key bundle to the claimer."""
        session = self._issuer_session()
        if self.step != PairingStep.TRANSFERRING or session.session_key is None:
            raise SyncError(SyncErrorCode.INVALID_STATE, f"Cannot complete from {self.step.value}")
        try:
            self._check_ttl(session.expires_at)
            version = self._ledger.current_version
            payload = KeyBundlePayload(
                root_key=crypto.b64encode(self._ledger.root_key()),
                key_version=version or session.key_version,
            )
            ciphertext = crypto.encrypt(
                session.session_key,
                payload.model_dump_json().encode(),
                associated_data=session.session_id.encode(),
            )
            keys = self._registry.device_keys()
            signature = crypto.sign(
                keys.signing_secret_key,
                crypto.bundle_signing_message(session.session_id, payload.key_version, ciphertext),
            )
            bundle = KeyBundleMessage(
                sender_device_id=self._registry.require_device_id(),
                key_version=payload.key_version,
                ciphertext=crypto.b64encode(ciphertext),
                signature=crypto.b64encode(signature),
            )
            await self._api.complete_pairing(session.session_id, bundle)
        except Exception as exc:
            raise self._fail(exc) from exc

        self._store.dispatch(PairingCompleted())
        self._auditor.record(
            "PAIRING_COMPLETE",
            f"Sent root key v{payload.key_version} to a new device",
            device_id=self._registry.device_id,
            metadata={
                "session_id": session.session_id,
                "claimer_device_id": session.claimer_device_id,
                "key_version": payload.key_version,
            },
        )

    async def reject_pairing(self) -> None:
        """The user saw different codes: cancel and hard-fail.

        Always raises SAS_MISMATCH; a fresh session is the only way on.
        """
        session_id = self._active_session_id()
        self._stop_polling()
        if session_id is not None:
            await self._cancel_remote(session_id, ControlAction.SAS_REJECTED)
        raise self._fail(SyncError(SyncErrorCode.SAS_MISMATCH, "Security codes did not match"))

    # -------------------------------------------------------------------
    # Claimer
    # -------------------------------------------------------------------

    async def claim_pairing(self, code: str) -> ClaimerSession:
        """Claim the session behind ``code``.

        Raises:
            SyncError: INVALID_CODE for anything but six alphanumerics
                (no request is sent), SESSION_EXPIRED, SESSION_INVALID.
        """
        normalized = crypto.normalize_pairing_code(code)
        if len(normalized) != crypto.PAIRING_CODE_LENGTH:
            raise SyncError(SyncErrorCode.INVALID_CODE, "Pairing code must be 6 letters or digits")
        self._registry.require_device_id()

        self._begin(PairingRole.CLAIMER)
        try:
            ephemeral = crypto.generate_keypair()
            response = await self._api.claim_pairing(normalized, crypto.b64encode(ephemeral.public_key))
            issuer_public = crypto.b64decode(response.issuer_ephemeral_public_key)
            shared = crypto.compute_shared_secret(ephemeral.secret_key, issuer_public)
            session = ClaimerSession(
                session_id=response.session_id,
                issuer_public_key=issuer_public,
                ephemeral_public_key=ephemeral.public_key,
                session_key=crypto.derive_session_key(shared, crypto.PAIRING_CONTEXT),
                sas=crypto.compute_sas(shared),
                key_version=response.key_version,
                require_sas=response.require_sas,
                expires_at=response.expires_at,
            )
        except Exception as exc:
            raise self._fail(exc) from exc

        self._store.dispatch(ClaimerSessionStarted(session))
        logger.info("Claimed pairing session %s", session.session_id)
        return session

    def acknowledge_sas(self) -> None:
        """Claimer confirmed the SAS; wait for the issuer."""
        self._claimer_session()
        if self.step == PairingStep.VERIFY_SAS:
            self._store.dispatch(SasAcknowledged())

    async def poll_for_key_bundle(
        self, token: Optional[CancellationToken] = None,
    ) -> Optional[KeyBundlePayload]:
        """One poll of the pairing mailbox.

        Messages are schema-checked first; a bundle's signature is
        checked against the sender's registered key before decryption.

        Returns:
            The decrypted bundle, or None if nothing has arrived.
        """
        session = self._claimer_session()
        try:
            self._check_ttl(session.expires_at)
            response = await self._api.get_pairing_messages(session.session_id)
            if token is not None and token.canceled:
                return None

            messages = [PAIRING_MESSAGE_ADAPTER.validate_python(m) for m in response.messages]
            for message in messages:
                if isinstance(message, ControlMessage):
                    raise self._control_error(message)
            bundle = next((m for m in messages if isinstance(m, KeyBundleMessage)), None)

            if bundle is None:
                if response.session_status == PairingStatus.EXPIRED:
                    self._check_ttl(session.expires_at, force=True)
                if response.session_status == PairingStatus.CANCELED:
                    raise SyncError(SyncErrorCode.SESSION_CANCELED, "Pairing session was canceled")
                if response.session_status == PairingStatus.COMPLETED:
                    raise SyncError(SyncErrorCode.SESSION_INVALID, "Session completed without a key bundle")
                return None

            payload = await self._open_bundle(session, bundle)
            if token is not None and token.canceled:
                return None
        except ValidationError as exc:
            raise self._fail(AuthenticationFailed("Malformed pairing message")) from exc
        except Exception as exc:
            raise self._fail(exc) from exc

        self._store.dispatch(KeyBundleReceived(payload.key_version))
        logger.info("Received key bundle v%d for session %s", payload.key_version, session.session_id)
        return payload

    async def wait_for_key_bundle(self, interval: Optional[float] = None) -> KeyBundlePayload:
        """Poll until the bundle arrives, or the session ends."""
        return await self._poll(self.poll_for_key_bundle, interval)

    async def confirm_pairing_as_claimer(self, bundle: KeyBundlePayload) -> ConfirmPairingResult:
        """Mark this device trusted and install the received key."""
        session = self._claimer_session()
        if self.step != PairingStep.TRANSFERRING:
            raise SyncError(SyncErrorCode.INVALID_STATE, f"Cannot confirm from {self.step.value}")
        try:
            root_key = crypto.b64decode(bundle.root_key)
            if len(root_key) != crypto.KEY_SIZE:
                raise InvalidKey("Bundle root key has the wrong length")
            result = await self._api.confirm_pairing(session.session_id)
            self._ledger.install(root_key, bundle.key_version, source="pairing")
        except Exception as exc:
            raise self._fail(exc) from exc

        self._store.dispatch(PairingCompleted())
        self._auditor.record(
            "PAIRING_COMPLETE",
            f"Joined sync group at key v{result.key_version}",
            device_id=self._registry.device_id,
            metadata={"session_id": session.session_id, "key_version": result.key_version},
        )
        return result

    # -------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------

    async def cancel_pairing(self) -> None:
        """Abandon the current flow on either side.

        Polling stops before anything else happens. The server is told
        when the session is still live; local state always goes idle.
        """
        self._stop_polling()
        state = self._store.state
        session_id = self._active_session_id()
        if session_id is not None and state.pairing_step.is_active:
            await self._cancel_remote(session_id, ControlAction.CANCELED)
            self._auditor.record(
                "PAIRING_CANCEL",
                "Pairing canceled",
                device_id=self._registry.device_id,
                metadata={"session_id": session_id, "role": self._role_value()},
            )
        self._store.dispatch(PairingCanceled())

    def compute_sas(self) -> str:
        """The six-digit SAS of the current session.

        Raises:
            SyncError: SESSION_INVALID before a key agreement happened.
        """
        state = self._store.state
        if state.pairing is not None and state.pairing.sas:
            return state.pairing.sas
        if state.claimer is not None:
            return state.claimer.sas
        raise SyncError(SyncErrorCode.SESSION_INVALID, "No key agreement yet")

    def clear(self) -> None:
        """Return a finished flow to idle."""
        self._stop_polling()
        self._store.dispatch(ClearPairing())

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _begin(self, role: PairingRole) -> None:
        step = self.step
        if step.is_active:
            raise SyncError(SyncErrorCode.PAIRING_IN_PROGRESS, "Another pairing is in progress")
        if step.is_terminal:
            self._store.dispatch(ClearPairing())
        self._store.dispatch(PairingModeSelected(role))

    def _issuer_session(self) -> PairingSession:
        session = self._store.state.pairing
        if session is None:
            raise SyncError(SyncErrorCode.SESSION_INVALID, "No pairing session")
        return session

    def _claimer_session(self) -> ClaimerSession:
        session = self._store.state.claimer
        if session is None:
            raise SyncError(SyncErrorCode.SESSION_INVALID, "No claimed session")
        return session

    def _active_session_id(self) -> Optional[str]:
        state = self._store.state
        session = state.pairing or state.claimer
        return session.session_id if session else None

    def _role_value(self) -> Optional[str]:
        role = self._store.state.pairing_role
        return role.value if role else None

    def _check_ttl(self, expires_at: datetime, force: bool = False) -> None:
        # Past TTL counts as expired even if the server never said so.
        if force or self._clock() >= expires_at:
            raise SyncError(SyncErrorCode.SESSION_EXPIRED, "Pairing session expired")

    async def _open_bundle(self, session: ClaimerSession, bundle: KeyBundleMessage) -> KeyBundlePayload:
        sender = await self._api.get_device(bundle.sender_device_id)
        if sender.trust_state != TrustState.TRUSTED or not sender.signing_public_key:
            raise AuthenticationFailed("Key bundle sender is not a trusted device")
        ciphertext = crypto.b64decode(bundle.ciphertext)
        crypto.verify(
            crypto.b64decode(sender.signing_public_key),
            crypto.bundle_signing_message(session.session_id, bundle.key_version, ciphertext),
            crypto.b64decode(bundle.signature),
        )
        plaintext = crypto.decrypt(
            session.session_key, ciphertext, associated_data=session.session_id.encode(),
        )
        payload = KeyBundlePayload.model_validate_json(plaintext)
        if payload.key_version != bundle.key_version:
            raise AuthenticationFailed("Key bundle version does not match its envelope")
        return payload

    @staticmethod
    def _control_error(message: ControlMessage) -> SyncError:
        if message.action == ControlAction.SAS_REJECTED:
            return SyncError(SyncErrorCode.SAS_MISMATCH, "The other device rejected the security code")
        return SyncError(SyncErrorCode.SESSION_CANCELED, "Pairing was canceled on the other device")

    async def _cancel_remote(self, session_id: str, reason: ControlAction) -> None:
        try:
            await self._api.cancel_pairing(session_id, reason)
        except Exception as exc:
            logger.warning("Could not cancel session %s remotely: %s", session_id, normalize_error(exc).code.value)

    async def _poll(
        self,
        step: Callable[[Optional[CancellationToken]], Awaitable[Optional[T]]],
        interval: Optional[float],
    ) -> T:
        self._stop_polling()
        poller: PollingTask[T] = PollingTask(step, interval or self._poll_interval)
        self._poller = poller
        poller.start()
        try:
            return await poller.wait()
        finally:
            if self._poller is poller:
                self._poller = None

    def _stop_polling(self) -> None:
        poller, self._poller = self._poller, None
        if poller is not None:
            poller.cancel()

    def _fail(self, exc: BaseException) -> SyncError:
        """Normalize, audit security failures, and move to a terminal step."""
        error = normalize_error(exc)
        if error.code == SyncErrorCode.NO_ACCESS_TOKEN:
            self._store.dispatch(ClearPairing())
            self._store.dispatch(DetectFailed(error))
            logger.info("Signed out during pairing; sync state reset")
            return error
        if error.is_security_event:
            self._auditor.record(
                "SECURITY_VERIFICATION_FAILED",
                f"Pairing verification failed: {error.message}",
                device_id=self._registry.device_id,
                metadata={"session_id": self._active_session_id(), "role": self._role_value()},
            )
        step = self.step
        if error.code == SyncErrorCode.SESSION_EXPIRED and can_transition(step, PairingStep.EXPIRED):
            self._store.dispatch(PairingExpired())
        elif can_transition(step, PairingStep.ERROR):
            self._store.dispatch(PairingFailed(error))
        elif step != PairingStep.IDLE and not step.is_terminal:
            self._store.dispatch(ClearPairing())
        logger.info("Pairing failed: %s", error.code.value)
        return error
