"""
SKLink relay — an in-memory sync server.

Implements the same REST command surface the real sync server
exposes, entirely in process. It sees exactly what a real server
sees: code hashes, public keys, ciphertext, signatures. It never
sees a pairing code before a claim, a session key, or a root key.

Used by ``LocalTransport`` (in-process), mountable as an
``httpx.MockTransport`` handler (exercises ``HttpTransport`` end to
end), and by the test-suite to pin the server-side invariants:

    - a pairing code is claimable once, atomically
    - sessions past their TTL are expired, whether or not anyone said so
    - a key commit must carry exactly one envelope per trusted device
    - revoked devices receive nothing for versions after revocation

Usage:
    relay = SyncRelay()
    token = relay.issue_token("user-1")
    transport = LocalTransport(relay, secret_store)
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from pydantic import ValidationError

from . import crypto
from .errors import ApiError, AuthenticationFailed, InvalidKey
from .models import (
    ClaimPairingResponse,
    CompletePairingRequest,
    ConfirmPairingResult,
    ControlAction,
    ControlMessage,
    CreatePairingResponse,
    Device,
    DevicePlatform,
    EnrollmentMode,
    KeyChallenge,
    KeyCommitRequest,
    KeyCommitResult,
    KeyEnvelope,
    KeyStatus,
    PairingMessagesResponse,
    PairingSessionView,
    PairingStatus,
    RegisterResult,
    TrustedDeviceSummary,
    TrustState,
    utcnow,
)

logger = logging.getLogger("sklink.relay")

Clock = Callable[[], datetime]

DEFAULT_PAIRING_TTL = timedelta(seconds=300)


@dataclass
class _Challenge:
    kind: str
    device_id: str
    key_version: int
    challenge: str


@dataclass
class _Team:
    user_id: str
    key_version: int = 0
    active: bool = False
    envelopes: dict[int, dict[str, str]] = field(default_factory=dict)
    pending: Optional[_Challenge] = None
    reset_at: Optional[datetime] = None


@dataclass
class _Session:
    session_id: str
    user_id: str
    issuer_device_id: str
    code_hash: str
    issuer_public_key: str
    key_version: int
    require_sas: bool
    expires_at: datetime
    status: PairingStatus = PairingStatus.OPEN
    claimer_device_id: Optional[str] = None
    claimer_public_key: Optional[str] = None
    bundle_key_version: Optional[int] = None
    messages: list[dict] = field(default_factory=list)


@dataclass
class _Request:
    user_id: str
    device_id: Optional[str]
    body: dict[str, Any]


class SyncRelay:
    """In-memory sync server.

    Args:
        clock: Returns the current UTC time. Injected so tests can
            move time forward past a session TTL.
        pairing_ttl: Lifetime of a pairing session.
        require_sas: Whether claimers and issuers must compare a SAS.
    """

    def __init__(
        self,
        clock: Clock = utcnow,
        pairing_ttl: timedelta = DEFAULT_PAIRING_TTL,
        require_sas: bool = True,
    ) -> None:
        self._clock = clock
        self._ttl = pairing_ttl
        self._require_sas = require_sas
        self._lock = threading.Lock()
        self._tokens: dict[str, str] = {}
        self._teams: dict[str, _Team] = {}
        self._devices: dict[str, Device] = {}
        self._sessions: dict[str, _Session] = {}
        self._routes: list[tuple[str, re.Pattern, Callable[..., Any]]] = []
        self._register_routes()

    # -------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------

    def issue_token(self, user_id: str) -> str:
        """Create an access token for ``user_id`` (the sign-in step)."""
        token = secrets.token_urlsafe(24)
        with self._lock:
            self._tokens[token] = user_id
            self._teams.setdefault(user_id, _Team(user_id=user_id))
        return token

    def revoke_token(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def device(self, device_id: str) -> Device:
        """Server-side record of a device (inspection helper)."""
        return self._devices[device_id].model_copy()

    def team_key_version(self, user_id: str) -> int:
        return self._teams[user_id].key_version

    def envelopes_for(self, user_id: str, version: int) -> dict[str, str]:
        """All envelopes committed for one version (inspection helper)."""
        return dict(self._teams[user_id].envelopes.get(version, {}))

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------

    def dispatch(
        self,
        method: str,
        path: str,
        body: Optional[dict[str, Any]] = None,
        token: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Any:
        """Route one request.

        Returns:
            JSON-compatible response body.

        Raises:
            ApiError: Any rejection, with an HTTP status and error code.
        """
        with self._lock:
            user_id = self._tokens.get(token or "")
            if user_id is None:
                raise ApiError(401, "UNAUTHENTICATED", "Missing or invalid access token")
            for route_method, pattern, handler in self._routes:
                if route_method != method.upper():
                    continue
                match = pattern.fullmatch(path)
                if match:
                    request = _Request(user_id=user_id, device_id=device_id, body=body or {})
                    self._touch(request)
                    try:
                        return handler(request, **match.groupdict())
                    except ValidationError as exc:
                        raise ApiError(422, "INVALID_REQUEST", str(exc.errors()[:1])) from exc
                    except InvalidKey as exc:
                        raise ApiError(422, "INVALID_REQUEST", str(exc)) from exc
            raise ApiError(404, "NOT_FOUND", f"No route for {method} {path}")

    def httpx_handler(self, mount_path: str = "") -> Callable[[httpx.Request], httpx.Response]:
        """Adapt the relay to ``httpx.MockTransport``.

        Args:
            mount_path: URL path prefix the relay is mounted under.
        """

        def handle(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if mount_path and path.startswith(mount_path):
                path = path[len(mount_path):] or "/"
            auth = request.headers.get("Authorization", "")
            token = auth[len("Bearer "):] if auth.startswith("Bearer ") else None
            body = json.loads(request.content) if request.content else None
            try:
                result = self.dispatch(
                    request.method,
                    path,
                    body=body,
                    token=token,
                    device_id=request.headers.get("X-Device-Id"),
                )
            except ApiError as exc:
                return httpx.Response(exc.status_code, json=exc.to_body())
            return httpx.Response(200, json=result)

        return handle

    def _register_routes(self) -> None:
        table = [
            ("POST", r"/devices", self._register_device),
            ("GET", r"/devices", self._list_devices),
            ("GET", r"/devices/(?P<device_id>[^/]+)", self._get_device),
            ("PATCH", r"/devices/(?P<device_id>[^/]+)", self._rename_device),
            ("DELETE", r"/devices/(?P<device_id>[^/]+)", self._revoke_device),
            ("GET", r"/team/keys", self._key_status),
            ("POST", r"/team/keys/initialize", self._initialize_keys),
            ("POST", r"/team/keys/initialize/commit", self._commit_initialize),
            ("POST", r"/team/keys/rotate", self._rotate_keys),
            ("POST", r"/team/keys/rotate/commit", self._commit_rotate),
            ("GET", r"/team/keys/envelopes/(?P<device_id>[^/]+)", self._get_envelope),
            ("POST", r"/team/reset", self._reset_team),
            ("POST", r"/pairing", self._create_pairing),
            ("POST", r"/pairing/claim", self._claim_pairing),
            ("GET", r"/pairing/(?P<session_id>[^/]+)", self._get_pairing),
            ("POST", r"/pairing/(?P<session_id>[^/]+)/approve", self._approve_pairing),
            ("POST", r"/pairing/(?P<session_id>[^/]+)/complete", self._complete_pairing),
            ("POST", r"/pairing/(?P<session_id>[^/]+)/cancel", self._cancel_pairing),
            ("GET", r"/pairing/(?P<session_id>[^/]+)/messages", self._get_messages),
            ("POST", r"/pairing/(?P<session_id>[^/]+)/confirm", self._confirm_pairing),
        ]
        self._routes = [(m, re.compile(p), h) for m, p, h in table]

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    def _touch(self, request: _Request) -> None:
        device = self._devices.get(request.device_id or "")
        if device is not None and device.user_id == request.user_id:
            device.last_seen_at = self._clock()

    def _team(self, request: _Request) -> _Team:
        return self._teams.setdefault(request.user_id, _Team(user_id=request.user_id))

    def _user_device(self, request: _Request, device_id: Optional[str]) -> Device:
        device = self._devices.get(device_id or "")
        if device is None or device.user_id != request.user_id:
            raise ApiError(404, "DEVICE_NOT_FOUND", "Device not found")
        return device

    def _caller(self, request: _Request) -> Device:
        return self._user_device(request, request.device_id)

    def _trusted_caller(self, request: _Request) -> Device:
        device = self._caller(request)
        if device.trust_state != TrustState.TRUSTED:
            raise ApiError(403, "DEVICE_NOT_TRUSTED", "Device is not trusted")
        return device

    def _trusted_devices(self, user_id: str) -> list[Device]:
        return [
            d for d in self._devices.values()
            if d.user_id == user_id and d.trust_state == TrustState.TRUSTED
        ]

    def _summaries(self, user_id: str) -> list[dict]:
        return [
            TrustedDeviceSummary(
                id=d.id, name=d.name, platform=d.platform, last_seen_at=d.last_seen_at,
            ).to_wire()
            for d in self._trusted_devices(user_id)
        ]

    def _view(self, device: Device, request: _Request) -> dict:
        view = device.model_copy(update={"is_current": device.id == request.device_id})
        return view.to_wire()

    def _session(self, request: _Request, session_id: str) -> _Session:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != request.user_id:
            raise ApiError(404, "SESSION_INVALID", "Pairing session not found")
        self._expire_if_due(session)
        return session

    def _expire_if_due(self, session: _Session) -> None:
        if not session.status.is_terminal and self._clock() >= session.expires_at:
            session.status = PairingStatus.EXPIRED
            logger.info("Pairing session %s expired", session.session_id)

    @staticmethod
    def _require_live(session: _Session, *allowed: PairingStatus) -> None:
        if session.status == PairingStatus.EXPIRED:
            raise ApiError(410, "SESSION_EXPIRED", "Pairing session expired")
        if session.status == PairingStatus.CANCELED:
            raise ApiError(410, "SESSION_CANCELED", "Pairing session was canceled")
        if session.status not in allowed:
            raise ApiError(
                409, "SESSION_INVALID",
                f"Pairing session is {session.status.value}",
            )

    def _cancel_sessions(self, user_id: str, issuer_device_id: Optional[str] = None) -> None:
        for session in self._sessions.values():
            if session.user_id != user_id or session.status.is_terminal:
                continue
            if issuer_device_id and issuer_device_id not in (
                session.issuer_device_id, session.claimer_device_id,
            ):
                continue
            session.status = PairingStatus.CANCELED

    def _verify_commit(
        self, request: _Request, team: _Team, commit: KeyCommitRequest, kind: str,
    ) -> Device:
        pending = team.pending
        if pending is None or pending.kind != kind:
            raise ApiError(409, "INVALID_STATE", f"No {kind} in progress")
        if pending.device_id != commit.device_id or pending.device_id != request.device_id:
            raise ApiError(403, "INVALID_STATE", "Commit from a different device")
        if commit.key_version != pending.key_version:
            raise ApiError(409, "INVALID_STATE", "Key version does not match the challenge")
        for envelope in commit.envelopes:
            if envelope.key_version != commit.key_version:
                raise ApiError(422, "INVALID_REQUEST", "Envelope version mismatch")
        committer = self._devices[pending.device_id]
        hashes = [crypto.sha256_hex(crypto.b64decode(e.envelope)) for e in commit.envelopes]
        message = crypto.rotation_signing_message(commit.key_version, hashes, pending.challenge)
        try:
            crypto.verify(
                crypto.b64decode(committer.signing_public_key or ""),
                message,
                crypto.b64decode(commit.signature),
            )
        except (AuthenticationFailed, InvalidKey) as exc:
            raise ApiError(403, "AUTHENTICATION_FAILED", "Commit signature invalid") from exc
        return committer

    # -------------------------------------------------------------------
    # Devices
    # -------------------------------------------------------------------

    def _register_device(self, request: _Request) -> dict:
        body = request.body
        name = str(body.get("name") or "").strip()
        if not name:
            raise ApiError(422, "INVALID_REQUEST", "Device name is required")
        team = self._team(request)
        try:
            platform = DevicePlatform(body.get("platform", "unknown"))
        except ValueError:
            platform = DevicePlatform.UNKNOWN
        device = Device(
            id=crypto.generate_device_id(),
            user_id=request.user_id,
            name=name,
            platform=platform,
            app_version=body.get("appVersion"),
            encryption_public_key=body.get("encryptionPublicKey"),
            signing_public_key=body.get("signingPublicKey"),
            last_seen_at=self._clock(),
            created_at=self._clock(),
        )
        self._devices[device.id] = device

        if not team.active:
            mode = EnrollmentMode.BOOTSTRAP
        else:
            mode = EnrollmentMode.PAIR
        logger.info("Registered device %s (%s)", device.id, mode.value)
        return RegisterResult(
            device_id=device.id,
            trust_state=device.trust_state,
            trusted_key_version=None,
            mode=mode,
            server_key_version=team.key_version or None,
            trusted_devices=self._summaries(request.user_id),
        ).to_wire()

    def _list_devices(self, request: _Request) -> list[dict]:
        devices = [d for d in self._devices.values() if d.user_id == request.user_id]
        devices.sort(key=lambda d: d.created_at)
        return [self._view(d, request) for d in devices]

    def _get_device(self, request: _Request, device_id: str) -> dict:
        return self._view(self._user_device(request, device_id), request)

    def _rename_device(self, request: _Request, device_id: str) -> dict:
        device = self._user_device(request, device_id)
        name = str(request.body.get("name") or "").strip()
        if not name:
            raise ApiError(422, "INVALID_REQUEST", "Device name is required")
        device.name = name
        return self._view(device, request)

    def _revoke_device(self, request: _Request, device_id: str) -> dict:
        device = self._user_device(request, device_id)
        if device.trust_state == TrustState.REVOKED:
            return self._view(device, request)
        trusted = self._trusted_devices(request.user_id)
        if device.trust_state == TrustState.TRUSTED and len(trusted) == 1:
            raise ApiError(409, "LAST_TRUSTED_DEVICE", "Cannot revoke the last trusted device")
        device.trust_state = TrustState.REVOKED
        device.trusted_key_version = None
        device.revoked_at = self._clock()
        self._cancel_sessions(request.user_id, issuer_device_id=device.id)
        logger.info("Revoked device %s", device.id)
        return self._view(device, request)

    # -------------------------------------------------------------------
    # Team keys
    # -------------------------------------------------------------------

    def _key_status(self, request: _Request) -> dict:
        team = self._team(request)
        return KeyStatus(
            key_version=team.key_version if team.active else None,
            trusted_device_count=len(self._trusted_devices(request.user_id)),
            reset_at=team.reset_at,
        ).to_wire()

    def _initialize_keys(self, request: _Request) -> dict:
        team = self._team(request)
        device = self._caller(request)
        if team.active:
            trusted = self._trusted_devices(request.user_id)
            mode = EnrollmentMode.READY if device.trust_state == TrustState.TRUSTED else EnrollmentMode.PAIR
            return KeyChallenge(
                mode=mode, key_version=team.key_version, trusted_devices=trusted,
            ).to_wire()
        team.pending = _Challenge(
            kind="initialize",
            device_id=device.id,
            key_version=team.key_version + 1,
            challenge=secrets.token_hex(16),
        )
        return KeyChallenge(
            mode=EnrollmentMode.BOOTSTRAP,
            challenge=team.pending.challenge,
            key_version=team.pending.key_version,
            trusted_devices=[device],
        ).to_wire()

    def _commit_initialize(self, request: _Request) -> dict:
        team = self._team(request)
        commit = KeyCommitRequest.model_validate(request.body)
        if team.active:
            raise ApiError(409, "INVALID_STATE", "Team keys already initialized")
        committer = self._verify_commit(request, team, commit, "initialize")
        if [e.device_id for e in commit.envelopes] != [committer.id]:
            raise ApiError(422, "ENVELOPE_MISSING", "Bootstrap must wrap only the owner device")

        team.key_version = commit.key_version
        team.active = True
        team.pending = None
        team.envelopes[commit.key_version] = {committer.id: commit.envelopes[0].envelope}
        committer.trust_state = TrustState.TRUSTED
        committer.trusted_key_version = commit.key_version
        committer.revoked_at = None
        logger.info("Team keys initialized at v%d by %s", commit.key_version, committer.id)
        return KeyCommitResult(success=True, key_version=commit.key_version).to_wire()

    def _rotate_keys(self, request: _Request) -> dict:
        team = self._team(request)
        device = self._trusted_caller(request)
        if not team.active:
            raise ApiError(409, "INVALID_STATE", "Team keys not initialized")
        team.pending = _Challenge(
            kind="rotate",
            device_id=device.id,
            key_version=team.key_version + 1,
            challenge=secrets.token_hex(16),
        )
        return KeyChallenge(
            mode=EnrollmentMode.READY,
            challenge=team.pending.challenge,
            key_version=team.pending.key_version,
            trusted_devices=self._trusted_devices(request.user_id),
        ).to_wire()

    def _commit_rotate(self, request: _Request) -> dict:
        team = self._team(request)
        commit = KeyCommitRequest.model_validate(request.body)
        if commit.key_version != team.key_version + 1:
            raise ApiError(409, "INVALID_STATE", "Key versions must increase by one")
        self._verify_commit(request, team, commit, "rotate")

        trusted_ids = {d.id for d in self._trusted_devices(request.user_id)}
        envelope_ids = [e.device_id for e in commit.envelopes]
        if len(envelope_ids) != len(set(envelope_ids)):
            raise ApiError(422, "INVALID_REQUEST", "Duplicate envelope")
        missing = trusted_ids - set(envelope_ids)
        if missing:
            raise ApiError(
                422, "ENVELOPE_MISSING",
                f"Missing envelopes for {len(missing)} trusted device(s)",
            )
        extra = set(envelope_ids) - trusted_ids
        if extra:
            raise ApiError(422, "INVALID_REQUEST", "Envelope for a device that is not trusted")

        team.key_version = commit.key_version
        team.pending = None
        team.envelopes[commit.key_version] = {e.device_id: e.envelope for e in commit.envelopes}
        for device_id in envelope_ids:
            self._devices[device_id].trusted_key_version = commit.key_version
        logger.info(
            "Team keys rotated to v%d (%d envelopes)", commit.key_version, len(envelope_ids),
        )
        return KeyCommitResult(success=True, key_version=commit.key_version).to_wire()

    def _get_envelope(self, request: _Request, device_id: str) -> dict:
        team = self._team(request)
        device = self._user_device(request, device_id)
        if request.device_id != device_id:
            raise ApiError(403, "FORBIDDEN", "Envelopes are only delivered to their device")
        if device.trust_state != TrustState.TRUSTED or not team.active:
            raise ApiError(403, "DEVICE_NOT_TRUSTED", "Device is not trusted")
        envelope = team.envelopes.get(team.key_version, {}).get(device_id)
        if envelope is None:
            raise ApiError(404, "ENVELOPE_MISSING", "No envelope for the current version")
        return KeyEnvelope(
            device_id=device_id, key_version=team.key_version, envelope=envelope,
        ).to_wire()

    def _reset_team(self, request: _Request) -> dict:
        team = self._team(request)
        self._caller(request)
        team.active = False
        team.pending = None
        team.envelopes.clear()
        team.reset_at = self._clock()
        for device in self._devices.values():
            if device.user_id == request.user_id and device.trust_state == TrustState.TRUSTED:
                device.trust_state = TrustState.UNTRUSTED
                device.trusted_key_version = None
        self._cancel_sessions(request.user_id)
        logger.info("Team sync reset for %s", request.user_id)
        return KeyStatus(
            key_version=None, trusted_device_count=0, reset_at=team.reset_at,
        ).to_wire()

    # -------------------------------------------------------------------
    # Pairing: issuer
    # -------------------------------------------------------------------

    def _create_pairing(self, request: _Request) -> dict:
        team = self._team(request)
        issuer = self._trusted_caller(request)
        if not team.active:
            raise ApiError(409, "INVALID_STATE", "Team keys not initialized")
        code_hash = str(request.body.get("codeHash") or "")
        public_key = str(request.body.get("ephemeralPublicKey") or "")
        if len(code_hash) != 64:
            raise ApiError(422, "INVALID_REQUEST", "codeHash must be SHA-256 hex")
        try:
            crypto.b64decode(public_key)
        except InvalidKey as exc:
            raise ApiError(422, "INVALID_REQUEST", "ephemeralPublicKey must be base64") from exc

        self._cancel_sessions(request.user_id, issuer_device_id=issuer.id)
        session = _Session(
            session_id=secrets.token_hex(12),
            user_id=request.user_id,
            issuer_device_id=issuer.id,
            code_hash=code_hash,
            issuer_public_key=public_key,
            key_version=team.key_version,
            require_sas=self._require_sas,
            expires_at=self._clock() + self._ttl,
        )
        self._sessions[session.session_id] = session
        logger.info("Pairing session %s opened by %s", session.session_id, issuer.id)
        return CreatePairingResponse(
            session_id=session.session_id,
            expires_at=session.expires_at,
            key_version=session.key_version,
            require_sas=session.require_sas,
        ).to_wire()

    def _issuer_session(self, request: _Request, session_id: str) -> _Session:
        session = self._session(request, session_id)
        if request.device_id != session.issuer_device_id:
            raise ApiError(404, "SESSION_INVALID", "Pairing session not found")
        return session

    def _get_pairing(self, request: _Request, session_id: str) -> dict:
        session = self._issuer_session(request, session_id)
        return PairingSessionView(
            session_id=session.session_id,
            status=session.status,
            claimer_device_id=session.claimer_device_id,
            claimer_ephemeral_public_key=session.claimer_public_key,
            expires_at=session.expires_at,
        ).to_wire()

    def _approve_pairing(self, request: _Request, session_id: str) -> dict:
        session = self._issuer_session(request, session_id)
        self._require_live(session, PairingStatus.CLAIMED, PairingStatus.APPROVED)
        session.status = PairingStatus.APPROVED
        return {"success": True}

    def _complete_pairing(self, request: _Request, session_id: str) -> dict:
        session = self._issuer_session(request, session_id)
        allowed = (PairingStatus.APPROVED,) if session.require_sas else (
            PairingStatus.CLAIMED, PairingStatus.APPROVED,
        )
        self._require_live(session, *allowed)
        bundle = CompletePairingRequest.model_validate(request.body).bundle
        issuer = self._devices[session.issuer_device_id]
        if bundle.sender_device_id != issuer.id:
            raise ApiError(403, "AUTHENTICATION_FAILED", "Bundle sender mismatch")
        try:
            crypto.verify(
                crypto.b64decode(issuer.signing_public_key or ""),
                crypto.bundle_signing_message(
                    session.session_id, bundle.key_version, crypto.b64decode(bundle.ciphertext),
                ),
                crypto.b64decode(bundle.signature),
            )
        except (AuthenticationFailed, InvalidKey) as exc:
            raise ApiError(403, "AUTHENTICATION_FAILED", "Bundle signature invalid") from exc
        session.messages.append(bundle.to_wire())
        session.bundle_key_version = bundle.key_version
        session.status = PairingStatus.COMPLETED
        logger.info("Pairing session %s completed", session.session_id)
        return {"success": True}

    def _cancel_pairing(self, request: _Request, session_id: str) -> dict:
        session = self._session(request, session_id)
        if request.device_id not in (session.issuer_device_id, session.claimer_device_id):
            raise ApiError(404, "SESSION_INVALID", "Pairing session not found")
        if session.status == PairingStatus.COMPLETED:
            raise ApiError(409, "SESSION_INVALID", "Pairing session already completed")
        if session.status.is_terminal:
            return {"success": True}
        try:
            action = ControlAction(request.body.get("reason", ControlAction.CANCELED.value))
        except ValueError:
            action = ControlAction.CANCELED
        session.status = PairingStatus.CANCELED
        session.messages.append(
            ControlMessage(sender_device_id=request.device_id or "", action=action).to_wire()
        )
        logger.info("Pairing session %s canceled (%s)", session.session_id, action.value)
        return {"success": True}

    # -------------------------------------------------------------------
    # Pairing: claimer
    # -------------------------------------------------------------------

    def _claim_pairing(self, request: _Request) -> dict:
        claimer = self._caller(request)
        if claimer.trust_state == TrustState.TRUSTED:
            raise ApiError(409, "INVALID_STATE", "Device is already trusted")
        code = crypto.normalize_pairing_code(str(request.body.get("code") or ""))
        if len(code) != crypto.PAIRING_CODE_LENGTH:
            raise ApiError(422, "INVALID_CODE", "Pairing code must be 6 characters")
        public_key = str(request.body.get("ephemeralPublicKey") or "")
        try:
            crypto.b64decode(public_key)
        except InvalidKey as exc:
            raise ApiError(422, "INVALID_REQUEST", "ephemeralPublicKey must be base64") from exc

        code_hash = crypto.hash_pairing_code(code)
        candidates = [
            s for s in self._sessions.values()
            if s.user_id == request.user_id and secrets.compare_digest(s.code_hash, code_hash)
        ]
        if not candidates:
            raise ApiError(404, "SESSION_INVALID", "Invalid pairing code")
        session = max(candidates, key=lambda s: s.expires_at)
        self._expire_if_due(session)
        self._require_live(session, PairingStatus.OPEN)

        session.status = PairingStatus.CLAIMED
        session.claimer_device_id = claimer.id
        session.claimer_public_key = public_key
        logger.info("Pairing session %s claimed by %s", session.session_id, claimer.id)
        return ClaimPairingResponse(
            session_id=session.session_id,
            issuer_ephemeral_public_key=session.issuer_public_key,
            key_version=session.key_version,
            require_sas=session.require_sas,
            expires_at=session.expires_at,
        ).to_wire()

    def _claimer_session(self, request: _Request, session_id: str) -> _Session:
        session = self._session(request, session_id)
        if request.device_id != session.claimer_device_id:
            raise ApiError(404, "SESSION_INVALID", "Pairing session not found")
        return session

    def _get_messages(self, request: _Request, session_id: str) -> dict:
        session = self._claimer_session(request, session_id)
        return PairingMessagesResponse(
            session_status=session.status,
            messages=[dict(m) for m in session.messages],
        ).to_wire()

    def _confirm_pairing(self, request: _Request, session_id: str) -> dict:
        session = self._claimer_session(request, session_id)
        if session.status != PairingStatus.COMPLETED or session.bundle_key_version is None:
            self._require_live(session, PairingStatus.COMPLETED)
            raise ApiError(409, "SESSION_INVALID", "No key bundle delivered yet")
        team = self._team(request)
        if not team.active or session.bundle_key_version != team.key_version:
            raise ApiError(409, "INVALID_STATE", "Team key changed during pairing")
        claimer = self._devices[session.claimer_device_id or ""]
        claimer.trust_state = TrustState.TRUSTED
        claimer.trusted_key_version = session.bundle_key_version
        claimer.revoked_at = None
        logger.info("Device %s trusted at v%d", claimer.id, session.bundle_key_version)
        return ConfirmPairingResult(
            success=True, key_version=session.bundle_key_version,
        ).to_wire()
