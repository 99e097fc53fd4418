"""
Sync transports -- how requests reach the sync server.

Each transport knows how to deliver one authenticated JSON request.
``SyncApiClient`` sits on top and knows the command surface.

HTTP:  httpx.AsyncClient against the configured server.
Local: in-process dispatch to a ``SyncRelay`` (tests, offline use).

The access token comes from the secret store on every request; a
missing token fails with NO_ACCESS_TOKEN before anything is sent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

import httpx

from .errors import ApiError, SyncError, SyncErrorCode
from .models import (
    ClaimPairingResponse,
    CompletePairingRequest,
    ConfirmPairingResult,
    ControlAction,
    CreatePairingResponse,
    Device,
    DevicePlatform,
    KeyBundleMessage,
    KeyChallenge,
    KeyCommitRequest,
    KeyCommitResult,
    KeyEnvelope,
    KeyStatus,
    PairingMessagesResponse,
    PairingSessionView,
    RegisterResult,
)
from .secret_store import ACCESS_TOKEN_KEY, SecretStore

if TYPE_CHECKING:
    from .relay import SyncRelay

logger = logging.getLogger("sklink.transport")


class Transport(ABC):
    """Abstract authenticated JSON transport."""

    def __init__(self, secret_store: SecretStore) -> None:
        self._secret_store = secret_store

    def access_token(self) -> str:
        """Current access token.

        Raises:
            SyncError: NO_ACCESS_TOKEN when the user is not signed in.
        """
        token = self._secret_store.get_secret(ACCESS_TOKEN_KEY)
        if not token:
            raise SyncError(SyncErrorCode.NO_ACCESS_TOKEN, "No access token. Please sign in first.")
        return token

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises:
            ApiError: The server rejected the request.
            SyncError: NO_ACCESS_TOKEN.
            httpx.TransportError: Network failure (HTTP only).
        """

    async def aclose(self) -> None:
        """Release any underlying connections."""


class HttpTransport(Transport):
    """REST over httpx.

    Args:
        base_url: Server API root, e.g. ``https://sync.example/api/v1``.
        secret_store: Where the access token lives.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        secret_store: SecretStore,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(secret_store)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self.access_token()}"}
        if device_id:
            headers["X-Device-Id"] = device_id
        logger.debug("%s %s", method, path)
        response = await self._client.request(method, path, json=json_body, headers=headers)
        if response.status_code >= 400:
            raise self._api_error(response)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _api_error(response: httpx.Response) -> ApiError:
        code, message = "HTTP_ERROR", response.reason_phrase
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = str(body.get("code") or code)
            message = str(body.get("message") or message)
        return ApiError(response.status_code, code, message)

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalTransport(Transport):
    """In-process transport to a ``SyncRelay``.

    Bodies are round-tripped through JSON so nothing but wire-safe
    data ever crosses, and each request yields to the event loop the
    way a network call would.
    """

    def __init__(self, relay: "SyncRelay", secret_store: SecretStore) -> None:
        super().__init__(secret_store)
        self._relay = relay

    async def request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        device_id: Optional[str] = None,
    ) -> Any:
        token = self.access_token()
        await asyncio.sleep(0)
        body = json.loads(json.dumps(json_body)) if json_body is not None else None
        result = self._relay.dispatch(method, path, body=body, token=token, device_id=device_id)
        return json.loads(json.dumps(result))


class SyncApiClient:
    """Typed wrapper around every sync server command.

    Args:
        transport: Delivery mechanism.
        device_id: This device's server id, sent as ``X-Device-Id``.
            Set by the registry once the device is registered.
    """

    def __init__(self, transport: Transport, device_id: Optional[str] = None) -> None:
        self.transport = transport
        self.device_id = device_id

    async def _call(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        return await self.transport.request(method, path, json_body=body, device_id=self.device_id)

    # -- devices -----------------------------------------------------------

    async def register_device(
        self,
        name: str,
        platform: DevicePlatform,
        app_version: Optional[str],
        encryption_public_key: str,
        signing_public_key: str,
    ) -> RegisterResult:
        data = await self._call("POST", "/devices", {
            "name": name,
            "platform": platform.value,
            "appVersion": app_version,
            "encryptionPublicKey": encryption_public_key,
            "signingPublicKey": signing_public_key,
        })
        return RegisterResult.model_validate(data)

    async def list_devices(self) -> list[Device]:
        data = await self._call("GET", "/devices")
        return [Device.model_validate(d) for d in data or []]

    async def get_device(self, device_id: str) -> Device:
        return Device.model_validate(await self._call("GET", f"/devices/{device_id}"))

    async def rename_device(self, device_id: str, name: str) -> Device:
        data = await self._call("PATCH", f"/devices/{device_id}", {"name": name})
        return Device.model_validate(data)

    async def revoke_device(self, device_id: str) -> Device:
        return Device.model_validate(await self._call("DELETE", f"/devices/{device_id}"))

    # -- team keys -----------------------------------------------------------

    async def get_key_status(self) -> KeyStatus:
        return KeyStatus.model_validate(await self._call("GET", "/team/keys"))

    async def initialize_keys(self) -> KeyChallenge:
        data = await self._call("POST", "/team/keys/initialize", {"deviceId": self.device_id})
        return KeyChallenge.model_validate(data)

    async def commit_initialize_keys(self, commit: KeyCommitRequest) -> KeyCommitResult:
        data = await self._call("POST", "/team/keys/initialize/commit", commit.to_wire())
        return KeyCommitResult.model_validate(data)

    async def rotate_keys(self) -> KeyChallenge:
        data = await self._call("POST", "/team/keys/rotate", {"deviceId": self.device_id})
        return KeyChallenge.model_validate(data)

    async def commit_rotate_keys(self, commit: KeyCommitRequest) -> KeyCommitResult:
        data = await self._call("POST", "/team/keys/rotate/commit", commit.to_wire())
        return KeyCommitResult.model_validate(data)

    async def get_envelope(self, device_id: str) -> KeyEnvelope:
        data = await self._call("GET", f"/team/keys/envelopes/{device_id}")
        return KeyEnvelope.model_validate(data)

    async def reset_team(self) -> KeyStatus:
        return KeyStatus.model_validate(await self._call("POST", "/team/reset", {}))

    # -- pairing: issuer -------------------------------------------------------

    async def create_pairing(self, code_hash: str, ephemeral_public_key: str) -> CreatePairingResponse:
        data = await self._call("POST", "/pairing", {
            "codeHash": code_hash,
            "ephemeralPublicKey": ephemeral_public_key,
        })
        return CreatePairingResponse.model_validate(data)

    async def get_pairing(self, session_id: str) -> PairingSessionView:
        return PairingSessionView.model_validate(await self._call("GET", f"/pairing/{session_id}"))

    async def approve_pairing(self, session_id: str) -> None:
        await self._call("POST", f"/pairing/{session_id}/approve", {})

    async def complete_pairing(self, session_id: str, bundle: KeyBundleMessage) -> None:
        request = CompletePairingRequest(bundle=bundle)
        await self._call("POST", f"/pairing/{session_id}/complete", request.to_wire())

    async def cancel_pairing(
        self, session_id: str, reason: ControlAction = ControlAction.CANCELED,
    ) -> None:
        await self._call("POST", f"/pairing/{session_id}/cancel", {"reason": reason.value})

    # -- pairing: claimer ------------------------------------------------------

    async def claim_pairing(self, code: str, ephemeral_public_key: str) -> ClaimPairingResponse:
        data = await self._call("POST", "/pairing/claim", {
            "code": code,
            "ephemeralPublicKey": ephemeral_public_key,
        })
        return ClaimPairingResponse.model_validate(data)

    async def get_pairing_messages(self, session_id: str) -> PairingMessagesResponse:
        data = await self._call("GET", f"/pairing/{session_id}/messages")
        return PairingMessagesResponse.model_validate(data)

    async def confirm_pairing(self, session_id: str) -> ConfirmPairingResult:
        data = await self._call("POST", f"/pairing/{session_id}/confirm", {})
        return ConfirmPairingResult.model_validate(data)
