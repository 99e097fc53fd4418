"""
Pydantic models for devices, keys, and pairing.

Wire payloads use camelCase aliases (``populate_by_name`` keeps the
snake_case names usable in Python). Secret fields are excluded from
serialization and repr so a stray ``model_dump()`` or log line can
never carry key material.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for anything that crosses the REST boundary."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        """Dump with camelCase keys, JSON-safe values."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------

class TrustState(str, Enum):
    """Whether a device holds the team key."""

    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    REVOKED = "revoked"


class DevicePlatform(str, Enum):
    """Platforms a device may report."""

    IOS = "ios"
    ANDROID = "android"
    MACOS = "macos"
    WINDOWS = "windows"
    LINUX = "linux"
    SERVER = "server"
    UNKNOWN = "unknown"


class EnrollmentMode(str, Enum):
    """What the server expects a freshly registered device to do next."""

    BOOTSTRAP = "BOOTSTRAP"
    PAIR = "PAIR"
    READY = "READY"


class Device(WireModel):
    """A device in the sync group, as the server reports it."""

    id: str
    user_id: str
    name: str
    platform: DevicePlatform = DevicePlatform.UNKNOWN
    trust_state: TrustState = TrustState.UNTRUSTED
    trusted_key_version: Optional[int] = None
    last_seen_at: Optional[datetime] = None
    is_current: bool = False
    encryption_public_key: Optional[str] = Field(default=None, description="base64 X25519")
    signing_public_key: Optional[str] = Field(default=None, description="base64 Ed25519")
    app_version: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_trusted(self) -> bool:
        return self.trust_state == TrustState.TRUSTED


class TrustedDeviceSummary(WireModel):
    """Short description of a device that can act as pairing issuer."""

    id: str
    name: str
    platform: DevicePlatform = DevicePlatform.UNKNOWN
    last_seen_at: Optional[datetime] = None


class RegisterResult(WireModel):
    """Outcome of registering this device."""

    device_id: str
    trust_state: TrustState
    trusted_key_version: Optional[int] = None
    mode: EnrollmentMode
    server_key_version: Optional[int] = None
    trusted_devices: list[TrustedDeviceSummary] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Team keys
# ---------------------------------------------------------------------------

class KeyStatus(WireModel):
    """Server view of the team key."""

    key_version: Optional[int] = None
    trusted_device_count: int = 0
    reset_at: Optional[datetime] = None

    @property
    def initialized(self) -> bool:
        return bool(self.key_version)


class KeyChallenge(WireModel):
    """Phase 1 of initialize/rotate: what the commit must bind to."""

    mode: EnrollmentMode = EnrollmentMode.BOOTSTRAP
    challenge: str = ""
    key_version: int
    trusted_devices: list[Device] = Field(default_factory=list)


class KeyEnvelope(WireModel):
    """One root-key version sealed to one device's public key."""

    device_id: str
    key_version: int
    envelope: str = Field(description="base64 sealed root key")


class KeyCommitRequest(WireModel):
    """Phase 2: all envelopes for a version plus a signature over them."""

    device_id: str
    key_version: int
    envelopes: list[KeyEnvelope]
    signature: str


class KeyCommitResult(WireModel):
    success: bool
    key_version: int


# ---------------------------------------------------------------------------
# Pairing
# ---------------------------------------------------------------------------

class PairingStatus(str, Enum):
    """Server-side pairing session lifecycle."""

    OPEN = "open"
    CLAIMED = "claimed"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (PairingStatus.COMPLETED, PairingStatus.CANCELED, PairingStatus.EXPIRED)


class PairingSession(BaseModel):
    """Issuer-held pairing state. Lives in memory for one flow only."""

    session_id: str
    code: str = Field(repr=False, exclude=True)
    code_hash: str
    ephemeral_public_key: bytes
    ephemeral_secret_key: bytes = Field(repr=False, exclude=True)
    expires_at: datetime
    key_version: int
    require_sas: bool = True
    status: PairingStatus = PairingStatus.OPEN
    claimer_device_id: Optional[str] = None
    claimer_public_key: Optional[bytes] = None
    session_key: Optional[bytes] = Field(default=None, repr=False, exclude=True)
    sas: Optional[str] = Field(default=None, repr=False, exclude=True)
    sas_confirmed: bool = False

    @property
    def is_claimed(self) -> bool:
        return self.session_key is not None


class ClaimerSession(BaseModel):
    """Claimer-held pairing state. Lives in memory for one flow only."""

    session_id: str
    issuer_public_key: bytes
    ephemeral_public_key: bytes
    session_key: bytes = Field(repr=False, exclude=True)
    sas: str = Field(repr=False, exclude=True)
    key_version: int
    require_sas: bool = True
    expires_at: datetime
    status: PairingStatus = PairingStatus.CLAIMED


class CreatePairingResponse(WireModel):
    session_id: str
    expires_at: datetime
    key_version: int
    require_sas: bool = True


class PairingSessionView(WireModel):
    """What ``GET /pairing/{id}`` returns to the issuer."""

    session_id: str
    status: PairingStatus
    claimer_device_id: Optional[str] = None
    claimer_ephemeral_public_key: Optional[str] = None
    expires_at: datetime


class ClaimPairingResponse(WireModel):
    session_id: str
    issuer_ephemeral_public_key: str
    key_version: int
    require_sas: bool = True
    expires_at: datetime


class KeyBundlePayload(BaseModel):
    """Plaintext of the encrypted key bundle."""

    format_version: Literal[1] = 1
    root_key: str = Field(repr=False, description="base64 root key")
    key_version: int
    issued_at: datetime = Field(default_factory=utcnow)


class KeyBundleMessage(WireModel):
    """Issuer → claimer: the root key under the pairing session key."""

    payload_type: Literal["key_bundle_v1"] = "key_bundle_v1"
    sender_device_id: str
    key_version: int
    ciphertext: str
    signature: str


class ControlAction(str, Enum):
    CANCELED = "canceled"
    SAS_REJECTED = "sas_rejected"


class ControlMessage(WireModel):
    """Out-of-band control signal carried in the pairing mailbox."""

    payload_type: Literal["control"] = "control"
    sender_device_id: str
    action: ControlAction


PairingMessage = Annotated[
    Union[KeyBundleMessage, ControlMessage],
    Field(discriminator="payload_type"),
]

PAIRING_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(PairingMessage)


class PairingMessagesResponse(WireModel):
    session_status: PairingStatus
    messages: list[dict] = Field(default_factory=list)


class CompletePairingRequest(WireModel):
    bundle: KeyBundleMessage


class ConfirmPairingResult(WireModel):
    success: bool
    key_version: int


# ---------------------------------------------------------------------------
# Local identity (secret store contents)
# ---------------------------------------------------------------------------

class SyncIdentity(BaseModel):
    """Everything this device keeps in its secret store.

    Attributes:
        version: Storage format version.
        device_id: Server-assigned device id (None before registration).
        encryption_secret_key / encryption_public_key: base64 X25519 pair.
        signing_secret_key / signing_public_key: base64 Ed25519 pair.
        root_key: base64 current team root key.
        key_version: Version of ``root_key``.
    """

    version: int = 1
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    encryption_secret_key: Optional[str] = Field(default=None, repr=False)
    encryption_public_key: Optional[str] = None
    signing_secret_key: Optional[str] = Field(default=None, repr=False)
    signing_public_key: Optional[str] = None
    root_key: Optional[str] = Field(default=None, repr=False)
    key_version: Optional[int] = None

    @property
    def has_device_keys(self) -> bool:
        return bool(self.encryption_secret_key and self.signing_secret_key)

    @property
    def has_root_key(self) -> bool:
        return bool(self.root_key) and self.key_version is not None
