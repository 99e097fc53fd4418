"""
SKLink crypto engine — the primitives every other layer stands on.

X25519 for key agreement, HKDF-SHA256 for derivation, ChaCha20-Poly1305
for authenticated encryption, Ed25519 for signatures. Everything here
is synchronous, stateless, and works on raw bytes; base64 only appears
at the wire boundary via ``b64encode``/``b64decode``.

Derivation contexts (HKDF info strings):
    sklink-dek                  data encryption key per root-key version
    sklink-session-pairing      pairing session key
    sklink-session-envelope     device key envelope wrapping key
    sklink-sas                  short authentication string

Usage:
    pair = generate_keypair()
    shared = compute_shared_secret(pair.secret_key, their_public)
    key = derive_session_key(shared, "pairing")
    blob = encrypt(key, b"root key bundle")
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import AuthenticationFailed, InvalidKey

logger = logging.getLogger("sklink.crypto")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SAS_DIGITS = 6
PAIRING_CODE_LENGTH = 6
# No 0/O or 1/I: codes are read aloud and typed by hand.
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

DEK_INFO = b"sklink-dek"
SESSION_INFO_PREFIX = "sklink-session"
SAS_INFO = b"sklink-sas"

PAIRING_CONTEXT = "pairing"
ENVELOPE_CONTEXT = "envelope"
SESSION_CONTEXTS = frozenset({PAIRING_CONTEXT, ENVELOPE_CONTEXT})


@dataclass(frozen=True)
class KeyPair:
    """An X25519 key-agreement keypair (raw 32-byte encodings)."""

    public_key: bytes
    secret_key: bytes = field(repr=False)


@dataclass(frozen=True)
class DeviceKeys:
    """Long-term device identity.

    The encryption pair receives key envelopes; the signing pair
    authenticates rotations and pairing bundles.
    """

    encryption: KeyPair
    signing_public_key: bytes
    signing_secret_key: bytes = field(repr=False)

    @classmethod
    def generate(cls) -> "DeviceKeys":
        """Create a fresh device identity."""
        signer = Ed25519PrivateKey.generate()
        return cls(
            encryption=generate_keypair(),
            signing_public_key=signer.public_key().public_bytes_raw(),
            signing_secret_key=signer.private_bytes_raw(),
        )


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def b64encode(raw: bytes) -> str:
    """Standard base64 for the wire."""
    return base64.b64encode(raw).decode("ascii")


def b64decode(data: str) -> bytes:
    """Decode standard base64, raising InvalidKey on garbage."""
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as exc:
        raise InvalidKey(f"Invalid base64 encoding: {exc}") from exc


def sha256_hex(data: bytes) -> str:
    """SHA-256 hex digest."""
    return hashlib.sha256(data).hexdigest()


def _require_length(raw: bytes, length: int, what: str) -> bytes:
    if not isinstance(raw, (bytes, bytearray)) or len(raw) != length:
        got = len(raw) if isinstance(raw, (bytes, bytearray)) else type(raw).__name__
        raise InvalidKey(f"{what} must be {length} bytes, got {got}")
    return bytes(raw)


def _hkdf(material: bytes, info: bytes, length: int = KEY_SIZE, salt: bytes | None = None) -> bytes:
    """Derive key bytes using HKDF-SHA256."""
    hkdf = HKDF(algorithm=SHA256(), length=length, salt=salt, info=info)
    return hkdf.derive(material)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def generate_root_key() -> bytes:
    """Generate a fresh 32-byte team root key."""
    return secrets.token_bytes(KEY_SIZE)


def derive_data_encryption_key(root_key: bytes, version: int) -> bytes:
    """Derive the data encryption key for one root-key version.

    The version goes into the HKDF salt, so every rotation yields an
    unrelated DEK even if the root key were reused.

    Args:
        root_key: 32-byte root key.
        version: Root-key version (>= 1).

    Returns:
        32-byte data encryption key.

    Raises:
        InvalidKey: Root key has the wrong length.
        ValueError: Version is not positive.
    """
    _require_length(root_key, KEY_SIZE, "Root key")
    if version < 1:
        raise ValueError(f"Key version must be >= 1, got {version}")
    return _hkdf(root_key, DEK_INFO, salt=f"v{version}".encode())


def generate_keypair() -> KeyPair:
    """Generate an X25519 keypair."""
    secret = X25519PrivateKey.generate()
    return KeyPair(
        public_key=secret.public_key().public_bytes_raw(),
        secret_key=secret.private_bytes_raw(),
    )


def compute_shared_secret(our_secret: bytes, their_public: bytes) -> bytes:
    """X25519 Diffie-Hellman.

    Raises:
        InvalidKey: Either key is malformed, or the peer key is a
            low-order point (all-zero shared secret).
    """
    _require_length(our_secret, KEY_SIZE, "Secret key")
    _require_length(their_public, KEY_SIZE, "Public key")
    try:
        private = X25519PrivateKey.from_private_bytes(our_secret)
        public = X25519PublicKey.from_public_bytes(their_public)
        shared = private.exchange(public)
    except ValueError as exc:
        raise InvalidKey(f"Key agreement failed: {exc}") from exc
    if shared == bytes(KEY_SIZE):
        raise InvalidKey("Key agreement produced a low-order result")
    return shared


def derive_session_key(shared_secret: bytes, context: str) -> bytes:
    """Derive a session key bound to one protocol context.

    Args:
        shared_secret: ECDH output.
        context: ``"pairing"`` or ``"envelope"``.

    Raises:
        ValueError: Unknown context.
        InvalidKey: Shared secret has the wrong length.
    """
    if context not in SESSION_CONTEXTS:
        raise ValueError(f"Unknown session context: {context!r}")
    _require_length(shared_secret, KEY_SIZE, "Shared secret")
    info = f"{SESSION_INFO_PREFIX}-{context}".encode()
    return _hkdf(shared_secret, info)


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------

def encrypt(key: bytes, plaintext: bytes, associated_data: bytes | None = None) -> bytes:
    """Encrypt with ChaCha20-Poly1305.

    Returns:
        ``nonce(12) || ciphertext || tag(16)``.
    """
    _require_length(key, KEY_SIZE, "Key")
    nonce = secrets.token_bytes(NONCE_SIZE)
    return nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, associated_data)


def decrypt(key: bytes, ciphertext: bytes, associated_data: bytes | None = None) -> bytes:
    """Decrypt a blob produced by ``encrypt``.

    Raises:
        AuthenticationFailed: Tag mismatch, wrong key, or truncated
            input. No plaintext is released.
        InvalidKey: Key has the wrong length.
    """
    _require_length(key, KEY_SIZE, "Key")
    if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise AuthenticationFailed("Ciphertext too short")
    nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, body, associated_data)
    except InvalidTag as exc:
        raise AuthenticationFailed("Decryption failed: invalid key or corrupted data") from exc


# ---------------------------------------------------------------------------
# Envelopes & signatures
# ---------------------------------------------------------------------------

def envelope_binding(device_id: str, key_version: int) -> bytes:
    """Associated data tying an envelope to its recipient and version."""
    return f"sklink-envelope:{device_id}:v{key_version}".encode()


def seal_envelope(recipient_public: bytes, plaintext: bytes, binding: bytes = b"") -> bytes:
    """Encrypt to a device's long-term X25519 public key.

    A throwaway keypair is generated per envelope; its public half is
    prepended so the recipient can redo the agreement. ``binding`` is
    authenticated with the ciphertext (see ``envelope_binding``).

    Returns:
        ``ephemeral_public(32) || nonce || ciphertext || tag``.
    """
    ephemeral = generate_keypair()
    shared = compute_shared_secret(ephemeral.secret_key, recipient_public)
    wrap_key = derive_session_key(shared, ENVELOPE_CONTEXT)
    return ephemeral.public_key + encrypt(
        wrap_key, plaintext, associated_data=recipient_public + binding,
    )


def open_envelope(recipient: KeyPair, envelope: bytes, binding: bytes = b"") -> bytes:
    """Decrypt an envelope sealed to ``recipient``.

    Raises:
        AuthenticationFailed: The envelope was not sealed for this key,
            was sealed with a different ``binding``, or was tampered with.
    """
    if len(envelope) < KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise AuthenticationFailed("Envelope too short")
    shared = compute_shared_secret(recipient.secret_key, envelope[:KEY_SIZE])
    wrap_key = derive_session_key(shared, ENVELOPE_CONTEXT)
    return decrypt(
        wrap_key, envelope[KEY_SIZE:], associated_data=recipient.public_key + binding,
    )


def sign(signing_secret: bytes, message: bytes) -> bytes:
    """Ed25519 signature."""
    _require_length(signing_secret, KEY_SIZE, "Signing key")
    return Ed25519PrivateKey.from_private_bytes(signing_secret).sign(message)


def verify(signing_public: bytes, message: bytes, signature: bytes) -> None:
    """Verify an Ed25519 signature.

    Raises:
        AuthenticationFailed: Signature does not match.
        InvalidKey: Public key is malformed.
    """
    _require_length(signing_public, KEY_SIZE, "Verification key")
    try:
        Ed25519PublicKey.from_public_bytes(signing_public).verify(signature, message)
    except InvalidSignature as exc:
        raise AuthenticationFailed("Signature verification failed") from exc
    except ValueError as exc:
        raise InvalidKey(f"Invalid verification key: {exc}") from exc


def rotation_signing_message(version: int, envelope_hashes: list[str], challenge: str) -> bytes:
    """Canonical bytes signed when committing a root-key version.

    Hashes are sorted so envelope order never changes the signature.
    """
    return f"sklink:keys:v{version}:{challenge}:{','.join(sorted(envelope_hashes))}".encode()


def bundle_signing_message(session_id: str, key_version: int, ciphertext: bytes) -> bytes:
    """Canonical bytes signed over a pairing key bundle."""
    return f"sklink:pairing:{session_id}:v{key_version}:".encode() + ciphertext


# ---------------------------------------------------------------------------
# Pairing helpers
# ---------------------------------------------------------------------------

def generate_pairing_code() -> str:
    """Six random characters from an unambiguous uppercase alphabet."""
    return "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))


def normalize_pairing_code(code: str) -> str:
    """Uppercase and strip everything that is not ASCII alphanumeric."""
    return "".join(c for c in code.upper() if c.isascii() and c.isalnum())


def is_complete_pairing_code(code: str) -> bool:
    """True when the normalized code has exactly six characters."""
    return len(normalize_pairing_code(code)) == PAIRING_CODE_LENGTH


def hash_pairing_code(code: str) -> str:
    """SHA-256 hex of the normalized code. Only this goes to the server."""
    return sha256_hex(normalize_pairing_code(code).encode())


def compute_sas(shared_secret: bytes) -> str:
    """Six-digit short authentication string from the post-ECDH secret.

    Both honest sides compute the same digits; a MITM holding two
    different shared secrets shows two different numbers.
    """
    _require_length(shared_secret, KEY_SIZE, "Shared secret")
    raw = _hkdf(shared_secret, SAS_INFO, length=4)
    return f"{int.from_bytes(raw, 'big') % 10 ** SAS_DIGITS:0{SAS_DIGITS}d}"


def generate_device_id() -> str:
    """Opaque unique device identifier."""
    return str(uuid.uuid4())
