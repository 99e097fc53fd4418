"""Tests for sklink.crypto — key agreement, AEAD, envelopes, SAS.

Covers the primitives every higher layer relies on: X25519 agreement,
HKDF session/DEK derivation, ChaCha20-Poly1305 with AAD, sealed
envelopes, Ed25519 signatures, and the pairing code helpers.
"""

from __future__ import annotations

import pytest

from sklink import crypto
from sklink.errors import AuthenticationFailed, InvalidKey


@pytest.fixture
def pair_secret() -> tuple[bytes, bytes]:
    """Shared secret computed from both sides of one agreement."""
    a = crypto.generate_keypair()
    b = crypto.generate_keypair()
    return (
        crypto.compute_shared_secret(a.secret_key, b.public_key),
        crypto.compute_shared_secret(b.secret_key, a.public_key),
    )


# ---------------------------------------------------------------------------
# Key agreement
# ---------------------------------------------------------------------------


class TestKeyAgreement:
    """X25519 agreement and session key derivation."""

    def test_both_sides_agree(self, pair_secret) -> None:
        """Both parties derive the same shared secret."""
        ours, theirs = pair_secret
        assert ours == theirs
        assert len(ours) == crypto.KEY_SIZE

    def test_session_keys_match_per_context(self, pair_secret) -> None:
        ours, theirs = pair_secret
        assert crypto.derive_session_key(ours, "pairing") == crypto.derive_session_key(theirs, "pairing")

    def test_contexts_are_separated(self, pair_secret) -> None:
        """The same secret yields different keys for pairing and envelopes."""
        shared, _ = pair_secret
        assert crypto.derive_session_key(shared, "pairing") != crypto.derive_session_key(shared, "envelope")

    def test_unknown_context_rejected(self, pair_secret) -> None:
        with pytest.raises(ValueError):
            crypto.derive_session_key(pair_secret[0], "chat")

    def test_low_order_public_key_rejected(self) -> None:
        """An all-zero peer key must not produce a usable secret."""
        ours = crypto.generate_keypair()
        with pytest.raises(InvalidKey):
            crypto.compute_shared_secret(ours.secret_key, bytes(32))

    def test_wrong_length_key_rejected(self) -> None:
        ours = crypto.generate_keypair()
        with pytest.raises(InvalidKey):
            crypto.compute_shared_secret(ours.secret_key, b"short")

    def test_third_party_gets_different_secret(self) -> None:
        a = crypto.generate_keypair()
        mallory = crypto.generate_keypair()
        b = crypto.generate_keypair()
        assert crypto.compute_shared_secret(a.secret_key, mallory.public_key) != (
            crypto.compute_shared_secret(b.secret_key, mallory.public_key)
        )


# ---------------------------------------------------------------------------
# Data encryption keys
# ---------------------------------------------------------------------------


class TestDataEncryptionKey:
    """Per-version DEK derivation."""

    def test_deterministic(self) -> None:
        root = crypto.generate_root_key()
        assert crypto.derive_data_encryption_key(root, 1) == crypto.derive_data_encryption_key(root, 1)

    def test_versions_differ(self) -> None:
        root = crypto.generate_root_key()
        assert crypto.derive_data_encryption_key(root, 1) != crypto.derive_data_encryption_key(root, 2)

    def test_version_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            crypto.derive_data_encryption_key(crypto.generate_root_key(), 0)

    def test_root_key_length_checked(self) -> None:
        with pytest.raises(InvalidKey):
            crypto.derive_data_encryption_key(b"\x00" * 16, 1)


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------


class TestAead:
    """ChaCha20-Poly1305 encrypt/decrypt."""

    def test_decrypts_with_same_key_and_aad(self) -> None:
        key = crypto.generate_root_key()
        blob = crypto.encrypt(key, b"root key bundle", associated_data=b"session-1")
        assert crypto.decrypt(key, blob, associated_data=b"session-1") == b"root key bundle"

    def test_nonce_is_fresh(self) -> None:
        key = crypto.generate_root_key()
        assert crypto.encrypt(key, b"same") != crypto.encrypt(key, b"same")

    def test_wrong_key_fails(self) -> None:
        blob = crypto.encrypt(crypto.generate_root_key(), b"secret")
        with pytest.raises(AuthenticationFailed):
            crypto.decrypt(crypto.generate_root_key(), blob)

    def test_wrong_aad_fails(self) -> None:
        """Ciphertext bound to one session cannot be replayed into another."""
        key = crypto.generate_root_key()
        blob = crypto.encrypt(key, b"secret", associated_data=b"session-1")
        with pytest.raises(AuthenticationFailed):
            crypto.decrypt(key, blob, associated_data=b"session-2")

    def test_tampered_ciphertext_fails(self) -> None:
        key = crypto.generate_root_key()
        blob = bytearray(crypto.encrypt(key, b"secret"))
        blob[-1] ^= 0x01
        with pytest.raises(AuthenticationFailed):
            crypto.decrypt(key, bytes(blob))

    def test_truncated_ciphertext_fails(self) -> None:
        with pytest.raises(AuthenticationFailed):
            crypto.decrypt(crypto.generate_root_key(), b"\x00" * 10)


# ---------------------------------------------------------------------------
# Envelopes and signatures
# ---------------------------------------------------------------------------


class TestEnvelopes:
    """Root keys sealed to a device's long-term key."""

    def test_recipient_opens(self) -> None:
        device = crypto.DeviceKeys.generate()
        root = crypto.generate_root_key()
        sealed = crypto.seal_envelope(device.encryption.public_key, root)
        assert crypto.open_envelope(device.encryption, sealed) == root

    def test_other_device_cannot_open(self) -> None:
        owner = crypto.DeviceKeys.generate()
        other = crypto.DeviceKeys.generate()
        sealed = crypto.seal_envelope(owner.encryption.public_key, crypto.generate_root_key())
        with pytest.raises(AuthenticationFailed):
            crypto.open_envelope(other.encryption, sealed)

    def test_short_envelope_fails(self) -> None:
        device = crypto.DeviceKeys.generate()
        with pytest.raises(AuthenticationFailed):
            crypto.open_envelope(device.encryption, b"\x01" * 20)

    def test_binding_must_match(self) -> None:
        """An envelope opens only for the device and version it was sealed for."""
        device = crypto.DeviceKeys.generate()
        root = crypto.generate_root_key()
        sealed = crypto.seal_envelope(
            device.encryption.public_key, root, crypto.envelope_binding("dev-1", 2),
        )
        assert crypto.open_envelope(
            device.encryption, sealed, crypto.envelope_binding("dev-1", 2),
        ) == root
        for binding in (crypto.envelope_binding("dev-1", 3), crypto.envelope_binding("dev-2", 2), b""):
            with pytest.raises(AuthenticationFailed):
                crypto.open_envelope(device.encryption, sealed, binding)


class TestSignatures:
    """Ed25519 signing over canonical messages."""

    def test_sign_and_verify(self) -> None:
        device = crypto.DeviceKeys.generate()
        message = crypto.bundle_signing_message("sid", 3, b"ciphertext")
        signature = crypto.sign(device.signing_secret_key, message)
        crypto.verify(device.signing_public_key, message, signature)

    def test_other_key_rejected(self) -> None:
        signer = crypto.DeviceKeys.generate()
        other = crypto.DeviceKeys.generate()
        signature = crypto.sign(signer.signing_secret_key, b"message")
        with pytest.raises(AuthenticationFailed):
            crypto.verify(other.signing_public_key, b"message", signature)

    def test_rotation_message_ignores_envelope_order(self) -> None:
        assert crypto.rotation_signing_message(2, ["b", "a"], "c") == (
            crypto.rotation_signing_message(2, ["a", "b"], "c")
        )

    def test_rotation_message_binds_challenge(self) -> None:
        assert crypto.rotation_signing_message(2, ["a"], "c1") != (
            crypto.rotation_signing_message(2, ["a"], "c2")
        )


# ---------------------------------------------------------------------------
# Pairing code and SAS
# ---------------------------------------------------------------------------


class TestPairingCode:
    """Code generation, normalization, hashing."""

    def test_generated_code_shape(self) -> None:
        for _ in range(50):
            code = crypto.generate_pairing_code()
            assert len(code) == crypto.PAIRING_CODE_LENGTH
            assert set(code) <= set(crypto.PAIRING_CODE_ALPHABET)

    def test_alphabet_has_no_ambiguous_characters(self) -> None:
        for ch in "01IO":
            assert ch not in crypto.PAIRING_CODE_ALPHABET

    def test_normalize(self) -> None:
        assert crypto.normalize_pairing_code(" ab-12 cd ") == "AB12CD"

    def test_is_complete(self) -> None:
        assert crypto.is_complete_pairing_code("ab12cd")
        assert not crypto.is_complete_pairing_code("ab12c")
        assert not crypto.is_complete_pairing_code("ab12cde")

    def test_hash_is_case_insensitive(self) -> None:
        assert crypto.hash_pairing_code("ab12cd") == crypto.hash_pairing_code("AB-12-CD")

    def test_hash_does_not_contain_code(self) -> None:
        digest = crypto.hash_pairing_code("AB12CD")
        assert len(digest) == 64
        assert "AB12CD" not in digest


class TestSas:
    """Short authentication string."""

    def test_both_sides_match(self, pair_secret) -> None:
        ours, theirs = pair_secret
        assert crypto.compute_sas(ours) == crypto.compute_sas(theirs)

    def test_six_digits(self, pair_secret) -> None:
        sas = crypto.compute_sas(pair_secret[0])
        assert len(sas) == 6
        assert sas.isdigit()

    def test_different_secrets_differ(self) -> None:
        """Two independent agreements essentially never collide."""
        values = {crypto.compute_sas(crypto.generate_root_key()) for _ in range(20)}
        assert len(values) > 1
