"""
Tests for key derivation and the secret envelope codec.

Covers: PBKDF2 determinism and salt sensitivity, parameter rejection,
separate auth/vault salts, AES-GCM round trip, envelope layout, and
tamper detection on every bit of an envelope.
"""

import base64

import pytest

from keyward.core.config import KeywardConfig
from keyward.exceptions import (
    DerivationError,
    EpochMismatchError,
    IntegrityError,
    UnsupportedEnvelopeError,
)
from keyward.vault.encryption import (
    ENVELOPE_V1,
    HEADER_LENGTH,
    NONCE_LENGTH,
    TAG_LENGTH,
    Envelope,
    KeyDerivation,
    SecretCodec,
    derive_key,
    key_id,
)


@pytest.fixture
def derivation(config):
    return KeyDerivation(config)


@pytest.fixture
def key(derivation):
    return derivation.derive("Correct-Horse-42-Battery", b"\x01" * 32)


# ===================================================================
# TestKeyDerivation
# ===================================================================


class TestKeyDerivation:

    def test_deterministic(self, derivation):
        salt = derivation.generate_salt()
        assert derivation.derive("pw-one", salt) == derivation.derive("pw-one", salt)

    def test_salt_sensitive(self, derivation):
        assert derivation.derive("pw-one", b"a" * 32) != derivation.derive("pw-one", b"b" * 32)

    def test_password_sensitive(self, derivation):
        salt = b"s" * 32
        assert derivation.derive("pw-one", salt) != derivation.derive("pw-two", salt)

    def test_key_length_from_config(self, tmp_path):
        config = KeywardConfig(pbkdf2_iterations=10_000, key_length=16)
        assert len(KeyDerivation(config).derive("pw", b"s" * 32)) == 16

    def test_generate_salt_length_and_randomness(self, derivation):
        a, b = derivation.generate_salt(), derivation.generate_salt()
        assert len(a) == 32
        assert a != b

    def test_empty_password_rejected(self, derivation):
        with pytest.raises(DerivationError):
            derivation.derive("", b"s" * 32)

    def test_empty_salt_rejected(self, derivation):
        with pytest.raises(DerivationError):
            derivation.derive("pw", b"")

    def test_non_string_password_rejected(self, derivation):
        with pytest.raises(DerivationError):
            derivation.derive(b"bytes-password", b"s" * 32)

    def test_iterations_below_floor_rejected(self):
        with pytest.raises(DerivationError):
            derive_key("pw", b"s" * 32, iterations=1_000, key_length=32)

    def test_unsupported_key_length_rejected(self):
        with pytest.raises(DerivationError):
            derive_key("pw", b"s" * 32, iterations=10_000, key_length=20)

    def test_new_credentials_use_distinct_salts(self, derivation):
        creds = derivation.new_credentials("Correct-Horse-42-Battery")
        assert creds.auth_salt != creds.encryption_salt
        # The stored verifier must not be the vault key
        assert creds.password_hash != creds.encryption_key
        assert creds.password_hash == derivation.derive("Correct-Horse-42-Battery", creds.auth_salt)
        assert creds.encryption_key == derivation.derive("Correct-Horse-42-Battery", creds.encryption_salt)

    def test_new_credentials_fresh_each_time(self, derivation):
        a = derivation.new_credentials("Correct-Horse-42-Battery")
        b = derivation.new_credentials("Correct-Horse-42-Battery")
        assert a.encryption_salt != b.encryption_salt
        assert a.encryption_key != b.encryption_key


# ===================================================================
# TestSecretCodec
# ===================================================================


class TestSecretCodec:

    @pytest.mark.parametrize("plaintext", ["hunter2", "", "pässwörd 🔑", "x" * 4096])
    def test_round_trip(self, key, plaintext):
        envelope = SecretCodec.encrypt(plaintext, key)
        assert SecretCodec.decrypt(envelope, key) == plaintext

    def test_round_trip_through_storage_text(self, key):
        stored = SecretCodec.encrypt("hunter2", key).encode()
        assert isinstance(stored, str)
        assert SecretCodec.decrypt(stored, key) == "hunter2"

    def test_round_trip_through_bytes(self, key):
        raw = SecretCodec.encrypt("hunter2", key).to_bytes()
        assert SecretCodec.decrypt(raw, key) == "hunter2"

    def test_envelope_layout(self, key):
        raw = SecretCodec.encrypt("hunter2", key).to_bytes()
        assert raw[0] == ENVELOPE_V1
        assert raw[1:HEADER_LENGTH] == key_id(key)
        assert len(raw) == HEADER_LENGTH + NONCE_LENGTH + len("hunter2") + TAG_LENGTH

    def test_nonce_unique_per_encryption(self, key):
        a = SecretCodec.encrypt("same", key)
        b = SecretCodec.encrypt("same", key)
        assert a.nonce != b.nonce
        assert a.ciphertext != b.ciphertext

    def test_plaintext_not_in_envelope(self, key):
        stored = SecretCodec.encrypt("very-recognisable-secret", key).encode()
        assert b"very-recognisable-secret" not in base64.b64decode(stored)

    def test_wrong_key_fails_explicitly(self, key, derivation):
        other = derivation.derive("Correct-Horse-42-Battery", b"\x02" * 32)
        envelope = SecretCodec.encrypt("hunter2", key)
        with pytest.raises(EpochMismatchError):
            SecretCodec.decrypt(envelope, other)

    def test_every_bit_flip_detected(self, key):
        raw = bytearray(SecretCodec.encrypt("hunter2", key).to_bytes())
        for byte_index in range(len(raw)):
            for bit in range(8):
                tampered = bytearray(raw)
                tampered[byte_index] ^= 1 << bit
                with pytest.raises(IntegrityError):
                    SecretCodec.decrypt(bytes(tampered), key)

    def test_ciphertext_flip_is_integrity_error(self, key):
        raw = bytearray(SecretCodec.encrypt("hunter2", key).to_bytes())
        raw[-1] ^= 0x01
        with pytest.raises(IntegrityError) as exc_info:
            SecretCodec.decrypt(bytes(raw), key)
        assert type(exc_info.value) is IntegrityError

    def test_unknown_version_rejected(self, key):
        raw = bytearray(SecretCodec.encrypt("hunter2", key).to_bytes())
        raw[0] = 0x7F
        with pytest.raises(UnsupportedEnvelopeError):
            SecretCodec.decrypt(bytes(raw), key)

    def test_truncated_envelope_rejected(self, key):
        raw = SecretCodec.encrypt("hunter2", key).to_bytes()
        with pytest.raises(UnsupportedEnvelopeError):
            SecretCodec.decrypt(raw[:HEADER_LENGTH + NONCE_LENGTH], key)

    def test_invalid_base64_rejected(self, key):
        with pytest.raises(UnsupportedEnvelopeError):
            SecretCodec.decrypt("not base64 at all!", key)

    def test_envelope_decode_round_trip(self, key):
        envelope = SecretCodec.encrypt("hunter2", key)
        assert Envelope.decode(envelope.encode()) == envelope
