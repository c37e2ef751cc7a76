# Vault - Encryption Service
#
# Master password -> derived key (PBKDF2-HMAC-SHA256)
# Secret fields -> versioned AES-256-GCM envelopes
#
# Two derivations per master password, with different salts:
#   auth_salt       -> password_hash (login verifier, stored)
#   encryption_salt -> vault key     (never stored)
# so a leaked verifier cannot decrypt the vault.

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.config import KeywardConfig, MIN_PBKDF2_ITERATIONS, VALID_KEY_LENGTHS
from ..exceptions import (
    DerivationError,
    EpochMismatchError,
    IntegrityError,
    UnsupportedEnvelopeError,
)


def derive_key(password: str, salt: bytes, iterations: int, key_length: int) -> bytes:
    """
    Derive a symmetric key from a password and salt using PBKDF2-SHA256.

    Deterministic: the same inputs always give the same key.

    Raises:
        DerivationError: Empty password or salt, iterations below the
            floor, or an unsupported key length.
    """
    if not isinstance(password, str) or not password:
        raise DerivationError("Password must be a non-empty string")
    if not isinstance(salt, (bytes, bytearray)) or not salt:
        raise DerivationError("Salt must be non-empty bytes")
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise DerivationError(f"Iteration count below {MIN_PBKDF2_ITERATIONS}")
    if key_length not in VALID_KEY_LENGTHS:
        raise DerivationError(f"Key length must be one of {VALID_KEY_LENGTHS}")

    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=key_length,
            salt=bytes(salt),
            iterations=iterations,
        )
        return kdf.derive(password.encode("utf-8"))
    except (ValueError, TypeError, UnicodeEncodeError) as e:
        raise DerivationError(f"Key derivation failed: {e}") from e


@dataclass
class Credentials:
    """Everything a master password produces for one epoch."""

    password_hash: bytes
    auth_salt: bytes
    encryption_salt: bytes
    encryption_key: bytes


class KeyDerivation:
    """
    Derives keys with the iteration count and key length fixed by config.

    Callers cannot pass their own parameters, which rules out downgrade
    by request.
    """

    def __init__(self, config: KeywardConfig):
        self.iterations = config.pbkdf2_iterations
        self.key_length = config.key_length
        self.salt_length = config.salt_length

    def derive(self, password: str, salt: bytes) -> bytes:
        return derive_key(password, salt, self.iterations, self.key_length)

    def generate_salt(self) -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(self.salt_length)

    def new_credentials(self, password: str) -> Credentials:
        """Fresh salts and both derivations for a new epoch."""
        auth_salt = self.generate_salt()
        encryption_salt = self.generate_salt()
        while hmac.compare_digest(auth_salt, encryption_salt):
            encryption_salt = self.generate_salt()

        return Credentials(
            password_hash=self.derive(password, auth_salt),
            auth_salt=auth_salt,
            encryption_salt=encryption_salt,
            encryption_key=self.derive(password, encryption_salt),
        )


# ── Envelope ─────────────────────────────────────────────────────────
#
# Binary layout, version 1 (must stay stable so old records decrypt):
#
#   offset  size  field
#   0       1     version tag (0x01 = AES-256-GCM)
#   1       8     key id: HMAC-SHA256(key, KEY_ID_LABEL)[:8]
#   9       12    nonce
#   21      n+16  ciphertext || GCM tag
#
# The 9-byte header is the GCM associated data. Stored as base64 text.

ENVELOPE_V1 = 0x01
KEY_ID_LENGTH = 8
NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)
TAG_LENGTH = 16
HEADER_LENGTH = 1 + KEY_ID_LENGTH
MIN_ENVELOPE_LENGTH = HEADER_LENGTH + NONCE_LENGTH + TAG_LENGTH
KEY_ID_LABEL = b"keyward-key-id-v1"


def key_id(key: bytes) -> bytes:
    """Short public fingerprint of a vault key, one per epoch."""
    return hmac.new(key, KEY_ID_LABEL, hashlib.sha256).digest()[:KEY_ID_LENGTH]


@dataclass(frozen=True)
class Envelope:
    version: int
    key_id: bytes
    nonce: bytes
    ciphertext: bytes

    @property
    def header(self) -> bytes:
        return bytes([self.version]) + self.key_id

    def to_bytes(self) -> bytes:
        return self.header + self.nonce + self.ciphertext

    def encode(self) -> str:
        """Base64 text for database storage."""
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Envelope":
        if len(data) < MIN_ENVELOPE_LENGTH:
            raise UnsupportedEnvelopeError("Envelope is truncated")
        version = data[0]
        if version != ENVELOPE_V1:
            raise UnsupportedEnvelopeError(f"Unknown envelope version {version}")
        return cls(
            version=version,
            key_id=data[1:HEADER_LENGTH],
            nonce=data[HEADER_LENGTH:HEADER_LENGTH + NONCE_LENGTH],
            ciphertext=data[HEADER_LENGTH + NONCE_LENGTH:],
        )

    @classmethod
    def decode(cls, text: str) -> "Envelope":
        try:
            data = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
            raise UnsupportedEnvelopeError("Envelope is not valid base64") from e
        return cls.from_bytes(data)


class SecretCodec:
    """
    Encrypts and decrypts single secret fields with a derived vault key.

    Decryption fails loudly: tampering, a wrong key or a key from another
    epoch all raise IntegrityError (or a subclass), never garbage.
    """

    @staticmethod
    def encrypt(plaintext: str, key: bytes) -> Envelope:
        """
        Encrypt plaintext using AES-256-GCM.

        Args:
            plaintext: Password or secret to encrypt
            key: Derived vault key

        Returns:
            Envelope; call .encode() for storage
        """
        # Generate random nonce (must be unique per encryption)
        nonce = os.urandom(NONCE_LENGTH)
        header = bytes([ENVELOPE_V1]) + key_id(key)

        aesgcm = AESGCM(key)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), header)

        return Envelope(
            version=ENVELOPE_V1,
            key_id=header[1:],
            nonce=nonce,
            ciphertext=ciphertext,
        )

    @staticmethod
    def decrypt(envelope: Union[Envelope, str, bytes], key: bytes) -> str:
        """
        Decrypt an envelope.

        Raises:
            UnsupportedEnvelopeError: Malformed data or unknown version
            EpochMismatchError: Envelope was sealed under a different key
            IntegrityError: Authentication tag check failed
        """
        if isinstance(envelope, str):
            envelope = Envelope.decode(envelope)
        elif isinstance(envelope, (bytes, bytearray)):
            envelope = Envelope.from_bytes(bytes(envelope))

        if not hmac.compare_digest(envelope.key_id, key_id(key)):
            raise EpochMismatchError("Envelope was encrypted under a different key epoch")

        aesgcm = AESGCM(key)
        try:
            plaintext = aesgcm.decrypt(envelope.nonce, envelope.ciphertext, envelope.header)
        except InvalidTag as e:
            raise IntegrityError("Envelope failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError("Decrypted payload is not UTF-8") from e
