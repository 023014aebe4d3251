"""Envelope encryption of per-asset content keys under the operator master key.

This is the at-rest protection, applied once at ingest:
- A content key (DEK) is encrypted by the master-key custody capability
- Only the wrapped form is ever persisted alongside the asset metadata
- Master-key rotation re-wraps at rest without touching any live session

The master key is consumed only through ``MasterKeyCustody``
(encrypt/decrypt of opaque bytes). ``LocalMasterKey`` is an in-process
implementation backed by a 32-byte key from the environment; a hosted KMS
can be dropped in behind the same protocol.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from ..errors import AuthenticationFailed, InvalidKeyLength
from . import primitives
from .keys import IV_SIZE, MASTER_KEY_SIZE, ContentKey

LOGGER = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
KEY_ID_SIZE = 8
DEFAULT_MASTER_KEY_ENV = "KMS_MASTER_KEY"

# Custody blob layout (LocalMasterKey):
# key_id (8) | iv (12) | ciphertext || tag


class MasterKeyCustody(Protocol):
    """Opaque master-key capability held by the operator's key boundary."""

    key_id: str

    def encrypt(self, plaintext: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes) -> bytes: ...


class LocalMasterKey:
    """AES-256-GCM master key held in process memory."""

    def __init__(self, key: bytes):
        key = bytes(key)
        if len(key) != MASTER_KEY_SIZE:
            raise InvalidKeyLength(
                f"Master key must be {MASTER_KEY_SIZE} bytes, got {len(key)}"
            )
        self._key = key
        self._key_id = hashlib.sha256(b"drmkeys-master-key-id" + key).digest()[:KEY_ID_SIZE]

    @property
    def key_id(self) -> str:
        return self._key_id.hex()

    def encrypt(self, plaintext: bytes) -> bytes:
        iv = primitives.generate_iv()
        ct = primitives.aes_gcm_encrypt(self._key, plaintext, iv, associated_data=self._key_id)
        return self._key_id + iv + ct

    def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) < KEY_ID_SIZE + IV_SIZE:
            raise AuthenticationFailed("Authenticated decryption failed")
        key_id = ciphertext[:KEY_ID_SIZE]
        if not primitives.constant_time_equal(key_id, self._key_id):
            raise AuthenticationFailed("Authenticated decryption failed")
        iv = ciphertext[KEY_ID_SIZE:KEY_ID_SIZE + IV_SIZE]
        return primitives.aes_gcm_decrypt(
            self._key, ciphertext[KEY_ID_SIZE + IV_SIZE:], iv, associated_data=self._key_id
        )

    def __repr__(self) -> str:
        return f"LocalMasterKey(key_id={self.key_id!r})"


class MasterKeyRing:
    """Several master keys: the current one encrypts, any known one decrypts.

    Rotation only affects at-rest envelopes. Session keys are derived
    independently and never need re-deriving when the master key changes.
    """

    def __init__(self, current: LocalMasterKey, retired: Optional[list] = None):
        self._keys: Dict[str, LocalMasterKey] = {}
        for key in retired or []:
            self._keys[key.key_id] = key
        self._keys[current.key_id] = current
        self._current = current

    @property
    def key_id(self) -> str:
        return self._current.key_id

    @property
    def known_key_ids(self) -> list:
        return sorted(self._keys)

    def rotate(self, new_key: LocalMasterKey) -> None:
        """Make ``new_key`` current; previous keys keep decrypting."""
        self._keys[new_key.key_id] = new_key
        self._current = new_key
        LOGGER.info("Master key rotated; current key id %s", new_key.key_id)

    def retire(self, key_id: str) -> None:
        if key_id == self._current.key_id:
            raise ValueError("Cannot retire the current master key")
        self._keys.pop(key_id, None)

    def encrypt(self, plaintext: bytes) -> bytes:
        return self._current.encrypt(plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        key_id = bytes(ciphertext[:KEY_ID_SIZE]).hex()
        key = self._keys.get(key_id)
        if key is None:
            # Unknown key id is reported exactly like a bad tag
            raise AuthenticationFailed("Authenticated decryption failed")
        return key.decrypt(ciphertext)


@dataclass(frozen=True)
class EnvelopeWrappedKey:
    """Persisted form of a content key: version byte + custody ciphertext."""

    ciphertext: bytes
    version: int = ENVELOPE_VERSION

    def to_bytes(self) -> bytes:
        return bytes([self.version]) + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EnvelopeWrappedKey":
        if not data:
            raise ValueError("Empty envelope")
        version = data[0]
        if version != ENVELOPE_VERSION:
            raise ValueError(f"Unsupported envelope version: {version}")
        return cls(ciphertext=bytes(data[1:]), version=version)

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_base64(cls, value: str) -> "EnvelopeWrappedKey":
        try:
            raw = base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"Envelope is not valid base64: {e}") from e
        return cls.from_bytes(raw)


def encrypt_content_key(master_key: MasterKeyCustody, dek) -> EnvelopeWrappedKey:
    """Envelope-wrap a content key for at-rest storage.

    Args:
        master_key: Master-key custody capability
        dek: ContentKey (or 16 raw bytes)

    Returns:
        EnvelopeWrappedKey, the only form that may be persisted
    """
    content_key = dek if isinstance(dek, ContentKey) else ContentKey(dek)
    return EnvelopeWrappedKey(ciphertext=master_key.encrypt(bytes(content_key)))


def decrypt_content_key(master_key: MasterKeyCustody,
                        wrapped: EnvelopeWrappedKey) -> ContentKey:
    """Recover a content key from its envelope.

    Raises:
        AuthenticationFailed: Wrong master key or tampered envelope
        ValueError: Unsupported envelope version
    """
    if wrapped.version != ENVELOPE_VERSION:
        raise ValueError(f"Unsupported envelope version: {wrapped.version}")
    return ContentKey(master_key.decrypt(wrapped.ciphertext))


def rewrap_content_key(old_master: MasterKeyCustody, new_master: MasterKeyCustody,
                       wrapped: EnvelopeWrappedKey) -> EnvelopeWrappedKey:
    """Move an envelope from one master key to another (rotation)."""
    dek = decrypt_content_key(old_master, wrapped)
    return encrypt_content_key(new_master, dek)


def generate_master_key() -> str:
    """Generate a new base64-encoded 32-byte master key (initial setup only)."""
    return base64.b64encode(primitives.random_bytes(MASTER_KEY_SIZE)).decode("ascii")


def load_master_key_from_env(var: str = DEFAULT_MASTER_KEY_ENV) -> LocalMasterKey:
    """Load the master key from a base64 environment variable.

    Raises:
        ValueError: If the variable is missing, not base64, or not 32 bytes
    """
    value = os.getenv(var)
    if not value:
        raise ValueError(
            f"{var} environment variable is not set. "
            "Generate one with: drmkeys generate-master-key"
        )
    try:
        key = base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid {var} format. Expected base64-encoded 32 bytes: {e}") from e
    if len(key) != MASTER_KEY_SIZE:
        raise ValueError(f"{var} must decode to {MASTER_KEY_SIZE} bytes, got {len(key)}")
    master = LocalMasterKey(key)
    LOGGER.debug("Loaded master key %s from %s", master.key_id, var)
    return master
