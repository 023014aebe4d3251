"""
Fixed-length key material types.

Each type validates its length at construction so that a malformed key is
rejected before it ever reaches a cipher call. All types support ``bytes()``
and are accepted wherever the primitive layer takes raw bytes. Secret types
never print their contents.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from ..errors import InvalidIvLength, InvalidKeyLength

CONTENT_KEY_SIZE = 16
SESSION_KEY_SIZE = 32
MASTER_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 32
NONCE_SIZE = 12
IV_SIZE = 12


def _as_bytes(value) -> bytes:
    # bytes(int) would silently build a zero-filled buffer
    if isinstance(value, int):
        raise TypeError("Key material must be bytes-like, not int")
    return bytes(value)


@dataclass(frozen=True)
class ContentKey:
    """Per-asset data encryption key (AES-128)."""

    raw: bytes = field(repr=False)

    def __post_init__(self):
        object.__setattr__(self, "raw", _as_bytes(self.raw))
        if len(self.raw) != CONTENT_KEY_SIZE:
            raise InvalidKeyLength(
                f"Content key must be {CONTENT_KEY_SIZE} bytes, got {len(self.raw)}"
            )

    def __bytes__(self) -> bytes:
        return self.raw

    def __repr__(self) -> str:
        return "ContentKey(<redacted>)"


@dataclass(frozen=True)
class SessionKey:
    """Per-session key encryption key (AES-256), derived via ECDH + HKDF."""

    raw: bytes = field(repr=False)

    def __post_init__(self):
        object.__setattr__(self, "raw", _as_bytes(self.raw))
        if len(self.raw) != SESSION_KEY_SIZE:
            raise InvalidKeyLength(
                f"Session key must be {SESSION_KEY_SIZE} bytes, got {len(self.raw)}"
            )

    def __bytes__(self) -> bytes:
        return self.raw

    def __repr__(self) -> str:
        return "SessionKey(<redacted>)"


@dataclass(frozen=True)
class PublicKey:
    """Raw X25519 public key."""

    raw: bytes

    def __post_init__(self):
        object.__setattr__(self, "raw", _as_bytes(self.raw))
        if len(self.raw) != PUBLIC_KEY_SIZE:
            raise InvalidKeyLength(
                f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(self.raw)}"
            )

    def __bytes__(self) -> bytes:
        return self.raw

    def to_base64(self) -> str:
        return base64.b64encode(self.raw).decode("ascii")


@dataclass(frozen=True)
class Nonce:
    """Server handshake nonce, used as the HKDF salt."""

    raw: bytes

    def __post_init__(self):
        object.__setattr__(self, "raw", _as_bytes(self.raw))
        if len(self.raw) != NONCE_SIZE:
            raise InvalidIvLength(
                f"Session nonce must be {NONCE_SIZE} bytes, got {len(self.raw)}"
            )

    def __bytes__(self) -> bytes:
        return self.raw


@dataclass(frozen=True)
class KeyPair:
    """Ephemeral X25519 keypair.

    The private half is kept as an opaque ``cryptography`` handle; it is
    never serialised.
    """

    public_key: PublicKey
    private_key: X25519PrivateKey = field(repr=False, compare=False)
