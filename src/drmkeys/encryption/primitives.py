"""
Cryptographic primitives for session-based key delivery.

Pure, stateless wrappers around the cryptography library. No I/O.

Supported algorithms:
- X25519: ephemeral ECDH key agreement
- HKDF-SHA256: key derivation from the shared secret
- AES-128/256-GCM: authenticated encryption of keys and asset bytes

Every function accepts raw bytes or the typed wrappers from
``drmkeys.encryption.keys``. Lengths are validated before any
cryptographic work is attempted, and library exceptions are translated
into the ``drmkeys.errors`` taxonomy.
"""

from typing import Tuple
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import (
    AuthenticationFailed,
    HandshakeRejected,
    InvalidIvLength,
    InvalidKeyLength,
    InvalidOutputLength,
)
from .keys import (
    CONTENT_KEY_SIZE,
    IV_SIZE,
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    ContentKey,
    KeyPair,
    PublicKey,
)

HASH_LENGTH = 32  # SHA-256
HKDF_MAX_OUTPUT = 1024  # well under 255 * HASH_LENGTH
AES_KEY_SIZES = (16, 32)


# ---------- randomness ----------

def random_bytes(length: int) -> bytes:
    """Return ``length`` bytes from the OS CSPRNG.

    Raises:
        ValueError: If length is not positive
    """
    if length <= 0:
        raise ValueError("Random byte length must be > 0")
    return os.urandom(length)


def generate_content_key() -> ContentKey:
    """Generate a fresh 128-bit content key for one asset."""
    return ContentKey(random_bytes(CONTENT_KEY_SIZE))


def generate_iv() -> bytes:
    """Generate a fresh 96-bit AES-GCM IV."""
    return random_bytes(IV_SIZE)


def generate_nonce() -> bytes:
    """Generate a 12-byte handshake nonce (HKDF salt)."""
    return random_bytes(NONCE_SIZE)


def constant_time_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(bytes(a), bytes(b))


# ---------- X25519 ----------

def generate_keypair() -> KeyPair:
    """Generate an ephemeral X25519 keypair.

    Returns:
        KeyPair holding the 32-byte raw public key and the private key handle
    """
    private_key = X25519PrivateKey.generate()
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return KeyPair(public_key=PublicKey(public_bytes), private_key=private_key)


def derive_shared_secret(peer_public_key, own_private_key: X25519PrivateKey) -> bytes:
    """Compute the X25519 shared secret with a peer.

    Args:
        peer_public_key: Peer's raw public key (32 bytes) or PublicKey
        own_private_key: Our private key handle from generate_keypair()

    Returns:
        32-byte shared secret

    Raises:
        InvalidKeyLength: If the peer key is not 32 bytes
        HandshakeRejected: If the peer key is a low-order point
    """
    peer_bytes = bytes(peer_public_key)
    if len(peer_bytes) != PUBLIC_KEY_SIZE:
        raise InvalidKeyLength(
            f"Peer public key must be {PUBLIC_KEY_SIZE} bytes, got {len(peer_bytes)}"
        )
    peer = X25519PublicKey.from_public_bytes(peer_bytes)
    try:
        return own_private_key.exchange(peer)
    except ValueError as e:
        # cryptography refuses an all-zero shared secret
        raise HandshakeRejected("Peer public key produced an invalid shared secret") from e


# ---------- HKDF ----------

def hkdf(ikm: bytes, salt: bytes, info, length: int) -> bytes:
    """Derive ``length`` bytes with HKDF-SHA256.

    Identical inputs always produce identical output.

    Args:
        ikm: Input key material (e.g. ECDH shared secret)
        salt: Salt (the session nonce for session keys)
        info: Context / protocol version tag, str or bytes
        length: Output length in bytes, 1..1024

    Returns:
        Derived key material

    Raises:
        InvalidOutputLength: If length is out of bounds
    """
    if not isinstance(length, int) or length < 1 or length > HKDF_MAX_OUTPUT:
        raise InvalidOutputLength(
            f"HKDF output length must be between 1 and {HKDF_MAX_OUTPUT}, got {length}"
        )
    if isinstance(info, str):
        info = info.encode("utf-8")
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=bytes(salt),
        info=bytes(info),
    ).derive(bytes(ikm))


# ---------- AES-GCM ----------

def _aesgcm(key) -> AESGCM:
    key_bytes = bytes(key)
    if len(key_bytes) not in AES_KEY_SIZES:
        raise InvalidKeyLength(
            f"AES-GCM key must be 16 or 32 bytes, got {len(key_bytes)}"
        )
    return AESGCM(key_bytes)


def _check_iv(iv) -> bytes:
    iv_bytes = bytes(iv)
    if len(iv_bytes) != IV_SIZE:
        raise InvalidIvLength(f"IV must be {IV_SIZE} bytes for AES-GCM, got {len(iv_bytes)}")
    return iv_bytes


def aes_gcm_encrypt(key, plaintext: bytes, iv: bytes,
                    associated_data: bytes = None) -> bytes:
    """Encrypt with AES-GCM.

    Args:
        key: 16- or 32-byte key
        plaintext: Data to encrypt
        iv: 12-byte IV, never reused with the same key
        associated_data: Optional additional authenticated data

    Returns:
        ciphertext || 16-byte tag
    """
    iv_bytes = _check_iv(iv)
    return _aesgcm(key).encrypt(iv_bytes, plaintext, associated_data)


def aes_gcm_decrypt(key, ciphertext: bytes, iv: bytes,
                    associated_data: bytes = None) -> bytes:
    """Decrypt and authenticate AES-GCM data.

    Args:
        key: Same key used during encryption
        ciphertext: ciphertext || tag
        iv: IV used during encryption
        associated_data: Same additional data as encryption

    Returns:
        Plaintext. Nothing is returned unless the tag verifies.

    Raises:
        AuthenticationFailed: Wrong key, wrong IV, or tampered data
    """
    iv_bytes = _check_iv(iv)
    cipher = _aesgcm(key)
    try:
        return cipher.decrypt(iv_bytes, ciphertext, associated_data)
    except InvalidTag as e:
        raise AuthenticationFailed("Authenticated decryption failed") from e


# ---------- key wrapping ----------

def wrap_key(kek, dek) -> Tuple[bytes, bytes]:
    """Wrap a 16-byte DEK under a KEK with a fresh random IV.

    Two wraps of the same DEK under the same KEK are unlinkable.

    Returns:
        Tuple of (wrapped_key, iv)

    Raises:
        InvalidKeyLength: If dek is not 16 bytes
    """
    dek_bytes = bytes(dek)
    if len(dek_bytes) != CONTENT_KEY_SIZE:
        raise InvalidKeyLength(f"DEK must be {CONTENT_KEY_SIZE} bytes, got {len(dek_bytes)}")
    iv = generate_iv()
    return aes_gcm_encrypt(kek, dek_bytes, iv), iv


def unwrap_key(kek, wrapped_key: bytes, iv: bytes) -> bytes:
    """Unwrap a DEK produced by wrap_key().

    Raises:
        AuthenticationFailed: If the wrap does not authenticate under kek
        InvalidKeyLength: If the unwrapped key is not 16 bytes
    """
    dek = aes_gcm_decrypt(kek, wrapped_key, iv)
    if len(dek) != CONTENT_KEY_SIZE:
        raise InvalidKeyLength(f"Unwrapped DEK is not {CONTENT_KEY_SIZE} bytes")
    return dek
