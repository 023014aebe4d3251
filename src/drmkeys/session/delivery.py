"""
Re-wrapping of content keys for transport to one playback session.

Server side (deliver_key):
    1. Unwrap the content key from its at-rest envelope with the master key
    2. Re-wrap it under the session key with a fresh IV
    3. Zero the transient plaintext key buffer (best effort, see deliver_key)
    4. Return the wrapped key and its IV

Client side (receive_key) is the inverse unwrap. A delivery wrap is valid
for one request only; every call produces a new IV and ciphertext.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..encryption import primitives
from ..encryption.envelope import EnvelopeWrappedKey, MasterKeyCustody, decrypt_content_key
from ..encryption.keys import ContentKey, SessionKey


@dataclass(frozen=True)
class DeliveredKey:
    wrapped_key: bytes
    iv: bytes


def deliver_key(session_kek: SessionKey, envelope_wrapped_dek: EnvelopeWrappedKey,
                master_key: MasterKeyCustody) -> DeliveredKey:
    """Move a content key from its envelope to a session wrap.

    Raises:
        AuthenticationFailed: The envelope does not open under master_key
    """
    # Only this bytearray is cleared. The immutable bytes held by the
    # ContentKey returned from the envelope stay until garbage collected.
    dek = bytearray(decrypt_content_key(master_key, envelope_wrapped_dek).raw)
    try:
        wrapped, iv = primitives.wrap_key(session_kek, dek)
    finally:
        dek[:] = bytes(len(dek))
    return DeliveredKey(wrapped_key=wrapped, iv=iv)


def receive_key(session_kek: SessionKey, wrapped_delivery_key: bytes,
                delivery_iv: bytes) -> ContentKey:
    """Unwrap a delivered content key with the client's session key."""
    return ContentKey(primitives.unwrap_key(session_kek, wrapped_delivery_key, delivery_iv))
