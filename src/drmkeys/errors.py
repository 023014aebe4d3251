"""
Error taxonomy for session-based content-key delivery.

Every error is local and terminal for the call that raised it. Nothing in
this package retries: re-running a failed authentication with the same
inputs cannot succeed. Callers either re-run the handshake
(SessionExpired, HandshakeRejected) or abandon the asset fetch
(AuthenticationFailed).
"""


class KeyDeliveryError(Exception):
    """Base class for all key-delivery failures."""


class InvalidKeyLength(KeyDeliveryError, ValueError):
    """Key material does not have the length its type requires."""


class InvalidIvLength(KeyDeliveryError, ValueError):
    """AES-GCM IV is not exactly 12 bytes."""


class InvalidOutputLength(KeyDeliveryError, ValueError):
    """HKDF output length is outside the accepted bound."""


class HandshakeRejected(KeyDeliveryError):
    """Peer handshake material is malformed (bad length, encoding or point)."""


class AuthenticationFailed(KeyDeliveryError):
    """AES-GCM tag did not verify.

    Wrong key, wrong IV and tampered ciphertext all raise this same error.
    Do not add subclasses that tell them apart.
    """


class SessionExpired(KeyDeliveryError):
    """No live session key for this session id; a fresh handshake is needed."""


class EntitlementDenied(KeyDeliveryError):
    """The external entitlement gate refused this session/asset pair."""


class UnknownAsset(KeyDeliveryError, KeyError):
    """No envelope is registered for the requested asset id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return Exception.__str__(self)
