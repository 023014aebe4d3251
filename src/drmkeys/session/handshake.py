"""
Single round-trip ephemeral ECDH handshake that yields a session key.

Flow:
    INIT         client generates an ephemeral keypair, sends its public key
    NEGOTIATED   server generates its own keypair and a 12-byte nonce,
                 computes ECDH + HKDF, returns (server public key, nonce)
    ESTABLISHED  client runs the same ECDH + HKDF and holds the identical key
    EXPIRED      the key was discarded; a fresh handshake is required

Session key = HKDF-SHA256(ikm=ECDH shared secret, salt=nonce,
info=KEK_INFO, length=32). KEK_INFO is a protocol version tag: any change
to the derivation must bump it so old and new keys can never collide.

Forward secrecy comes from discarding both ephemeral private keys once the
session key exists.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..encryption import primitives
from ..encryption.keys import (
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    SESSION_KEY_SIZE,
    KeyPair,
    Nonce,
    PublicKey,
    SessionKey,
)
from ..errors import HandshakeRejected, InvalidIvLength, InvalidKeyLength, SessionExpired

LOGGER = logging.getLogger(__name__)

KEK_INFO = "session-kek-v1"


class HandshakeState(enum.Enum):
    INIT = "init"
    NEGOTIATED = "negotiated"
    ESTABLISHED = "established"
    EXPIRED = "expired"


def _validate_public_key(raw, who: str) -> PublicKey:
    try:
        return raw if isinstance(raw, PublicKey) else PublicKey(raw)
    except (InvalidKeyLength, TypeError) as e:
        raise HandshakeRejected(f"{who} public key must be {PUBLIC_KEY_SIZE} bytes") from e


def _validate_nonce(raw) -> Nonce:
    try:
        return raw if isinstance(raw, Nonce) else Nonce(raw)
    except (InvalidIvLength, TypeError) as e:
        raise HandshakeRejected(f"Server nonce must be {NONCE_SIZE} bytes") from e


def derive_session_key(shared_secret: bytes, nonce, info: str = KEK_INFO) -> SessionKey:
    """Derive the 32-byte session key from an ECDH secret and the server nonce."""
    return SessionKey(primitives.hkdf(shared_secret, bytes(nonce), info, SESSION_KEY_SIZE))


@dataclass(frozen=True)
class NegotiatedSession:
    """Server-side result of one handshake."""

    server_public_key: PublicKey
    nonce: Nonce
    session_key: SessionKey = field(repr=False)


class ServerHandshake:
    """Server side: answers a client public key with its own key and a nonce."""

    def __init__(self, info: str = KEK_INFO):
        self.info = info

    def negotiate(self, client_public_key) -> NegotiatedSession:
        """Run the server half of the handshake.

        Args:
            client_public_key: Client's raw 32-byte X25519 public key

        Returns:
            NegotiatedSession; the server keypair is dropped on return

        Raises:
            HandshakeRejected: Malformed client key (checked before any ECDH)
        """
        client_pub = _validate_public_key(client_public_key, "Client")
        keypair = primitives.generate_keypair()
        nonce = Nonce(primitives.generate_nonce())
        shared = primitives.derive_shared_secret(client_pub, keypair.private_key)
        session_key = derive_session_key(shared, nonce, self.info)
        return NegotiatedSession(
            server_public_key=keypair.public_key,
            nonce=nonce,
            session_key=session_key,
        )


class ClientHandshake:
    """Client side of the handshake, tracked as a small state machine."""

    def __init__(self, info: str = KEK_INFO):
        self.info = info
        self._keypair: Optional[KeyPair] = primitives.generate_keypair()
        self._session_key: Optional[SessionKey] = None
        self.state = HandshakeState.INIT

    @property
    def public_key(self) -> PublicKey:
        if self._keypair is None:
            raise SessionExpired("Handshake keypair already discarded")
        return self._keypair.public_key

    @property
    def session_key(self) -> SessionKey:
        if self.state is not HandshakeState.ESTABLISHED or self._session_key is None:
            raise SessionExpired(f"No session key (handshake state: {self.state.value})")
        return self._session_key

    def complete(self, server_public_key, nonce) -> SessionKey:
        """Derive the session key from the server's reply.

        Raises:
            HandshakeRejected: Bad server key/nonce length, or called out of order
        """
        if self.state is not HandshakeState.INIT or self._keypair is None:
            raise HandshakeRejected(
                f"Cannot complete handshake from state {self.state.value}"
            )
        server_pub = _validate_public_key(server_public_key, "Server")
        server_nonce = _validate_nonce(nonce)
        shared = primitives.derive_shared_secret(server_pub, self._keypair.private_key)
        self._session_key = derive_session_key(shared, server_nonce, self.info)
        self._keypair = None
        self.state = HandshakeState.ESTABLISHED
        LOGGER.debug("Client handshake established")
        return self._session_key

    def expire(self) -> None:
        self._session_key = None
        self._keypair = None
        self.state = HandshakeState.EXPIRED
