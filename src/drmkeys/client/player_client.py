"""
Playback client for the key-delivery protocol.

This module provides the client half of a playback session:
- Run the ECDH handshake against a key server transport
- Request and unwrap per-asset content keys (singly or in batches)
- Fetch encrypted assets from a content store and decrypt them
- Refresh and terminate the session, dropping key material on expiry
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Protocol

from ..encryption.keys import ContentKey
from ..encryption.segment import decrypt_asset
from ..errors import AuthenticationFailed, SessionExpired
from ..server.wire import (
    BatchKeyRequest,
    HandshakeRequest,
    HandshakeResponse,
    KeyDeliveryRequest,
    KeyDeliveryResponse,
)
from ..session.delivery import receive_key
from ..session.handshake import KEK_INFO, ClientHandshake
from ..storage.content_store import ContentStore
from .fingerprint import device_fingerprint

LOGGER = logging.getLogger(__name__)


class KeyTransport(Protocol):
    """JSON-in/JSON-out boundary of a key server (``KeyServer`` satisfies it)."""

    def handle_handshake(self, payload: dict) -> dict: ...
    def handle_key_request(self, payload: dict) -> dict: ...
    def handle_batch_request(self, payload: dict) -> dict: ...
    def handle_refresh(self, payload: dict) -> dict: ...
    def handle_close(self, payload: dict) -> dict: ...


@dataclass
class PlaybackKey:
    """An unwrapped content key plus where to find the asset it opens."""

    content_key: ContentKey = field(repr=False)
    ciphertext_ref: str
    segment_iv: bytes


class PlaybackClient:
    """Client side of one playback session."""

    def __init__(self, transport: KeyTransport, store: ContentStore,
                 device_id: str = "player", fingerprint: Optional[str] = None,
                 info: str = KEK_INFO, batch_size: int = 20):
        """Initialize a playback client.

        Args:
            transport: Key server boundary (usually a KeyServer)
            store: Content store holding the encrypted assets
            device_id: Label used in playback reports
            fingerprint: Device fingerprint; computed from the host when omitted
            info: HKDF info tag, must match the server's
            batch_size: Maximum asset ids per batch request
        """
        self.transport = transport
        self.store = store
        self.device_id = device_id
        self.fingerprint = fingerprint or device_fingerprint()
        self.info = info
        self.batch_size = batch_size
        self.session_id: Optional[str] = None
        self.expires_in: Optional[float] = None
        self.playback_history: List[Dict[str, Any]] = []
        self._handshake: Optional[ClientHandshake] = None
        self._keys: Dict[str, PlaybackKey] = {}

    @property
    def is_active(self) -> bool:
        return self.session_id is not None

    @property
    def session_key(self):
        if self._handshake is None:
            raise SessionExpired("No active session; call initialize() first")
        return self._handshake.session_key

    def initialize(self) -> str:
        """Handshake with the server and establish a session key.

        Returns:
            The new session id
        """
        if self.is_active:
            self.terminate()
        handshake = ClientHandshake(info=self.info)
        request = HandshakeRequest(
            client_public_key=bytes(handshake.public_key),
            device_fingerprint=self.fingerprint,
        )
        response = HandshakeResponse.from_dict(self.transport.handle_handshake(request.to_dict()))
        handshake.complete(response.server_public_key, response.nonce)
        self._handshake = handshake
        self.session_id = response.session_id
        self.expires_in = response.expires_in
        LOGGER.info("Session %s established (expires in %ss)", self.session_id, self.expires_in)
        return self.session_id

    def _require_session(self) -> str:
        if self.session_id is None or self._handshake is None:
            raise SessionExpired("No active session; call initialize() first")
        return self.session_id

    def _reset(self) -> None:
        if self._handshake is not None:
            self._handshake.expire()
        self._handshake = None
        self._keys.clear()
        self.session_id = None
        self.expires_in = None

    def _call(self, method, payload: dict) -> dict:
        try:
            return method(payload)
        except SessionExpired:
            LOGGER.info("Session %s expired on the server; local keys dropped", self.session_id)
            self._reset()
            raise

    def _accept(self, response: KeyDeliveryResponse) -> PlaybackKey:
        content_key = receive_key(self._handshake.session_key,
                                  response.wrapped_delivery_key, response.delivery_iv)
        key = PlaybackKey(
            content_key=content_key,
            ciphertext_ref=response.asset_ciphertext_ref,
            segment_iv=response.segment_iv,
        )
        self._keys[response.asset_id] = key
        return key

    def request_key(self, asset_id: str) -> PlaybackKey:
        """Return the cached key for ``asset_id`` or request it from the server."""
        if asset_id in self._keys:
            return self._keys[asset_id]
        session_id = self._require_session()
        request = KeyDeliveryRequest(session_id, asset_id, device_fingerprint=self.fingerprint)
        payload = self._call(self.transport.handle_key_request, request.to_dict())
        return self._accept(KeyDeliveryResponse.from_dict(payload))

    def prefetch(self, asset_ids: List[str]) -> int:
        """Fetch keys for several assets through the batch endpoint.

        Returns:
            Number of keys now cached among ``asset_ids``
        """
        session_id = self._require_session()
        missing = [a for a in dict.fromkeys(asset_ids) if a not in self._keys]
        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start:start + self.batch_size]
            payload = self._call(self.transport.handle_batch_request,
                                 BatchKeyRequest(session_id, chunk).to_dict())
            for item in payload.get("keys", []):
                self._accept(KeyDeliveryResponse.from_dict(item))
        return sum(1 for a in asset_ids if a in self._keys)

    def play(self, asset_id: str) -> bytes:
        """Fetch, decrypt and return the plaintext of an asset.

        Raises:
            AuthenticationFailed: The fetched ciphertext was modified
            SessionExpired: The session is gone; call initialize() again
        """
        key = self.request_key(asset_id)
        ciphertext = self.store.fetch(key.ciphertext_ref)
        record = {
            "asset_id": asset_id,
            "session_id": self.session_id,
            "timestamp": datetime.now(UTC).isoformat(),
            "device_id": self.device_id,
        }
        try:
            plaintext = decrypt_asset(key.content_key, ciphertext, key.segment_iv)
        except AuthenticationFailed:
            record["success"] = False
            self.playback_history.append(record)
            LOGGER.warning("Asset %s failed authentication", asset_id)
            raise
        record["success"] = True
        record["size"] = len(plaintext)
        self.playback_history.append(record)
        return plaintext

    def refresh(self) -> float:
        """Extend the session on the server.

        Returns:
            New time-to-live in seconds
        """
        session_id = self._require_session()
        payload = self._call(self.transport.handle_refresh, {"sessionId": session_id})
        self.expires_in = float(payload["expiresIn"])
        return self.expires_in

    def terminate(self) -> None:
        """Close the session on the server and drop all local key material."""
        if self.session_id is not None:
            self.transport.handle_close({"sessionId": self.session_id})
        self._reset()

    def playback_report(self) -> Dict[str, Any]:
        """Summarise this client's playback activity.

        Returns:
            Dictionary with playback statistics
        """
        successes = sum(1 for r in self.playback_history if r["success"])
        return {
            "device_id": self.device_id,
            "session_id": self.session_id,
            "active": self.is_active,
            "cached_keys": len(self._keys),
            "total_playbacks": len(self.playback_history),
            "successful_playbacks": successes,
            "failed_playbacks": len(self.playback_history) - successes,
            "playback_history": self.playback_history,
        }
