"""
In-process key-delivery server.

Ties the layers together behind the JSON boundary contracts:
- handshake: client public key in, (session id, server public key, nonce) out
- key delivery: (session id, asset id) in, session-wrapped content key out
- ingest: content key in, envelope-wrapped key persisted in the asset registry

Entitlement is an external boolean gate evaluated before any key material
is touched. This server trusts that gate and does not re-derive it. The
device fingerprint is recorded as telemetry only and never gates access.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..config import KeyDeliveryConfig
from ..encryption import primitives
from ..encryption.envelope import EnvelopeWrappedKey, MasterKeyCustody, encrypt_content_key
from ..encryption.keys import IV_SIZE, SessionKey
from ..encryption.segment import encrypt_asset
from ..errors import (
    AuthenticationFailed,
    EntitlementDenied,
    InvalidIvLength,
    KeyDeliveryError,
    SessionExpired,
    UnknownAsset,
)
from ..session.cache import SessionCache
from ..session.delivery import deliver_key
from ..session.handshake import ServerHandshake
from .wire import (
    BatchKeyRequest,
    HandshakeRequest,
    HandshakeResponse,
    KeyDeliveryRequest,
    KeyDeliveryResponse,
)

LOGGER = logging.getLogger(__name__)

Entitlement = Callable[[str, str], bool]


def allow_all(session_id: str, asset_id: str) -> bool:
    """Entitlement gate that admits everyone (demos and tests only)."""
    return True


@dataclass(frozen=True)
class AssetRecord:
    """Metadata persisted per asset: never contains the plaintext key."""

    asset_id: str
    envelope: EnvelopeWrappedKey
    ciphertext_ref: str
    segment_iv: bytes


class AssetRegistry:
    """Stand-in for the external metadata store."""

    def __init__(self):
        self._records: Dict[str, AssetRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: AssetRecord) -> None:
        with self._lock:
            self._records[record.asset_id] = record

    def get(self, asset_id: str) -> AssetRecord:
        with self._lock:
            record = self._records.get(asset_id)
        if record is None:
            raise UnknownAsset(f"Asset not found: {asset_id}")
        return record

    def __contains__(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass
class SessionRecord:
    created_at: float
    deliveries: int = 0
    device_fingerprint: Optional[str] = None
    fingerprint_mismatches: int = field(default=0)


class KeyServer:
    """Server side of the key-delivery protocol."""

    def __init__(
        self,
        master_key: MasterKeyCustody,
        entitlement: Entitlement,
        config: Optional[KeyDeliveryConfig] = None,
        cache: Optional[SessionCache] = None,
        registry: Optional[AssetRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.master_key = master_key
        self.entitlement = entitlement
        self.config = config or KeyDeliveryConfig()
        self.cache = cache if cache is not None else SessionCache(clock=clock)
        self.registry = registry if registry is not None else AssetRegistry()
        self._clock = clock
        self._handshake = ServerHandshake(info=self.config.kek_info)
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    # ---------- ingest ----------

    def register_asset(self, asset_id: str, dek, ciphertext_ref: str,
                       segment_iv: bytes) -> EnvelopeWrappedKey:
        """Envelope-wrap ``dek`` and persist it with the asset's ciphertext URI.

        Returns:
            The envelope-wrapped key that was stored
        """
        segment_iv = bytes(segment_iv)
        if len(segment_iv) != IV_SIZE:
            raise InvalidIvLength(f"Segment IV must be {IV_SIZE} bytes")
        envelope = encrypt_content_key(self.master_key, dek)
        self.registry.put(AssetRecord(
            asset_id=asset_id,
            envelope=envelope,
            ciphertext_ref=ciphertext_ref,
            segment_iv=segment_iv,
        ))
        LOGGER.info("Registered asset %s -> %s", asset_id, ciphertext_ref)
        return envelope

    def ingest_asset(self, asset_id: str, plaintext: bytes, store) -> AssetRecord:
        """Generate a content key, encrypt the asset, store it and register it.

        ``store`` is any content store with ``put(bytes) -> uri``.
        """
        dek = primitives.generate_content_key()
        segment = encrypt_asset(dek, plaintext)
        uri = store.put(segment.ciphertext)
        self.register_asset(asset_id, dek, uri, segment.iv)
        return self.registry.get(asset_id)

    # ---------- sessions ----------

    def open_session(self, request: HandshakeRequest) -> HandshakeResponse:
        """Run the server half of the handshake and cache the session key."""
        negotiated = self._handshake.negotiate(request.client_public_key)
        session_id = uuid.uuid4().hex
        ttl = self.config.session_ttl_seconds
        self.cache.put(session_id, negotiated.session_key, ttl)
        with self._lock:
            self._sessions[session_id] = SessionRecord(
                created_at=self._clock(),
                device_fingerprint=request.device_fingerprint,
            )
        LOGGER.info("Opened session %s (ttl %ss)", session_id, ttl)
        return HandshakeResponse(
            session_id=session_id,
            server_public_key=bytes(negotiated.server_public_key),
            nonce=bytes(negotiated.nonce),
            expires_in=ttl,
        )

    def refresh_session(self, session_id: str) -> float:
        """Extend a live session by ``refresh_ttl_seconds``.

        Returns:
            The new time-to-live in seconds

        Raises:
            SessionExpired: If the session is unknown or already expired
        """
        ttl = self.config.refresh_ttl_seconds
        if not self.cache.touch(session_id, ttl):
            self._forget(session_id)
            raise SessionExpired(f"Session {session_id} expired; handshake again")
        LOGGER.info("Refreshed session %s for %ss", session_id, ttl)
        return ttl

    def close_session(self, session_id: str) -> None:
        self.cache.delete(session_id)
        self._forget(session_id)
        LOGGER.info("Closed session %s", session_id)

    def cleanup_expired(self) -> int:
        """Evict expired session keys and the per-session records left behind.

        Returns:
            Number of session records dropped
        """
        self.cache.cleanup_expired()
        with self._lock:
            stale = [sid for sid in self._sessions if sid not in self.cache]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            LOGGER.info("Dropped %d expired session records", len(stale))
        return len(stale)

    def active_sessions(self) -> int:
        self.cleanup_expired()
        return len(self.cache)

    def _forget(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def _session_key(self, session_id: str, fingerprint: Optional[str]) -> SessionKey:
        key = self.cache.get(session_id)
        if key is None:
            self._forget(session_id)
            raise SessionExpired(f"Session {session_id} expired; handshake again")

        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                record = self._sessions[session_id] = SessionRecord(created_at=self._clock())
            age = self._clock() - record.created_at
            rotate = self.config.rotation.requires_rotation(age, record.deliveries)
            if not rotate:
                record.deliveries += 1
            mismatch = (
                fingerprint is not None
                and record.device_fingerprint is not None
                and fingerprint != record.device_fingerprint
            )
            if mismatch:
                record.fingerprint_mismatches += 1

        if mismatch:
            # Telemetry only, never an access decision
            LOGGER.warning("Device fingerprint changed within session %s", session_id)
        if rotate:
            self.close_session(session_id)
            raise SessionExpired(f"Session {session_id} key rotation required; handshake again")
        return key

    # ---------- key delivery ----------

    def deliver(self, request: KeyDeliveryRequest) -> KeyDeliveryResponse:
        """Return the asset's content key wrapped under the session key.

        Raises:
            EntitlementDenied: The external gate refused this request
            SessionExpired: No live session key (expired, closed or rotated)
            UnknownAsset: No envelope registered for the asset
            AuthenticationFailed: The stored envelope does not open
        """
        if not self.entitlement(request.session_id, request.asset_id):
            LOGGER.warning("Entitlement denied: session %s asset %s",
                           request.session_id, request.asset_id)
            raise EntitlementDenied(f"Access denied for asset {request.asset_id}")
        record = self.registry.get(request.asset_id)
        session_key = self._session_key(request.session_id, request.device_fingerprint)
        delivered = deliver_key(session_key, record.envelope, self.master_key)
        LOGGER.debug("Delivered key for asset %s to session %s",
                     request.asset_id, request.session_id)
        return KeyDeliveryResponse(
            asset_id=record.asset_id,
            wrapped_delivery_key=delivered.wrapped_key,
            delivery_iv=delivered.iv,
            asset_ciphertext_ref=record.ciphertext_ref,
            segment_iv=record.segment_iv,
        )

    def deliver_batch(self, request: BatchKeyRequest) -> List[KeyDeliveryResponse]:
        """Deliver several keys at once.

        Refused, unknown or undecryptable assets are skipped. If the session
        hits its rotation limit part way through, the keys wrapped so far are
        still returned and the next request reports the expiry.

        Raises:
            KeyDeliveryError: If the batch is empty or larger than max_batch_size
            SessionExpired: If the session is not live before the first key
        """
        limit = self.config.max_batch_size
        if not 1 <= len(request.asset_ids) <= limit:
            raise KeyDeliveryError(f"assetIds must contain 1-{limit} asset ids")
        if self.cache.get(request.session_id) is None:
            self._forget(request.session_id)
            raise SessionExpired(f"Session {request.session_id} expired; handshake again")

        responses = []
        for asset_id in request.asset_ids:
            try:
                responses.append(self.deliver(KeyDeliveryRequest(request.session_id, asset_id)))
            except (EntitlementDenied, UnknownAsset) as e:
                LOGGER.warning("Skipping asset %s in batch: %s", asset_id, e)
            except AuthenticationFailed:
                LOGGER.error("Envelope for asset %s failed to open; skipped", asset_id)
            except SessionExpired:
                if not responses:
                    raise
                LOGGER.warning("Session %s expired mid-batch after %d keys",
                               request.session_id, len(responses))
                break
        LOGGER.info("Batch delivered %d/%d keys to session %s",
                    len(responses), len(request.asset_ids), request.session_id)
        return responses

    # ---------- JSON boundary ----------

    def handle_handshake(self, payload: dict) -> dict:
        return self.open_session(HandshakeRequest.from_dict(payload)).to_dict()

    def handle_key_request(self, payload: dict) -> dict:
        return self.deliver(KeyDeliveryRequest.from_dict(payload)).to_dict()

    def handle_batch_request(self, payload: dict) -> dict:
        responses = self.deliver_batch(BatchKeyRequest.from_dict(payload))
        return {"keys": [r.to_dict() for r in responses]}

    def handle_refresh(self, payload: dict) -> dict:
        session_id = str(payload.get("sessionId", ""))
        return {"sessionId": session_id, "expiresIn": self.refresh_session(session_id)}

    def handle_close(self, payload: dict) -> dict:
        session_id = str(payload.get("sessionId", ""))
        self.close_session(session_id)
        return {"sessionId": session_id, "closed": True}
