"""
JSON boundary messages for the handshake and key-delivery exchanges.

All binary fields travel as standard base64. Parsing validates encoding
and lengths; malformed handshake material raises HandshakeRejected and
malformed delivery material raises the matching length error.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..encryption.keys import IV_SIZE, NONCE_SIZE, PUBLIC_KEY_SIZE
from ..errors import HandshakeRejected, InvalidIvLength, KeyDeliveryError


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: Any, field_name: str, error=KeyDeliveryError) -> bytes:
    if not isinstance(value, str):
        raise error(f"{field_name} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        # non-ASCII str input raises a plain ValueError
        raise error(f"{field_name} is not valid base64") from e


def _require(payload: Dict[str, Any], name: str, error=KeyDeliveryError) -> Any:
    if not isinstance(payload, dict):
        raise error("Message must be a JSON object")
    if name not in payload or payload[name] in (None, ""):
        raise error(f"Missing required field: {name}")
    return payload[name]


@dataclass(frozen=True)
class HandshakeRequest:
    client_public_key: bytes
    device_fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"clientPublicKey": b64encode(self.client_public_key)}
        if self.device_fingerprint:
            data["deviceFingerprint"] = self.device_fingerprint
        return data

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "HandshakeRequest":
        raw = b64decode(_require(payload, "clientPublicKey", HandshakeRejected),
                        "clientPublicKey", HandshakeRejected)
        if len(raw) != PUBLIC_KEY_SIZE:
            raise HandshakeRejected(f"clientPublicKey must decode to {PUBLIC_KEY_SIZE} bytes")
        fingerprint = payload.get("deviceFingerprint")
        if fingerprint is not None and not isinstance(fingerprint, str):
            raise HandshakeRejected("deviceFingerprint must be a string")
        return cls(client_public_key=raw, device_fingerprint=fingerprint)


@dataclass(frozen=True)
class HandshakeResponse:
    session_id: str
    server_public_key: bytes
    nonce: bytes
    expires_in: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "serverPublicKey": b64encode(self.server_public_key),
            "nonce": b64encode(self.nonce),
            "expiresIn": self.expires_in,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "HandshakeResponse":
        session_id = _require(payload, "sessionId", HandshakeRejected)
        server_pub = b64decode(_require(payload, "serverPublicKey", HandshakeRejected),
                               "serverPublicKey", HandshakeRejected)
        nonce = b64decode(_require(payload, "nonce", HandshakeRejected),
                          "nonce", HandshakeRejected)
        if len(server_pub) != PUBLIC_KEY_SIZE:
            raise HandshakeRejected(f"serverPublicKey must decode to {PUBLIC_KEY_SIZE} bytes")
        if len(nonce) != NONCE_SIZE:
            raise HandshakeRejected(f"nonce must decode to {NONCE_SIZE} bytes")
        try:
            expires_in = float(payload.get("expiresIn", 0))
        except (TypeError, ValueError) as e:
            raise HandshakeRejected("expiresIn must be a number") from e
        return cls(
            session_id=str(session_id),
            server_public_key=server_pub,
            nonce=nonce,
            expires_in=expires_in,
        )


@dataclass(frozen=True)
class KeyDeliveryRequest:
    session_id: str
    asset_id: str
    device_fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"sessionId": self.session_id, "assetId": self.asset_id}
        if self.device_fingerprint:
            data["deviceFingerprint"] = self.device_fingerprint
        return data

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "KeyDeliveryRequest":
        fingerprint = payload.get("deviceFingerprint") if isinstance(payload, dict) else None
        return cls(
            session_id=str(_require(payload, "sessionId")),
            asset_id=str(_require(payload, "assetId")),
            device_fingerprint=fingerprint if isinstance(fingerprint, str) else None,
        )


@dataclass(frozen=True)
class KeyDeliveryResponse:
    asset_id: str
    wrapped_delivery_key: bytes
    delivery_iv: bytes
    asset_ciphertext_ref: str
    segment_iv: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "wrappedDeliveryKey": b64encode(self.wrapped_delivery_key),
            "deliveryIv": b64encode(self.delivery_iv),
            "assetCiphertextRef": self.asset_ciphertext_ref,
            "segmentIv": b64encode(self.segment_iv),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "KeyDeliveryResponse":
        delivery_iv = b64decode(_require(payload, "deliveryIv"), "deliveryIv")
        segment_iv = b64decode(_require(payload, "segmentIv"), "segmentIv")
        for name, iv in (("deliveryIv", delivery_iv), ("segmentIv", segment_iv)):
            if len(iv) != IV_SIZE:
                raise InvalidIvLength(f"{name} must decode to {IV_SIZE} bytes")
        return cls(
            asset_id=str(_require(payload, "assetId")),
            wrapped_delivery_key=b64decode(_require(payload, "wrappedDeliveryKey"),
                                           "wrappedDeliveryKey"),
            delivery_iv=delivery_iv,
            asset_ciphertext_ref=str(_require(payload, "assetCiphertextRef")),
            segment_iv=segment_iv,
        )


@dataclass(frozen=True)
class BatchKeyRequest:
    session_id: str
    asset_ids: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"sessionId": self.session_id, "assetIds": list(self.asset_ids)}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "BatchKeyRequest":
        asset_ids = _require(payload, "assetIds")
        if not isinstance(asset_ids, list):
            raise KeyDeliveryError("assetIds must be a list")
        return cls(
            session_id=str(_require(payload, "sessionId")),
            asset_ids=[str(a) for a in asset_ids],
        )
