"""
Attack scenarios module for testing key-delivery security.

This module simulates attacks against a running key server:
- Cross-session replay: unwrapping one session's delivery with another session's key
- Segment tampering: flipping bytes of an encrypted asset in the content store
- Expired sessions: requesting keys after the session TTL has run out
- Malformed handshakes: sending invalid client public keys

Each scenario records whether the defence held.
"""

import base64
from typing import Any, Callable, Dict, List, Optional

from ..errors import AuthenticationFailed, HandshakeRejected, SessionExpired
from ..server.wire import KeyDeliveryResponse
from ..session.delivery import receive_key
from .player_client import PlaybackClient


class AttackScenario:
    """Base class for key-delivery attack scenarios."""

    def __init__(self, name: str, description: str):
        """Initialize an attack scenario.

        Args:
            name: Human-readable name of the attack
            description: Detailed description of what the attack attempts
        """
        self.name = name
        self.description = description
        self.defended = False
        self.details: Dict[str, Any] = {}

    def execute(self, *args, **kwargs) -> bool:
        """Execute the attack scenario. Should be overridden by subclasses.

        Returns:
            True if the system defended against the attack
        """
        raise NotImplementedError


class CrossSessionReplayAttack(AttackScenario):
    """Replay a key delivered to one session inside another session."""

    def __init__(self):
        super().__init__(
            "Cross-Session Replay Attack",
            "Capture a wrapped content key delivered to one session and try "
            "to unwrap it with the session key of a different session"
        )

    def execute(self, server, store, asset_id: str) -> bool:
        """Deliver a key to a victim session and replay it in the attacker's.

        Returns:
            True if the replayed delivery failed to unwrap
        """
        victim = PlaybackClient(server, store, device_id="victim")
        attacker = PlaybackClient(server, store, device_id="attacker")
        victim.initialize()
        attacker.initialize()
        try:
            captured = KeyDeliveryResponse.from_dict(server.handle_key_request(
                {"sessionId": victim.session_id, "assetId": asset_id}))
            try:
                receive_key(attacker.session_key,
                            captured.wrapped_delivery_key, captured.delivery_iv)
                self.details["replay_unwrapped"] = True
                self.defended = False
            except AuthenticationFailed as e:
                self.details["error_message"] = str(e)
                self.defended = True
        finally:
            victim.terminate()
            attacker.terminate()
        return self.defended


class SegmentTamperingAttack(AttackScenario):
    """Modify encrypted asset bytes in the content store."""

    def __init__(self):
        super().__init__(
            "Segment Tampering Attack",
            "Modify the encrypted asset held by the content store and verify "
            "that authenticated decryption rejects it"
        )

    def execute(self, server, store, asset_id: str, offset: int = 0) -> bool:
        """Flip one ciphertext byte at ``offset``, play, then restore.

        Returns:
            True if playback of the tampered asset failed authentication
        """
        uri = server.registry.get(asset_id).ciphertext_ref
        original = store.fetch(uri)
        tampered = bytearray(original)
        tampered[offset % len(tampered)] ^= 0x01
        store.replace(uri, bytes(tampered))
        client = PlaybackClient(server, store, device_id="tamper")
        client.initialize()
        try:
            client.play(asset_id)
            self.details["tampering_detected"] = False
            self.defended = False
        except AuthenticationFailed as e:
            self.details["tampering_detected"] = True
            self.details["error_message"] = str(e)
            self.defended = True
        finally:
            store.replace(uri, original)
            client.terminate()
        return self.defended


class ExpiredSessionAttack(AttackScenario):
    """Keep using a session after its TTL has run out."""

    def __init__(self):
        super().__init__(
            "Expired Session Attack",
            "Request content keys with a session id after the session TTL "
            "has elapsed"
        )

    def execute(self, server, store, asset_id: str,
                advance_clock: Callable[[float], None]) -> bool:
        """Open a session, advance past its TTL and request a key.

        Args:
            advance_clock: Moves the server's clock forward by N seconds

        Returns:
            True if the request was refused with SessionExpired
        """
        client = PlaybackClient(server, store, device_id="expired")
        client.initialize()
        session_id = client.session_id
        advance_clock(server.config.session_ttl_seconds + 1)
        try:
            server.handle_key_request({"sessionId": session_id, "assetId": asset_id})
            self.details["key_delivered"] = True
            self.defended = False
        except SessionExpired as e:
            self.details["error_message"] = str(e)
            self.defended = True
        finally:
            client.terminate()
        return self.defended


def _default_malformed_payloads() -> List[Dict[str, Any]]:
    b64 = lambda raw: base64.b64encode(raw).decode("ascii")
    return [
        {"clientPublicKey": b64(b"\x01" * 31)},
        {"clientPublicKey": b64(b"\x01" * 33)},
        {"clientPublicKey": "not base64!"},
        {"clientPublicKey": "é" * 44},
        {"clientPublicKey": ""},
        {},
        {"clientPublicKey": b64(bytes(32))},
    ]


class MalformedHandshakeAttack(AttackScenario):
    """Send invalid client public keys to the handshake endpoint."""

    def __init__(self):
        super().__init__(
            "Malformed Handshake Attack",
            "Send handshake messages with short, long, non-base64, missing or "
            "low-order client public keys"
        )

    def execute(self, server, payloads: Optional[List[Dict[str, Any]]] = None) -> bool:
        """Send each payload and count how many the server rejected.

        Returns:
            True if every payload raised HandshakeRejected
        """
        if payloads is None:
            payloads = _default_malformed_payloads()
        rejected = 0
        for i, payload in enumerate(payloads):
            try:
                response = server.handle_handshake(payload)
                self.details[f"payload_{i}"] = "accepted"
                server.close_session(response["sessionId"])
            except HandshakeRejected as e:
                rejected += 1
                self.details[f"payload_{i}"] = str(e)
        self.details["rejected"] = rejected
        self.details["total"] = len(payloads)
        self.defended = rejected == len(payloads)
        return self.defended


def simulate_attack_scenario(scenario: AttackScenario) -> Dict[str, Any]:
    """Summarise an executed attack scenario.

    Args:
        scenario: AttackScenario instance that has been executed

    Returns:
        Dictionary with attack results and details
    """
    return {
        "scenario": scenario.name,
        "description": scenario.description,
        "defended": scenario.defended,
        "details": scenario.details,
    }
