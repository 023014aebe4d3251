"""Tests for the ECDH session handshake."""

import inspect

import pytest

from drmkeys.encryption import primitives
from drmkeys.encryption.keys import SessionKey
from drmkeys.errors import HandshakeRejected, SessionExpired
from drmkeys.session import handshake as handshake_module
from drmkeys.session.handshake import (
    KEK_INFO,
    ClientHandshake,
    HandshakeState,
    ServerHandshake,
    derive_session_key,
)


def _run_handshake(client=None, server=None):
    client = client or ClientHandshake()
    server = server or ServerHandshake()
    negotiated = server.negotiate(client.public_key)
    key = client.complete(negotiated.server_public_key, negotiated.nonce)
    return client, negotiated, key


class TestHandshake:
    """Test both halves of the handshake agree on a session key."""

    def test_client_and_server_derive_same_key(self):
        """Test client and server end with identical 32-byte keys."""
        client, negotiated, key = _run_handshake()
        assert isinstance(key, SessionKey)
        assert bytes(key) == bytes(negotiated.session_key)
        assert len(bytes(key)) == 32
        assert client.state is HandshakeState.ESTABLISHED

    def test_each_handshake_gives_new_key(self):
        _, _, k1 = _run_handshake()
        _, _, k2 = _run_handshake()
        assert bytes(k1) != bytes(k2)

    def test_session_key_derivation(self):
        """Test the session key is HKDF(shared, nonce, info, 32)."""
        secret = b"\x11" * 32
        nonce = b"\x22" * 12
        expected = primitives.hkdf(secret, nonce, KEK_INFO, 32)
        assert bytes(derive_session_key(secret, nonce)) == expected

    def test_info_tag_separates_versions(self):
        """Test a different protocol tag produces a different key."""
        secret, nonce = b"\x11" * 32, b"\x22" * 12
        assert bytes(derive_session_key(secret, nonce, "session-kek-v2")) != \
            bytes(derive_session_key(secret, nonce))

    def test_mismatched_info_tags_disagree(self):
        client = ClientHandshake(info="session-kek-v2")
        _, negotiated, key = _run_handshake(client=client)
        assert bytes(key) != bytes(negotiated.session_key)

    def test_handshake_does_not_import_server_layer(self):
        assert "..server" not in inspect.getsource(handshake_module)

    def test_public_key_dropped_on_expire(self):
        client = ClientHandshake()
        assert len(bytes(client.public_key)) == 32
        client.expire()
        with pytest.raises(SessionExpired):
            client.public_key


class TestHandshakeValidation:
    """Test malformed handshake material is refused early."""

    @pytest.mark.parametrize("length", [0, 16, 31, 33])
    def test_server_rejects_bad_client_key_before_ecdh(self, length, monkeypatch):
        """Test no key agreement runs for a wrong-length client key."""
        calls = []

        def spy(*args):
            calls.append(args)
            raise AssertionError("ECDH must not run")

        monkeypatch.setattr(primitives, "derive_shared_secret", spy)
        monkeypatch.setattr(primitives, "generate_keypair", spy)
        with pytest.raises(HandshakeRejected):
            ServerHandshake().negotiate(b"\x05" * length)
        assert calls == []

    def test_server_rejects_low_order_point(self):
        with pytest.raises(HandshakeRejected):
            ServerHandshake().negotiate(bytes(32))

    def test_client_rejects_bad_server_key(self):
        client = ClientHandshake()
        with pytest.raises(HandshakeRejected):
            client.complete(b"\x01" * 31, b"\x00" * 12)
        assert client.state is HandshakeState.INIT

    def test_client_rejects_bad_nonce(self):
        client = ClientHandshake()
        server_pub = primitives.generate_keypair().public_key
        with pytest.raises(HandshakeRejected):
            client.complete(server_pub, b"\x00" * 16)

    def test_complete_twice_rejected(self):
        """Test the client state machine refuses a second completion."""
        client, negotiated, _ = _run_handshake()
        with pytest.raises(HandshakeRejected):
            client.complete(negotiated.server_public_key, negotiated.nonce)


class TestHandshakeLifecycle:
    """Test session key availability across states."""

    def test_no_key_before_completion(self):
        client = ClientHandshake()
        assert client.state is HandshakeState.INIT
        with pytest.raises(SessionExpired):
            client.session_key

    def test_private_key_discarded_after_completion(self):
        """Test the ephemeral keypair is dropped once the key exists."""
        client, _, _ = _run_handshake()
        with pytest.raises(SessionExpired):
            client.public_key

    def test_expire_discards_key(self):
        client, _, _ = _run_handshake()
        client.expire()
        assert client.state is HandshakeState.EXPIRED
        with pytest.raises(SessionExpired):
            client.session_key
