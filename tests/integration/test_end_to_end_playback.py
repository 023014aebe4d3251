"""End-to-end test of ingest, handshake, key delivery and playback."""

import os

import pytest

from drmkeys.client.player_client import PlaybackClient
from drmkeys.config import KeyDeliveryConfig
from drmkeys.encryption import primitives
from drmkeys.encryption.envelope import LocalMasterKey, MasterKeyRing, rewrap_content_key
from drmkeys.errors import AuthenticationFailed
from drmkeys.server.key_server import AssetRecord, KeyServer, allow_all
from drmkeys.session.cache import SessionCache
from drmkeys.storage.content_store import FileContentStore


class TestEndToEndPlayback:
    """Test the full protocol from ingest to decrypted playback."""

    def test_512_kib_asset(self, server, store):
        """Test a 512 KiB asset survives ingest, delivery and playback unchanged."""
        data = os.urandom(512 * 1024)
        record = server.ingest_asset("asset-512k", data, store)
        assert store.fetch(record.ciphertext_ref) != data

        client = PlaybackClient(server, store)
        client.initialize()
        assert client.play("asset-512k") == data

        # the same key delivered to a second session is wrapped differently
        other = PlaybackClient(server, store)
        other.initialize()
        first = server.handle_key_request({"sessionId": client.session_id, "assetId": "asset-512k"})
        second = server.handle_key_request({"sessionId": other.session_id, "assetId": "asset-512k"})
        assert first["wrappedDeliveryKey"] != second["wrappedDeliveryKey"]
        assert other.play("asset-512k") == data

    def test_file_store_playback(self, tmp_path, master_key, clock):
        store = FileContentStore(str(tmp_path / "blobs"))
        server = KeyServer(master_key, allow_all, cache=SessionCache(clock=clock), clock=clock)
        server.ingest_asset("doc", b"page" * 4096, store)
        client = PlaybackClient(server, store)
        client.initialize()
        assert client.play("doc") == b"page" * 4096

    def test_hostile_store_is_detected(self, server, store):
        server.ingest_asset("clip", os.urandom(2048), store)
        uri = server.registry.get("clip").ciphertext_ref
        store.replace(uri, os.urandom(2048 + 16))
        client = PlaybackClient(server, store)
        client.initialize()
        with pytest.raises(AuthenticationFailed):
            client.play("clip")

    def test_master_key_rotation_keeps_sessions_working(self, store, clock):
        """Test re-wrapping envelopes under a new master key needs no new handshake."""
        old = LocalMasterKey(primitives.random_bytes(32))
        ring = MasterKeyRing(old)
        server = KeyServer(ring, allow_all, config=KeyDeliveryConfig(),
                           cache=SessionCache(clock=clock), clock=clock)
        server.ingest_asset("a1", b"first", store)
        server.ingest_asset("a2", b"second", store)
        client = PlaybackClient(server, store)
        client.initialize()
        assert client.play("a1") == b"first"

        new = LocalMasterKey(primitives.random_bytes(32))
        ring.rotate(new)
        record = server.registry.get("a2")
        server.registry.put(AssetRecord(
            asset_id=record.asset_id,
            envelope=rewrap_content_key(old, new, record.envelope),
            ciphertext_ref=record.ciphertext_ref,
            segment_iv=record.segment_iv,
        ))
        ring.retire(old.key_id)

        assert client.play("a2") == b"second"
