"""Tests for envelope encryption under the master key."""

import base64

import pytest

from drmkeys.encryption import primitives
from drmkeys.encryption.envelope import (
    EnvelopeWrappedKey,
    LocalMasterKey,
    MasterKeyRing,
    decrypt_content_key,
    encrypt_content_key,
    generate_master_key,
    load_master_key_from_env,
    rewrap_content_key,
)
from drmkeys.errors import AuthenticationFailed, InvalidKeyLength


class TestLocalMasterKey:
    """Test the in-process master key custody."""

    def test_requires_32_bytes(self):
        with pytest.raises(InvalidKeyLength):
            LocalMasterKey(b"\x00" * 16)

    def test_key_id_is_stable(self):
        """Test the key id depends only on the key."""
        raw = primitives.random_bytes(32)
        assert LocalMasterKey(raw).key_id == LocalMasterKey(raw).key_id
        assert len(LocalMasterKey(raw).key_id) == 16

    def test_repr_hides_key(self):
        raw = b"\x42" * 32
        assert "42424242" not in repr(LocalMasterKey(raw))

    def test_truncated_blob_fails(self):
        with pytest.raises(AuthenticationFailed):
            LocalMasterKey(b"\x01" * 32).decrypt(b"short")


class TestEnvelope:
    """Test content-key envelope wrapping."""

    def test_roundtrip(self, master_key):
        """Test the content key comes back unchanged."""
        dek = primitives.generate_content_key()
        wrapped = encrypt_content_key(master_key, dek)
        assert bytes(decrypt_content_key(master_key, wrapped)) == bytes(dek)

    def test_wrapped_form_does_not_contain_key(self, master_key):
        dek = primitives.generate_content_key()
        wrapped = encrypt_content_key(master_key, dek)
        assert bytes(dek) not in wrapped.to_bytes()

    def test_wrong_master_key(self, master_key):
        """Test a different master key cannot open the envelope."""
        wrapped = encrypt_content_key(master_key, primitives.generate_content_key())
        other = LocalMasterKey(primitives.random_bytes(32))
        with pytest.raises(AuthenticationFailed):
            decrypt_content_key(other, wrapped)

    def test_tampered_envelope(self, master_key):
        wrapped = encrypt_content_key(master_key, primitives.generate_content_key())
        blob = bytearray(wrapped.ciphertext)
        blob[-1] ^= 0x01
        with pytest.raises(AuthenticationFailed):
            decrypt_content_key(master_key, EnvelopeWrappedKey(bytes(blob)))

    def test_serialisation(self, master_key):
        """Test envelopes survive bytes and base64 storage."""
        dek = primitives.generate_content_key()
        wrapped = encrypt_content_key(master_key, dek)
        assert EnvelopeWrappedKey.from_bytes(wrapped.to_bytes()) == wrapped
        restored = EnvelopeWrappedKey.from_base64(wrapped.to_base64())
        assert bytes(decrypt_content_key(master_key, restored)) == bytes(dek)

    def test_unsupported_version(self, master_key):
        wrapped = encrypt_content_key(master_key, primitives.generate_content_key())
        data = bytes([9]) + wrapped.to_bytes()[1:]
        with pytest.raises(ValueError, match="version"):
            EnvelopeWrappedKey.from_bytes(data)
        with pytest.raises(ValueError):
            decrypt_content_key(master_key, EnvelopeWrappedKey(wrapped.ciphertext, version=2))

    def test_invalid_base64(self):
        with pytest.raises(ValueError):
            EnvelopeWrappedKey.from_base64("not base64!!")


class TestMasterKeyRotation:
    """Test master-key rotation of at-rest envelopes."""

    def test_ring_decrypts_old_envelopes(self):
        """Test envelopes made before rotation still open."""
        old = LocalMasterKey(primitives.random_bytes(32))
        new = LocalMasterKey(primitives.random_bytes(32))
        ring = MasterKeyRing(old)
        dek = primitives.generate_content_key()
        before = encrypt_content_key(ring, dek)

        ring.rotate(new)
        after = encrypt_content_key(ring, dek)

        assert ring.key_id == new.key_id
        assert bytes(decrypt_content_key(ring, before)) == bytes(dek)
        assert bytes(decrypt_content_key(new, after)) == bytes(dek)
        assert sorted([old.key_id, new.key_id]) == ring.known_key_ids

    def test_retired_key_no_longer_decrypts(self):
        old = LocalMasterKey(primitives.random_bytes(32))
        ring = MasterKeyRing(old)
        wrapped = encrypt_content_key(ring, primitives.generate_content_key())
        ring.rotate(LocalMasterKey(primitives.random_bytes(32)))
        ring.retire(old.key_id)
        with pytest.raises(AuthenticationFailed):
            decrypt_content_key(ring, wrapped)

    def test_cannot_retire_current(self, master_key):
        ring = MasterKeyRing(master_key)
        with pytest.raises(ValueError):
            ring.retire(master_key.key_id)

    def test_rewrap(self):
        """Test rewrapping moves an envelope to the new master key."""
        old = LocalMasterKey(primitives.random_bytes(32))
        new = LocalMasterKey(primitives.random_bytes(32))
        dek = primitives.generate_content_key()
        moved = rewrap_content_key(old, new, encrypt_content_key(old, dek))
        assert bytes(decrypt_content_key(new, moved)) == bytes(dek)
        with pytest.raises(AuthenticationFailed):
            decrypt_content_key(old, moved)


class TestMasterKeyEnvironment:
    """Test loading the master key from the environment."""

    def test_generate_and_load(self, monkeypatch):
        key = generate_master_key()
        assert len(base64.b64decode(key)) == 32
        monkeypatch.setenv("KMS_MASTER_KEY", key)
        assert isinstance(load_master_key_from_env(), LocalMasterKey)

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("KMS_MASTER_KEY", raising=False)
        with pytest.raises(ValueError, match="not set"):
            load_master_key_from_env()

    def test_wrong_length(self, monkeypatch):
        monkeypatch.setenv("CUSTOM_KEY", base64.b64encode(b"\x00" * 16).decode())
        with pytest.raises(ValueError):
            load_master_key_from_env("CUSTOM_KEY")

    def test_not_base64(self, monkeypatch):
        monkeypatch.setenv("KMS_MASTER_KEY", "***")
        with pytest.raises(ValueError):
            load_master_key_from_env()
