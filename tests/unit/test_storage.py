"""Tests for content stores and media helpers."""

import pytest

from drmkeys.storage.content_store import FileContentStore, InMemoryContentStore, content_uri
from drmkeys.utils.media_io import detect_media_kind, format_bytes, read_segments


class TestContentStores:
    """Test content-addressed blob storage."""

    def test_uri_is_content_addressed(self):
        assert content_uri(b"abc") == content_uri(b"abc")
        assert content_uri(b"abc").startswith("blob://")
        assert content_uri(b"abc") != content_uri(b"abd")

    def test_memory_store(self):
        store = InMemoryContentStore()
        uri = store.put(b"ciphertext")
        assert store.fetch(uri) == b"ciphertext"
        assert len(store) == 1
        with pytest.raises(KeyError):
            store.fetch(content_uri(b"other"))

    def test_memory_store_replace(self):
        store = InMemoryContentStore()
        uri = store.put(b"original")
        store.replace(uri, b"tampered")
        assert store.fetch(uri) == b"tampered"

    def test_file_store(self, tmp_path):
        store = FileContentStore(str(tmp_path / "blobs"))
        uri = store.put(b"encrypted bytes")
        assert store.fetch(uri) == b"encrypted bytes"
        with pytest.raises(KeyError):
            store.fetch(content_uri(b"missing"))

    @pytest.mark.parametrize("uri", ["http://x", "blob://short", "blob://" + "Z" * 64])
    def test_malformed_uri(self, uri):
        with pytest.raises(ValueError):
            InMemoryContentStore().fetch(uri)


class TestMediaIO:
    """Test media helpers."""

    @pytest.mark.parametrize("name, kind", [
        ("clip.mp4", "video"),
        ("photo.png", "image"),
        ("song.mp3", "audio"),
        ("notes.txt", "text"),
        ("blob.unknownext", "other"),
    ])
    def test_detect_media_kind(self, name, kind):
        assert detect_media_kind(name) == kind

    def test_read_segments(self, tmp_path):
        path = tmp_path / "data.bin"
        path.write_bytes(b"a" * 10)
        assert list(read_segments(str(path), 4)) == [b"aaaa", b"aaaa", b"aa"]
        with pytest.raises(ValueError):
            list(read_segments(str(path), 0))

    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(512) == "512 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(512 * 1024) == "512 KB"
