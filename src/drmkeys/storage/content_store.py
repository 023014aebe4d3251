"""Content-addressed stores for encrypted asset bytes.

The key-delivery core only ever calls ``fetch(uri)``. Replication, pinning
and garbage collection belong to the real storage network; these stores
exist so ingest and playback can run end to end in one process.

URIs have the form ``blob://<sha256 hex of the ciphertext>``. Integrity of
the fetched bytes is enforced by AES-GCM at decryption time, not here.
"""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Dict, Protocol

SCHEME = "blob://"


class ContentStore(Protocol):
    def fetch(self, uri: str) -> bytes: ...


def content_uri(data: bytes) -> str:
    return SCHEME + hashlib.sha256(data).hexdigest()


def _digest_from_uri(uri: str) -> str:
    if not uri.startswith(SCHEME):
        raise ValueError(f"Unsupported content URI: {uri}")
    digest = uri[len(SCHEME):]
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ValueError(f"Malformed content URI: {uri}")
    return digest


class InMemoryContentStore:
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        uri = content_uri(data)
        with self._lock:
            self._blobs[uri] = bytes(data)
        return uri

    def fetch(self, uri: str) -> bytes:
        _digest_from_uri(uri)
        with self._lock:
            try:
                return self._blobs[uri]
            except KeyError:
                raise KeyError(f"No content stored for {uri}") from None

    def replace(self, uri: str, data: bytes) -> None:
        """Overwrite the bytes behind ``uri`` (used to simulate a hostile store)."""
        with self._lock:
            if uri not in self._blobs:
                raise KeyError(f"No content stored for {uri}")
            self._blobs[uri] = bytes(data)

    def __len__(self) -> int:
        return len(self._blobs)


class FileContentStore:
    """Stores blobs under ``root/<first two hex chars>/<digest>``."""

    def __init__(self, root: str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def put(self, data: bytes) -> str:
        uri = content_uri(data)
        path = self._path(_digest_from_uri(uri))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return uri

    def fetch(self, uri: str) -> bytes:
        path = self._path(_digest_from_uri(uri))
        if not path.exists():
            raise KeyError(f"No content stored for {uri}")
        return path.read_bytes()
