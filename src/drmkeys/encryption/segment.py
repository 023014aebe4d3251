from __future__ import annotations

import hashlib
import json
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable

from ..errors import AuthenticationFailed
from . import primitives
from .keys import IV_SIZE, ContentKey


# Chunked container format:
# MAGIC (7) | version (1) | header_len (4, big-endian) | header JSON bytes
# header JSON includes: {"asset_id": ..., "filename": ..., "chunk_size": ...}
# Followed by chunks: [iv (12) | chunk_ciphertext_length (4) | ciphertext]
# Each chunk authenticates (header digest, chunk index, final flag) as AAD,
# so dropped, reordered or truncated chunks fail to decrypt.

MAGIC = b"DRMSEG1"
VERSION = 1
DEFAULT_CHUNK_SIZE = 64 * 1024
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedSegment:
    ciphertext: bytes
    iv: bytes

    @property
    def encrypted_size(self) -> int:
        return len(self.ciphertext)

    @property
    def original_size(self) -> int:
        return len(self.ciphertext) - TAG_SIZE


def encrypt_asset(dek, plaintext: bytes) -> EncryptedSegment:
    """Encrypt asset bytes once at ingest under their content key with a fresh IV."""
    iv = primitives.generate_iv()
    return EncryptedSegment(ciphertext=primitives.aes_gcm_encrypt(dek, plaintext, iv), iv=iv)


def decrypt_asset(dek, ciphertext: bytes, iv: bytes) -> bytes:
    """Decrypt asset bytes. AuthenticationFailed is fatal for this fetch."""
    return primitives.aes_gcm_decrypt(dek, ciphertext, iv)


def encryption_stats(segments: Iterable[EncryptedSegment]) -> Dict[str, float]:
    segments = list(segments)
    original = sum(s.original_size for s in segments)
    encrypted = sum(s.encrypted_size for s in segments)
    overhead = encrypted - original
    return {
        "total_segments": len(segments),
        "total_original_size": original,
        "total_encrypted_size": encrypted,
        "overhead": overhead,
        "overhead_percentage": (overhead / original * 100) if original else 0.0,
    }


def _write_header(out: BinaryIO, metadata: Dict[str, object]) -> bytes:
    header_json = json.dumps(metadata, sort_keys=True).encode("utf-8")
    out.write(MAGIC)
    out.write(bytes([VERSION]))
    out.write(len(header_json).to_bytes(4, "big"))
    out.write(header_json)
    return header_json


def _read_header(f: BinaryIO) -> tuple[Dict[str, object], bytes]:
    magic = f.read(len(MAGIC))
    if magic != MAGIC:
        raise ValueError("Not a DRMSEG encrypted file")
    version = f.read(1)
    if not version:
        raise ValueError("Truncated file (no version)")
    if version[0] != VERSION:
        raise ValueError(f"Unsupported version: {version[0]}")
    header_len = int.from_bytes(f.read(4), "big")
    header = f.read(header_len)
    if len(header) < header_len:
        raise ValueError("Truncated header")
    return json.loads(header.decode("utf-8")), header


def _chunk_aad(header_digest: bytes, index: int, final: bool) -> bytes:
    return header_digest + struct.pack(">Q?", index, final)


def encrypt_file(input_path: str, output_path: str, dek: ContentKey,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 metadata: Dict[str, object] | None = None) -> Dict[str, object]:
    """Stream-encrypt a file in chunks under one content key.

    Each chunk gets its own IV and is bound to its position in the file.
    Returns the header metadata written.

    Raises:
        ValueError: If chunk_size is not positive
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    metadata = dict(metadata or {})
    metadata.setdefault("filename", Path(input_path).name)
    metadata["chunk_size"] = chunk_size

    with open(input_path, "rb") as fin, open(output_path, "wb") as fout:
        header = _write_header(fout, metadata)
        digest = hashlib.sha256(header).digest()
        index = 0
        chunk = fin.read(chunk_size)
        while True:
            nxt = fin.read(chunk_size)
            final = not nxt
            iv = primitives.generate_iv()
            ct = primitives.aes_gcm_encrypt(dek, chunk, iv, _chunk_aad(digest, index, final))
            fout.write(iv)
            fout.write(len(ct).to_bytes(4, "big"))
            fout.write(ct)
            if final:
                break
            chunk = nxt
            index += 1
    return metadata


def decrypt_file(input_path: str, output_path: str, dek: ContentKey) -> Dict[str, object]:
    """Decrypt a file written by encrypt_file(). Returns the header metadata.

    The output file is removed if any chunk fails to authenticate.
    """
    try:
        with open(input_path, "rb") as fin, open(output_path, "wb") as fout:
            metadata, header = _read_header(fin)
            digest = hashlib.sha256(header).digest()
            index = 0
            while True:
                iv = fin.read(IV_SIZE)
                if not iv:
                    # ran out before a chunk flagged as final
                    raise AuthenticationFailed("Encrypted file is truncated")
                ct_len_b = fin.read(4)
                if len(ct_len_b) < 4:
                    raise AuthenticationFailed("Truncated chunk length")
                ct_len = int.from_bytes(ct_len_b, "big")
                ct = fin.read(ct_len)
                if len(ct) < ct_len:
                    raise AuthenticationFailed("Truncated ciphertext")
                final = fin.peek(1) == b""
                pt = primitives.aes_gcm_decrypt(dek, ct, iv, _chunk_aad(digest, index, final))
                fout.write(pt)
                if final:
                    break
                index += 1
    except (AuthenticationFailed, ValueError):
        if os.path.exists(output_path):
            os.remove(output_path)
        raise
    return metadata
