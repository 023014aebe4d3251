from __future__ import annotations

import mimetypes
from typing import Iterator, Literal


MediaKind = Literal["image", "video", "audio", "text", "other"]


def detect_media_kind(path: str) -> MediaKind:
    """Return a high-level media kind for a file path based on mimetype."""
    mt, _ = mimetypes.guess_type(path)
    if mt is None:
        return "other"
    for kind in ("image", "video", "audio", "text"):
        if mt.startswith(kind):
            return kind
    return "other"


def read_segments(path: str, segment_size: int) -> Iterator[bytes]:
    """Split a file into fixed-size segments (the last one may be shorter)."""
    if segment_size <= 0:
        raise ValueError("segment_size must be positive")
    with open(path, "rb") as f:
        while True:
            chunk = f.read(segment_size)
            if not chunk:
                break
            yield chunk


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f}".rstrip("0").rstrip(".") + f" {unit}"
        value /= 1024
