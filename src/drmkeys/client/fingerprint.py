"""
Device fingerprint sent alongside the handshake.

The fingerprint is a SHA-256 over a few host characteristics joined with
``|`` and encoded as base64. It is spoofable by any client and is used for
anomaly logging only.
"""

import base64
import hashlib
import os
import platform
import time
from typing import List, Optional


def fingerprint_components() -> List[str]:
    """Collect the host characteristics that make up the fingerprint."""
    return [
        platform.system() or "unknown-os",
        platform.machine() or "unknown-arch",
        platform.python_implementation(),
        (time.tzname[0] if time.tzname else "") or "unknown-tz",
        os.environ.get("LANG") or "unknown-lang",
        str(os.cpu_count() or 0),
    ]


def device_fingerprint(components: Optional[List[str]] = None) -> str:
    """Return the base64 SHA-256 of the joined components.

    Args:
        components: Explicit components; defaults to fingerprint_components()

    Returns:
        44-character base64 string
    """
    if components is None:
        components = fingerprint_components()
    digest = hashlib.sha256("|".join(components).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")
