"""Core primitives for verigraph.

This module provides the foundational utilities used throughout the engine:
- Content digests (SHA-256, ``0x``-prefixed to match ledger bytes32 ids)
- Canonical JSON serialization (sorted keys, no whitespace, UTF-8)
- Location normalization for ``https://`` and ``ipfs://`` URIs
- Timestamp helpers

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timezone
from typing import Any, Optional

# Reference placeholder used when a published node is not a reference of another.
ZERO_HASH = "0x" + "00" * 32

_DIGEST_RE = re.compile(r"^0x[a-f0-9]{64}$")
_WHITESPACE_RE = re.compile(r"\s")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning a 0x-prefixed lowercase hex string."""
    return "0x" + hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Digest a non-empty string as UTF-8 bytes."""
    if not text:
        raise ValueError("no value was passed to digest")
    return sha256_bytes(text.encode("utf-8"))


def is_valid_digest(digest: str) -> bool:
    """Check if string is a 0x-prefixed SHA-256 hex digest."""
    return bool(_DIGEST_RE.match(digest or ""))


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (records only carry strings, ints and booleans)

    This ensures byte-for-byte reproducibility for signatures and fingerprints.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, list):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """Digest of the canonical JSON bytes of ``obj``."""
    return sha256_bytes(canonical_json_bytes(obj))


def normalize_label(text: str) -> str:
    """Lower-case and strip all whitespace (hierarchy segment normalization)."""
    return _WHITESPACE_RE.sub("", str(text or "")).lower()


def ensure_https(uri: str) -> str:
    """Prefix ``https://`` unless the URI already carries an http(s) scheme."""
    if not uri:
        return uri
    if not uri.startswith("http://") and not uri.startswith("https://"):
        return "https://" + uri
    return uri


def ensure_ipfs(uri: str) -> str:
    """Prefix ``ipfs://`` unless already present."""
    if not uri:
        return uri
    if not uri.startswith("ipfs://"):
        return "ipfs://" + uri
    return uri


def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso8601(timestamp: str) -> Optional[datetime]:
    """Parse ISO8601 timestamp string; naive values are taken as UTC."""
    try:
        s = timestamp.replace("Z", "+00:00")
        dt = datetime.fromisoformat(s)
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
