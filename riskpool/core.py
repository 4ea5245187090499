"""Core primitives for the risk pool ledger.

- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- Evidence fingerprints

Design principles:
- Pure functions
- No global mutable state
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Union


EVIDENCE_BYTES = 32
NO_EVIDENCE = bytes(EVIDENCE_BYTES)


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def evidence_fingerprint(document: Union[bytes, str]) -> bytes:
    """Fingerprint a supporting document for attachment to a claim."""
    if isinstance(document, str):
        document = document.encode("utf-8")
    return hashlib.sha256(document).digest()


def has_evidence(fingerprint: bytes) -> bool:
    return fingerprint != NO_EVIDENCE
