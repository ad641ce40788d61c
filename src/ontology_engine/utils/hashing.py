"""
Content hashing and fingerprint helpers
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable


def content_hash(category: str, text: str) -> str:
    """Deduplication hash for questions: 16 lowercase hex chars of sha256(category|text)."""
    digest = hashlib.sha256(f"{category}|{text}".encode("utf-8")).hexdigest()
    return digest[:16]


def value_fingerprint(values: Iterable[Any]) -> str:
    """SHA-256 over the sorted string form of a sample set."""
    ordered = sorted(str(v) for v in values)
    return hashlib.sha256(json.dumps(ordered).encode("utf-8")).hexdigest()


def schema_fingerprint(schema_dict: Any) -> str:
    """Stable hash of a schema description (tables, columns, types, keys)."""
    payload = json.dumps(schema_dict, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
