"""Canonical JSON and content hashing.

Mirrors the checksum approach used for lawbooks and remediation inputs: keys
sorted, arrays keep their order, compact separators, UTF-8. Identical logical
content always hashes identically regardless of dict insertion order.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Serialize value to canonical JSON (sorted keys, compact).

    Raises:
        ValueError: If value contains a reference cycle.
    """
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=_json_default,
        )
    except ValueError as exc:
        if "Circular reference" in str(exc):
            raise ValueError("cyclic structure") from exc
        raise


def sha256_hex(text: str) -> str:
    """SHA-256 hex digest of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of value."""
    return sha256_hex(canonical_json(value))
