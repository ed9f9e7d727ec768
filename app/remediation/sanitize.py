"""Redaction of secrets from step outputs before they are persisted or returned."""

from __future__ import annotations

import re
from typing import Any

REDACTED = "********"

# Matched against whole key segments ("api_key" -> "api", "key"), singular or plural.
SENSITIVE_KEY_PARTS = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "key",
        "apikey",
        "auth",
        "oauth",
        "authorization",
        "authentication",
        "cookie",
        "bearer",
        "credential",
        "signature",
    }
)
# Compact compounds such as "accesstoken" or "clientsecret".
SENSITIVE_KEY_SUFFIXES = ("token", "secret", "password", "apikey")

_CAMEL_BOUNDARY_RE = re.compile(r"([a-z0-9])([A-Z])")
_KEY_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")

_JWT_RE = re.compile(r"^eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*$")
_PREFIXED_SECRET_RE = re.compile(r"^(sk|pk|api|key)-(?=[A-Za-z0-9_-]*\d)[A-Za-z0-9_-]{6,}$")
_BEARER_RE = re.compile(r"^bearer\s+\S+", re.IGNORECASE)
_URL_WITH_QUERY_RE = re.compile(r"\b[a-z][a-z0-9+.-]*://[^?\s]+\?\S+", re.IGNORECASE)


def _key_segments(key: str) -> list[str]:
    spaced = _CAMEL_BOUNDARY_RE.sub(r"\1_\2", key).lower()
    return [segment for segment in _KEY_SEPARATOR_RE.split(spaced) if segment]


def _is_sensitive_segment(segment: str) -> bool:
    singular = segment[:-1] if segment.endswith("s") else segment
    return (
        segment in SENSITIVE_KEY_PARTS
        or singular in SENSITIVE_KEY_PARTS
        or singular.endswith(SENSITIVE_KEY_SUFFIXES)
    )


def is_sensitive_key(key: str) -> bool:
    """True when a segment of key names a secret; "header(s)" counts only as the last segment."""
    segments = _key_segments(key)
    if not segments:
        return False
    if segments[-1] in ("header", "headers"):
        return True
    return any(_is_sensitive_segment(segment) for segment in segments)


def looks_secret(value: str) -> bool:
    """True for JWTs, sk-/pk-/api-/key- prefixed tokens, Bearer values and URLs with a query."""
    candidate = value.strip()
    return bool(
        _JWT_RE.match(candidate)
        or _PREFIXED_SECRET_RE.match(candidate)
        or _BEARER_RE.match(candidate)
        or _URL_WITH_QUERY_RE.fullmatch(candidate)
    )


def redact_text(value: str) -> str:
    """Redact a secret-looking string, or any URL with a query string embedded in it."""
    if looks_secret(value):
        return REDACTED
    return _URL_WITH_QUERY_RE.sub(REDACTED, value)


def sanitize_redact(value: Any) -> Any:
    """Return a copy of value with secrets replaced by "********".

    A sensitive key redacts its whole value (including nested structures). Dicts and lists
    are walked recursively; other non-string values are returned unchanged.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and is_sensitive_key(k) else sanitize_redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [sanitize_redact(v) for v in value]
    if isinstance(value, str):
        return redact_text(value)
    return value
