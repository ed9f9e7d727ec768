"""Canonical deployment environments.

All environment comparisons (allowlist lookups, "does this verification apply to the
incident's target") go through normalize_environment. Unknown values raise instead of
being guessed, so callers fail closed.
"""

from __future__ import annotations

CANONICAL_ENVIRONMENTS: tuple[str, ...] = ("production", "staging")

_ALIASES: dict[str, str] = {
    "prod": "production",
    "production": "production",
    "stage": "staging",
    "staging": "staging",
}


class InvalidEnvironmentError(ValueError):
    """Raised when an environment string has no canonical form."""


def normalize_environment(value: object) -> str:
    """Return the canonical environment for value ("prod" -> "production").

    Raises:
        InvalidEnvironmentError: If value is empty, not a string, or not a known alias.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidEnvironmentError("environment must be a non-empty string")
    canonical = _ALIASES.get(value.strip().lower())
    if canonical is None:
        raise InvalidEnvironmentError(f"unknown environment: {value!r}")
    return canonical


def try_normalize_environment(value: object) -> str | None:
    """Like normalize_environment but returns None for unknown values."""
    try:
        return normalize_environment(value)
    except InvalidEnvironmentError:
        return None


def is_valid_environment(value: object) -> bool:
    return try_normalize_environment(value) is not None


def environments_match(left: object, right: object) -> bool:
    """True if both values normalize to the same canonical environment.

    Raises:
        InvalidEnvironmentError: If either value is not a known environment.
    """
    return normalize_environment(left) == normalize_environment(right)
