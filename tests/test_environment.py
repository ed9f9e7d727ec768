"""Tests for canonical environment normalization."""

from __future__ import annotations

import pytest

from app.governance.environment import (
    InvalidEnvironmentError,
    environments_match,
    is_valid_environment,
    normalize_environment,
    try_normalize_environment,
)


@pytest.mark.parametrize(
    ("raw", "canonical"),
    [
        ("prod", "production"),
        ("PRODUCTION", "production"),
        (" Prod ", "production"),
        ("stage", "staging"),
        ("staging", "staging"),
    ],
)
def test_normalize_environment_aliases(raw: str, canonical: str) -> None:
    assert normalize_environment(raw) == canonical


@pytest.mark.parametrize("raw", ["", "   ", "dev", "qa", None, 42])
def test_normalize_environment_rejects_unknown(raw: object) -> None:
    """Unknown or empty values raise; nothing is guessed."""
    with pytest.raises(InvalidEnvironmentError):
        normalize_environment(raw)
    assert try_normalize_environment(raw) is None
    assert is_valid_environment(raw) is False


def test_environments_match_compares_canonical_forms() -> None:
    assert environments_match("prod", "production") is True
    assert environments_match("stage", "prod") is False
    with pytest.raises(InvalidEnvironmentError):
        environments_match("prod", "sandbox")
