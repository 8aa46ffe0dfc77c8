"""Tests for domain validation and derived identifiers."""
from __future__ import annotations

import string

import pytest

from ironstack.errors import ValidationError
from ironstack.sites.naming import (
    PASSWORD_SYMBOLS,
    derive_db_name,
    derive_db_user,
    generate_password,
    sanitize_name,
    staging_domain,
    validate_domain,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Example.COM", "example.com"),
        ("  shop.example.com. ", "shop.example.com"),
        ("xn--bcher-kva.example", "xn--bcher-kva.example"),
        ("a-b.c-d.io", "a-b.c-d.io"),
    ],
)
def test_validate_domain_normalises(raw: str, expected: str) -> None:
    """Valid domains are lower-cased and stripped."""
    assert validate_domain(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["", "localhost", "-bad.example", "bad-.example", "under_score.example", "a..b", "10.0.0.1", "x" * 64 + ".com"],
)
def test_validate_domain_rejects(raw: str) -> None:
    """Malformed domains raise ValidationError."""
    with pytest.raises(ValidationError):
        validate_domain(raw)


def test_sanitize_and_derive_are_deterministic() -> None:
    """Database identifiers derive from the domain alone."""
    assert sanitize_name("my-shop.example.com") == "my_shop_example_com"
    assert derive_db_name("my-shop.example.com") == "my_shop_example_com_db"
    assert derive_db_user("my-shop.example.com") == "my_shop_example_com_user"
    assert derive_db_name("my-shop.example.com") == derive_db_name("my-shop.example.com")


def test_derived_names_respect_length_limits() -> None:
    """Domains whose derived identifiers are too long are rejected."""
    long_domain = "a" * 60 + ".example"
    with pytest.raises(ValidationError):
        derive_db_name(long_domain)
    # The user limit is more generous.
    assert derive_db_user(long_domain).endswith("_user")


def test_generate_password_contains_every_class() -> None:
    """Generated passwords are long and mix all character classes."""
    password = generate_password()

    assert len(password) == 24
    assert any(char in string.ascii_lowercase for char in password)
    assert any(char in string.ascii_uppercase for char in password)
    assert any(char in string.digits for char in password)
    assert any(char in PASSWORD_SYMBOLS for char in password)
    assert not set(password) & set("'\"\\$`")
    assert generate_password() != password


def test_generate_password_rejects_tiny_lengths() -> None:
    """Lengths too short for every class are refused."""
    with pytest.raises(ValueError):
        generate_password(3)


def test_staging_domain_prefix() -> None:
    """Staging copies live under the ``staging.`` prefix."""
    assert staging_domain("example.com") == "staging.example.com"
