"""Domain validation and derived identifiers."""
from __future__ import annotations

import re
import secrets
import string

from ..errors import ValidationError

STAGING_PREFIX = "staging."
MAX_DB_NAME_LENGTH = 64
MAX_DB_USER_LENGTH = 80
PASSWORD_LENGTH = 24
PASSWORD_SYMBOLS = "!@#%^*-_=+"

_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def validate_domain(value: str) -> str:
    """Return the normalised domain or raise :class:`ValidationError`."""
    domain = str(value).strip().lower().rstrip(".")
    if not domain or len(domain) > 253:
        raise ValidationError(f"Invalid domain name: {value!r}.")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError(f"Domain must contain at least one dot: {value!r}.")
    for label in labels:
        if not _LABEL.match(label):
            raise ValidationError(f"Invalid domain label {label!r} in {value!r}.")
    if labels[-1].isdigit():
        raise ValidationError(f"Domain must not end with a numeric label: {value!r}.")
    return domain


def sanitize_name(domain: str) -> str:
    """Fold ``.`` and ``-`` to ``_`` and drop everything but ``[a-z0-9]``."""
    result: list[str] = []
    for char in domain.lower():
        if char in ".-":
            result.append("_")
        elif char in string.ascii_lowercase or char in string.digits:
            result.append(char)
    return "".join(result)


def derive_db_name(domain: str) -> str:
    """Return the database name for *domain*."""
    name = sanitize_name(domain) + "_db"
    if len(name) > MAX_DB_NAME_LENGTH:
        raise ValidationError(
            f"Derived database name for {domain} exceeds {MAX_DB_NAME_LENGTH} characters."
        )
    return name


def derive_db_user(domain: str) -> str:
    """Return the database user for *domain*."""
    user = sanitize_name(domain) + "_user"
    if len(user) > MAX_DB_USER_LENGTH:
        raise ValidationError(
            f"Derived database user for {domain} exceeds {MAX_DB_USER_LENGTH} characters."
        )
    return user


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random password containing every character class."""
    if length < 4:
        raise ValueError("Password length must allow one character of each class.")
    classes = (string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SYMBOLS)
    alphabet = "".join(classes)
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if all(any(char in group for char in candidate) for group in classes):
            return candidate


def staging_domain(domain: str) -> str:
    """Return the conventional staging domain for *domain*."""
    return STAGING_PREFIX + domain


__all__ = [
    "STAGING_PREFIX",
    "derive_db_name",
    "derive_db_user",
    "generate_password",
    "sanitize_name",
    "staging_domain",
    "validate_domain",
]
