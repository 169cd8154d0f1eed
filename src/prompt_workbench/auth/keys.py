"""Workspace API keys: ``pw_<environment>_<32 hex>``.

Only the SHA-256 digest and a short display prefix are stored; the full
key is shown once, when it is created.
"""

from __future__ import annotations

import hashlib
import re
import secrets

KEY_ENVIRONMENTS = frozenset({"live", "test"})

_KEY_PATTERN = re.compile(r"^pw_(live|test)_[0-9a-f]{32}$")


def generate_api_key(environment: str = "live") -> tuple[str, str, str]:
    """Create a new key.

    Args:
        environment: ``live`` or ``test``.

    Returns:
        Tuple of (full_key, key_hash, key_prefix).

    Raises:
        ValueError: unknown environment.
    """
    if environment not in KEY_ENVIRONMENTS:
        msg = f"Unknown key environment {environment!r}"
        raise ValueError(msg)
    random_part = secrets.token_hex(16)
    full_key = f"pw_{environment}_{random_part}"
    return full_key, hash_api_key(full_key), full_key[: len(environment) + 8]


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def is_well_formed(key: str) -> bool:
    """Cheap syntactic check done before any database lookup."""
    return _KEY_PATTERN.match(key) is not None
