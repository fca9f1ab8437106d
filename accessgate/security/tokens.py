"""Utilities for generating and fingerprinting opaque tokens."""

from __future__ import annotations

import hashlib
import secrets

from ..domain.errors import EntropyUnavailable

DEFAULT_TOKEN_BYTES = 32


def generate_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a random hex token drawn from the OS secure random source.

    Parameters
    ----------
    byte_length:
        Number of random bytes; the returned string has ``2 * byte_length``
        hexadecimal characters.

    Raises
    ------
    EntropyUnavailable
        When the operating system cannot supply random bytes.
    """

    if byte_length < 1:
        raise ValueError("byte_length must be positive")
    try:
        return secrets.token_hex(byte_length)
    except (OSError, NotImplementedError) as exc:
        raise EntropyUnavailable("secure random source unavailable") from exc


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest for a token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_prefix(token: str) -> str:
    """Short, non-reversible label for log lines."""
    return token[:8] + "..."
