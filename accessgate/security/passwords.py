"""Password hashing collaborator backed by passlib."""

from __future__ import annotations

from typing import Protocol

from passlib.context import CryptContext


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, digest: str) -> bool: ...

    def dummy_verify(self, plaintext: str) -> None: ...


class PasslibPasswordHasher:
    """Hash new passwords with PBKDF2 while still accepting legacy bcrypt digests."""

    def __init__(self, context: CryptContext | None = None) -> None:
        self._context = context or CryptContext(
            schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto"
        )
        # Verified against when no account matches so both paths cost the same.
        self._dummy_digest = self._context.hash("accessgate-timing-equaliser")

    def hash(self, plaintext: str) -> str:
        return self._context.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return self._context.verify(plaintext, digest)
        except (ValueError, TypeError):
            # unknown or malformed digest
            return False

    def dummy_verify(self, plaintext: str) -> None:
        self._context.verify(plaintext, self._dummy_digest)
