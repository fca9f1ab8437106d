from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .outcomes import Outcome


def utcnow() -> datetime:
    """Default clock used by stores and services."""
    return datetime.now(timezone.utc)


def normalise_email(email: str) -> str:
    return email.strip().lower()


def classify_activation(expires_at: datetime, used_at: datetime | None, now: datetime) -> Outcome:
    """Decide whether an existing token row may be consumed at ``now``.

    Expiry is checked before prior use, so a used token that has since
    expired reports ``expired``.
    """
    if expires_at <= now:
        return Outcome.expired
    if used_at is not None:
        return Outcome.already_used
    return Outcome.consumed


class UserStatus(str, Enum):
    inactive = "inactive"
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


@dataclass(slots=True)
class User:
    """Aggregate root for a registered account."""

    user_id: str
    email: str
    password_hash: str
    status: UserStatus = UserStatus.inactive
    credits: int = 0
    subscription_tier: str = "free"
    subscription_expires_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None or self.status is UserStatus.deleted


@dataclass(slots=True)
class ActivationToken:
    """Single-use invitation to activate one user's account."""

    token_id: str
    user_id: str
    email: str
    token: str
    expires_at: datetime
    created_at: datetime
    used_at: datetime | None = None


@dataclass(slots=True)
class SessionToken:
    """Persisted session; ``token_hash`` is the SHA-256 of the bearer value."""

    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime
    last_seen_at: datetime | None = None
