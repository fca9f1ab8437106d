"""Typed results returned by the activation and session services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .account import ActivationToken


class Outcome(str, Enum):
    issued = "issued"
    consumed = "consumed"
    authenticated = "authenticated"
    valid = "valid"
    not_found = "not_found"
    expired = "expired"
    already_used = "already_used"
    invalid_credentials = "invalid_credentials"
    account_inactive = "account_inactive"
    account_active = "account_active"
    account_suspended = "account_suspended"
    conflict = "conflict"
    revoked = "revoked"
    purged = "purged"
    throttled = "throttled"
    unavailable = "unavailable"
    entropy_unavailable = "entropy_unavailable"
    exhausted_retries = "exhausted_retries"


# Failures where retrying with the same input is unlikely to help.
EXHAUSTION_OUTCOMES = frozenset({Outcome.entropy_unavailable, Outcome.exhausted_retries})


@dataclass(frozen=True, slots=True)
class ConsumeResult:
    """Result of a single attempt to consume an activation token."""

    outcome: Outcome
    user_id: str | None = None

    @classmethod
    def consumed(cls, user_id: str) -> "ConsumeResult":
        return cls(Outcome.consumed, user_id)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.consumed


# Activation reports the store's consume result untranslated.
ActivationOutcome = ConsumeResult


@dataclass(frozen=True, slots=True)
class IssueResult:
    """Result of issuing (or reissuing) an activation token."""

    outcome: Outcome
    token: "ActivationToken | None" = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.issued


@dataclass(frozen=True, slots=True)
class LoginResult:
    """Result of a login attempt; carries the session token on success."""

    outcome: Outcome
    token: str | None = None
    user_id: str | None = None
    expires_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.authenticated


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Result of validating a presented session token."""

    outcome: Outcome
    user_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.valid


@dataclass(frozen=True, slots=True)
class PurgeResult:
    """Result of an expired-token sweep; ``purged`` counts deleted rows."""

    outcome: Outcome
    purged: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.purged
