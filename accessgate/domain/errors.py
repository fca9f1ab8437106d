"""Internal failure types raised by stores and collaborators.

Services catch these at their boundary and convert them into
:class:`~accessgate.domain.outcomes.Outcome` values; they never reach the
route layer as exceptions.
"""

from __future__ import annotations

from .outcomes import Outcome


class AccessGateError(Exception):
    """Base class for failures the token services know how to report."""

    outcome: Outcome = Outcome.unavailable


class Unavailable(AccessGateError):
    """A persistence or cache collaborator was unreachable or timed out."""

    outcome = Outcome.unavailable


class StoreUnavailable(Unavailable):
    """The relational store could not complete the operation."""


class CacheUnavailable(Unavailable):
    """The cache backend could not complete the operation."""


class Conflict(AccessGateError):
    """A generated token value collided with an existing row."""

    outcome = Outcome.conflict


class ExhaustedRetries(AccessGateError):
    """Token generation kept colliding until the retry budget ran out."""

    outcome = Outcome.exhausted_retries

    def __init__(self, attempts: int) -> None:
        super().__init__(f"token generation collided {attempts} times")
        self.attempts = attempts


class EntropyUnavailable(AccessGateError):
    """The operating system random source could not be read."""

    outcome = Outcome.entropy_unavailable


class EmailTaken(AccessGateError):
    """Registration attempted with an email that already belongs to a user."""

    outcome = Outcome.conflict
