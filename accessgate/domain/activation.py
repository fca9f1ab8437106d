"""Activation workflow: issue, resend and single-use consumption of tokens."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .account import ActivationToken, User, UserStatus
from .contracts import ActivationNotifier, TokenStore, UserStore
from .errors import AccessGateError
from .outcomes import ActivationOutcome, ConsumeResult, IssueResult, Outcome, PurgeResult
from ..observability import record, report_failure
from ..security.tokens import token_prefix

logger = logging.getLogger(__name__)

ACTIVATION_TTL = timedelta(hours=72)

_REFUSED_OUTCOMES = {
    UserStatus.suspended: Outcome.account_suspended,
    UserStatus.deleted: Outcome.not_found,
}


class _ActivationRefused(Exception):
    """Raised inside the consume transaction to roll the token update back."""

    def __init__(self, status: UserStatus | None) -> None:
        super().__init__(f"user cannot be activated from status {status}")
        self.status = status


class ActivationService:
    """Issue activation tokens and activate accounts exactly once per token."""

    def __init__(
        self,
        tokens: TokenStore,
        users: UserStore,
        *,
        notifier: ActivationNotifier | None = None,
        ttl: timedelta = ACTIVATION_TTL,
    ) -> None:
        """Store the token store, user store and delivery collaborator."""
        self._tokens = tokens
        self._users = users
        self._notifier = notifier
        self._ttl = ttl

    def register_and_issue(self, user: User) -> IssueResult:
        """Issue the first activation token for a freshly registered user."""
        refused = self._refuse_issue(user)
        if refused is not None:
            return IssueResult(record("register", refused))
        return self._issue("register", user)

    def activate(self, token_value: str) -> ActivationOutcome:
        """Consume ``token_value`` and mark its user active in the same transaction.

        Business outcomes from the store (``not_found``, ``expired``,
        ``already_used``) are returned untranslated and leave the user
        untouched. A user that is already active still counts as success,
        but the token itself can only be consumed once.
        """

        def _transition(conn: Any, user_id: str) -> None:
            status = self._users.activate(user_id, conn)
            if status is not UserStatus.active:
                raise _ActivationRefused(status)

        try:
            result = self._tokens.consume(token_value, on_consumed=_transition)
        except _ActivationRefused as exc:
            outcome = _REFUSED_OUTCOMES.get(exc.status, Outcome.not_found)
            logger.info("activation refused for token %s: %s", token_prefix(token_value), exc)
            return ConsumeResult(record("activate", outcome))
        except AccessGateError as exc:
            return ConsumeResult(report_failure(logger, "activate", exc))

        record("activate", result.outcome)
        if result.ok:
            logger.info("user %s activated", result.user_id)
        return result

    def resend(self, user_id: str) -> IssueResult:
        """Invalidate outstanding tokens for the user, then issue a new one."""
        try:
            user = self._users.get_user(user_id)
        except AccessGateError as exc:
            return IssueResult(report_failure(logger, "resend", exc))
        if user is None:
            return IssueResult(record("resend", Outcome.not_found))
        refused = self._refuse_issue(user)
        if refused is not None:
            return IssueResult(record("resend", refused))

        try:
            if self._tokens.has_outstanding(user.user_id):
                invalidated = self._tokens.invalidate_outstanding(user.user_id)
                logger.info("invalidated %d outstanding tokens for user %s", invalidated, user.user_id)
        except AccessGateError as exc:
            return IssueResult(report_failure(logger, "resend", exc))
        return self._issue("resend", user)

    def resend_by_email(self, email: str) -> IssueResult:
        """Resend for the account registered under ``email`` (case-insensitive)."""
        try:
            user = self._users.find_by_email(email)
        except AccessGateError as exc:
            return IssueResult(report_failure(logger, "resend", exc))
        if user is None:
            return IssueResult(record("resend", Outcome.not_found))
        return self.resend(user.user_id)

    def purge_expired(self, older_than: datetime) -> PurgeResult:
        """Delete used tokens that expired before ``older_than``; unused ones are kept."""
        try:
            count = self._tokens.purge_expired(older_than)
        except AccessGateError as exc:
            return PurgeResult(report_failure(logger, "purge", exc))
        logger.info("purged %d activation tokens expired before %s", count, older_than.isoformat())
        return PurgeResult(record("purge", Outcome.purged), count)

    def _refuse_issue(self, user: User) -> Outcome | None:
        if user.is_deleted:
            return Outcome.not_found
        if user.status is UserStatus.active:
            return Outcome.account_active
        if user.status is UserStatus.suspended:
            return Outcome.account_suspended
        return None

    def _issue(self, operation: str, user: User) -> IssueResult:
        try:
            token = self._tokens.issue(user.user_id, user.email, self._ttl)
        except AccessGateError as exc:
            return IssueResult(report_failure(logger, operation, exc))
        logger.info(
            "activation token %s issued for user %s, expires %s",
            token_prefix(token.token),
            user.user_id,
            token.expires_at.isoformat(),
        )
        if self._notifier is not None:
            self._notifier.send_activation(user.email, token)
        return IssueResult(record(operation, Outcome.issued), token)


class LogNotifier:
    """Stand-in delivery channel that records activation links in the log."""

    def __init__(self, link_template: str = "/activate?token={token}") -> None:
        self._link_template = link_template

    def send_activation(self, email: str, token: ActivationToken) -> None:
        logger.info(
            "activation link for %s: %s",
            email,
            self._link_template.format(token=token_prefix(token.token)),
        )
