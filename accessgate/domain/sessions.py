"""Session authentication: login, per-request validation and logout."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .account import UserStatus, normalise_email, utcnow
from .contracts import Cache, Clock, SessionStore, UserStore
from .errors import AccessGateError, CacheUnavailable, Conflict, ExhaustedRetries
from .outcomes import LoginResult, Outcome, ValidationResult
from ..cache import MISS
from ..observability import record, report_failure
from ..security.passwords import PasswordHasher
from ..security.throttle import LoginThrottle
from ..security.tokens import DEFAULT_TOKEN_BYTES, generate_token, hash_token

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 86400


class SessionAuthenticator:
    """Validate credentials and manage cache-fronted session tokens.

    The durable session store is the system of record. The cache only saves
    a store round trip on hot validations; losing it (cold start, outage)
    changes latency, never the answer.
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        cache: Cache,
        hasher: PasswordHasher,
        *,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        token_bytes: int = DEFAULT_TOKEN_BYTES,
        retry_budget: int = 5,
        throttle: LoginThrottle | None = None,
        generator: Callable[[int], str] = generate_token,
        clock: Clock = utcnow,
    ) -> None:
        """Store collaborators and session policy."""
        self._users = users
        self._sessions = sessions
        self._cache = cache
        self._hasher = hasher
        self._ttl = timedelta(seconds=ttl_seconds)
        self._token_bytes = token_bytes
        self._retry_budget = retry_budget
        self._throttle = throttle
        self._generate = generator
        self._clock = clock

    def login(self, email: str, password: str) -> LoginResult:
        """Authenticate ``email``/``password`` and open a session.

        An unknown email, a soft-deleted account and a wrong password all
        return the same ``invalid_credentials`` result. Account status is
        only disclosed once the password has been verified.
        """
        if self._throttle is not None and not self._throttle.hit(f"login:{normalise_email(email)}"):
            return LoginResult(record("login", Outcome.throttled))

        try:
            user = self._users.find_by_email(email)
        except AccessGateError as exc:
            return LoginResult(report_failure(logger, "login", exc))

        if user is None:
            self._hasher.dummy_verify(password)
            return LoginResult(record("login", Outcome.invalid_credentials))
        password_ok = self._hasher.verify(password, user.password_hash)
        if user.is_deleted or not password_ok:
            return LoginResult(record("login", Outcome.invalid_credentials))
        if user.status is UserStatus.inactive:
            return LoginResult(record("login", Outcome.account_inactive))
        if user.status is UserStatus.suspended:
            return LoginResult(record("login", Outcome.account_suspended))

        try:
            token, expires_at = self._open_session(user.user_id)
        except AccessGateError as exc:
            return LoginResult(report_failure(logger, "login", exc))

        logger.info("session opened for user %s", user.user_id)
        return LoginResult(
            record("login", Outcome.authenticated),
            token=token,
            user_id=user.user_id,
            expires_at=expires_at,
        )

    def validate(self, token_value: str) -> ValidationResult:
        """Resolve a presented session token to its user.

        Expired sessions are evicted from both cache and store when read.
        """
        token_hash = hash_token(token_value)
        now = self._clock()

        cached = self._cache_get(token_hash)
        if cached is not MISS:
            if datetime.fromisoformat(cached["expires_at"]) > now:
                return ValidationResult(record("validate", Outcome.valid), cached["user_id"])
            self._evict(token_hash)
            return ValidationResult(record("validate", Outcome.expired))

        try:
            session = self._sessions.find_session(token_hash)
            if session is None:
                return ValidationResult(record("validate", Outcome.not_found))
            if session.expires_at <= now:
                self._evict(token_hash)
                return ValidationResult(record("validate", Outcome.expired))
            self._sessions.touch_session(token_hash, now)
        except AccessGateError as exc:
            return ValidationResult(report_failure(logger, "validate", exc))

        remaining = int((session.expires_at - now).total_seconds())
        self._cache_put(token_hash, session.user_id, session.expires_at, remaining)
        return ValidationResult(record("validate", Outcome.valid), session.user_id)

    def logout(self, token_value: str) -> Outcome | None:
        """Forget a session; logging out an unknown token is not an error.

        Returns ``None`` once the session is gone from both store and cache,
        or ``unavailable`` when either could not be reached. The store row
        goes first, so retrying after a cache failure completes the logout.
        """
        token_hash = hash_token(token_value)
        try:
            self._sessions.delete_session(token_hash)
            self._cache.delete(self._cache_key(token_hash))
        except AccessGateError as exc:
            return report_failure(logger, "logout", exc)
        record("logout", Outcome.revoked)
        return None

    def revoke_user_sessions(self, user_id: str) -> Outcome:
        """Destroy every live session of ``user_id``.

        Cache entries are dropped before the rows, so after a cache failure
        the rows (and their hashes) remain for the retry.
        """
        try:
            listed = self._sessions.list_user_sessions(user_id)
            for token_hash in listed:
                self._cache.delete(self._cache_key(token_hash))
            deleted = self._sessions.delete_user_sessions(user_id)
            for token_hash in set(deleted).difference(listed):
                self._cache.delete(self._cache_key(token_hash))
        except AccessGateError as exc:
            return report_failure(logger, "revoke", exc)
        if deleted:
            logger.info("revoked %d sessions for user %s", len(deleted), user_id)
        return record("revoke", Outcome.revoked)

    def suspend_account(self, user_id: str) -> Outcome:
        """Suspend the account and end its sessions."""
        try:
            user = self._users.set_status(user_id, UserStatus.suspended.value)
        except AccessGateError as exc:
            return report_failure(logger, "suspend", exc)
        if user is None:
            return record("suspend", Outcome.not_found)
        return record("suspend", self.revoke_user_sessions(user_id))

    def delete_account(self, user_id: str) -> Outcome:
        """Soft-delete the account and end its sessions."""
        try:
            user = self._users.soft_delete(user_id)
        except AccessGateError as exc:
            return report_failure(logger, "delete", exc)
        if user is None:
            return record("delete", Outcome.not_found)
        return record("delete", self.revoke_user_sessions(user_id))

    def _open_session(self, user_id: str) -> tuple[str, datetime]:
        for _ in range(self._retry_budget):
            token = self._generate(self._token_bytes)
            token_hash = hash_token(token)
            expires_at = self._clock() + self._ttl
            try:
                self._sessions.create_session(token_hash, user_id, expires_at)
            except Conflict:
                logger.warning("session token collision for user %s", user_id)
                continue
            self._cache_put(token_hash, user_id, expires_at, int(self._ttl.total_seconds()))
            return token, expires_at
        raise ExhaustedRetries(self._retry_budget)

    def _cache_key(self, token_hash: str) -> str:
        return f"session:{token_hash}"

    def _cache_get(self, token_hash: str):
        try:
            return self._cache.get(self._cache_key(token_hash))
        except CacheUnavailable as exc:
            logger.warning("session cache read failed, using store: %s", exc)
            return MISS

    def _cache_put(self, token_hash: str, user_id: str, expires_at: datetime, ttl: int) -> None:
        if ttl <= 0:
            return
        try:
            self._cache.set(
                self._cache_key(token_hash),
                {"user_id": user_id, "expires_at": expires_at.isoformat()},
                ttl,
            )
        except CacheUnavailable as exc:
            logger.warning("session cache write failed: %s", exc)

    def _cache_delete(self, token_hash: str) -> None:
        try:
            self._cache.delete(self._cache_key(token_hash))
        except CacheUnavailable as exc:
            logger.warning("session cache delete failed: %s", exc)

    def _evict(self, token_hash: str) -> None:
        self._cache_delete(token_hash)
        try:
            self._sessions.delete_session(token_hash)
        except AccessGateError as exc:
            # the session is expired either way; the next read retries the delete
            logger.warning("could not evict expired session: %s", exc)
