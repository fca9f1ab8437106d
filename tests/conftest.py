from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from threading import Lock

import fakeredis
import pytest

from accessgate.cache import RedisCache
from accessgate.domain.account import (
    ActivationToken,
    SessionToken,
    User,
    UserStatus,
    classify_activation,
    normalise_email,
)
from accessgate.domain.activation import ActivationService
from accessgate.domain.contracts import CreateUserInput
from accessgate.domain.errors import EmailTaken, ExhaustedRetries, StoreUnavailable
from accessgate.domain.outcomes import ConsumeResult, Outcome
from accessgate.domain.sessions import SessionAuthenticator
from accessgate.security.passwords import PasslibPasswordHasher
from accessgate.security.tokens import generate_token


class ManualClock:
    """Test clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeUserRepository:
    """In-memory user store mimicking the Postgres repository."""

    def __init__(self, clock: ManualClock) -> None:
        self._users: dict[str, User] = {}
        self._clock = clock
        self._lock = Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("users offline")

    def create_user(self, payload: CreateUserInput) -> User:
        self._check()
        email = normalise_email(payload.email)
        with self._lock:
            if any(user.email == email for user in self._users.values()):
                raise EmailTaken("email already registered")
            user = User(
                user_id=str(uuid.uuid4()),
                email=email,
                password_hash=payload.password_hash,
                created_at=self._clock(),
            )
            self._users[user.user_id] = user
        return replace(user)

    def get_user(self, user_id: str) -> User | None:
        self._check()
        user = self._users.get(user_id)
        return replace(user) if user else None

    def find_by_email(self, email: str) -> User | None:
        self._check()
        wanted = normalise_email(email)
        for user in self._users.values():
            if user.email == wanted:
                return replace(user)
        return None

    def activate(self, user_id: str, conn=None) -> UserStatus | None:
        self._check()
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            if user.deleted_at is not None:
                return UserStatus.deleted
            if user.status is UserStatus.inactive:
                user.status = UserStatus.active
            return user.status

    def set_status(self, user_id: str, status: str) -> User | None:
        self._check()
        user = self._users.get(user_id)
        if user is None:
            return None
        user.status = UserStatus(status)
        return replace(user)

    def soft_delete(self, user_id: str) -> User | None:
        self._check()
        user = self._users.get(user_id)
        if user is None:
            return None
        user.status = UserStatus.deleted
        user.deleted_at = user.deleted_at or self._clock()
        return replace(user)


class FakeTokenStore:
    """In-memory activation token store; one lock stands in for the row lock."""

    def __init__(self, clock: ManualClock, *, retry_budget: int = 5, generator=generate_token) -> None:
        self.rows: dict[str, ActivationToken] = {}
        self._clock = clock
        self._retry_budget = retry_budget
        self._generate = generator
        self._lock = Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("tokens offline")

    def issue(self, user_id: str, email: str, ttl: timedelta) -> ActivationToken:
        self._check()
        for _ in range(self._retry_budget):
            value = self._generate(32)
            with self._lock:
                if value in self.rows:
                    continue
                now = self._clock()
                token = ActivationToken(
                    token_id=str(uuid.uuid4()),
                    user_id=user_id,
                    email=email,
                    token=value,
                    expires_at=now + ttl,
                    created_at=now,
                )
                self.rows[value] = token
                return replace(token)
        raise ExhaustedRetries(self._retry_budget)

    def consume(self, token_value: str, on_consumed=None) -> ConsumeResult:
        self._check()
        with self._lock:
            row = self.rows.get(token_value)
            if row is None:
                return ConsumeResult(Outcome.not_found)
            now = self._clock()
            outcome = classify_activation(row.expires_at, row.used_at, now)
            if outcome is not Outcome.consumed:
                return ConsumeResult(outcome, row.user_id)
            if on_consumed is not None:
                on_consumed(None, row.user_id)
            row.used_at = now
        return ConsumeResult.consumed(row.user_id)

    def invalidate_outstanding(self, user_id: str) -> int:
        self._check()
        now = self._clock()
        count = 0
        with self._lock:
            for row in self.rows.values():
                if row.user_id == user_id and row.used_at is None and row.expires_at > now:
                    row.used_at = now
                    count += 1
        return count

    def has_outstanding(self, user_id: str) -> bool:
        self._check()
        now = self._clock()
        return any(
            row.user_id == user_id and row.used_at is None and row.expires_at > now
            for row in self.rows.values()
        )

    def purge_expired(self, older_than: datetime) -> int:
        self._check()
        with self._lock:
            doomed = [
                key
                for key, row in self.rows.items()
                if row.expires_at < older_than and row.used_at is not None
            ]
            for key in doomed:
                del self.rows[key]
        return len(doomed)


class FakeSessionStore:
    def __init__(self, clock: ManualClock) -> None:
        self.rows: dict[str, SessionToken] = {}
        self._clock = clock
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("sessions offline")

    def create_session(self, token_hash: str, user_id: str, expires_at: datetime) -> SessionToken:
        self._check()
        session = SessionToken(
            token_hash=token_hash,
            user_id=user_id,
            expires_at=expires_at,
            created_at=self._clock(),
        )
        self.rows[token_hash] = session
        return session

    def find_session(self, token_hash: str) -> SessionToken | None:
        self._check()
        return self.rows.get(token_hash)

    def touch_session(self, token_hash: str, seen_at: datetime) -> None:
        self._check()
        if token_hash in self.rows:
            self.rows[token_hash].last_seen_at = seen_at

    def delete_session(self, token_hash: str) -> bool:
        self._check()
        return self.rows.pop(token_hash, None) is not None

    def list_user_sessions(self, user_id: str) -> list[str]:
        self._check()
        return [key for key, row in self.rows.items() if row.user_id == user_id]

    def delete_user_sessions(self, user_id: str) -> list[str]:
        self._check()
        doomed = [key for key, row in self.rows.items() if row.user_id == user_id]
        for key in doomed:
            del self.rows[key]
        return doomed


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, ActivationToken]] = []

    def send_activation(self, email: str, token: ActivationToken) -> None:
        self.sent.append((email, token))


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def users(clock) -> FakeUserRepository:
    return FakeUserRepository(clock)


@pytest.fixture
def token_store(clock) -> FakeTokenStore:
    return FakeTokenStore(clock)


@pytest.fixture
def session_store(clock) -> FakeSessionStore:
    return FakeSessionStore(clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="session")
def hasher() -> PasslibPasswordHasher:
    return PasslibPasswordHasher()


@pytest.fixture
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


@pytest.fixture
def cache(redis_client) -> RedisCache:
    return RedisCache(redis_client, key_prefix="test")


@pytest.fixture
def activation(token_store, users, notifier) -> ActivationService:
    return ActivationService(token_store, users, notifier=notifier)


@pytest.fixture
def authenticator(users, session_store, cache, hasher, clock) -> SessionAuthenticator:
    return SessionAuthenticator(users, session_store, cache, hasher, ttl_seconds=3600, clock=clock)


@pytest.fixture
def make_user(users, hasher):
    """Create a user with the given status and password ``correct horse``."""

    def _make(email: str = "user@example.com", status: UserStatus = UserStatus.inactive) -> User:
        user = users.create_user(
            CreateUserInput(email=email, password_hash=hasher.hash("correct horse"))
        )
        if status is UserStatus.deleted:
            return users.soft_delete(user.user_id)
        if status is not UserStatus.inactive:
            return users.set_status(user.user_id, status.value)
        return user

    return _make
