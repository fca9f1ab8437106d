"""Repository behaviour against a live Postgres.

Set ``ACCESSGATE_TEST_DATABASE_URL`` to a disposable database to run these;
the tables are truncated before every test.
"""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta
from threading import Barrier

import pytest
from psycopg_pool import ConnectionPool

from accessgate.config import Settings
from accessgate.domain.account import UserStatus
from accessgate.domain.activation import ActivationService
from accessgate.domain.contracts import CreateUserInput
from accessgate.domain.errors import StoreUnavailable
from accessgate.domain.outcomes import Outcome
from accessgate.repository import (
    ActivationTokenStore,
    SessionRepository,
    UserRepository,
    _store_errors,
    build_pool,
)
from accessgate.schema import ensure_schema

DATABASE_URL = os.getenv("ACCESSGATE_TEST_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="ACCESSGATE_TEST_DATABASE_URL is not set")

WORKERS = 16


@pytest.fixture(scope="module")
def pg_pool():
    with ConnectionPool(DATABASE_URL, min_size=1, max_size=WORKERS + 2) as pool:
        ensure_schema(pool)
        yield pool


@pytest.fixture
def pool(pg_pool):
    with pg_pool.connection() as conn:
        conn.execute("TRUNCATE session_tokens, activation_tokens, users")
    return pg_pool


@pytest.fixture
def pg_users(pool, clock) -> UserRepository:
    return UserRepository(pool, clock=clock)


@pytest.fixture
def pg_tokens(pool, clock) -> ActivationTokenStore:
    return ActivationTokenStore(pool, clock=clock)


@pytest.fixture
def pg_activation(pg_tokens, pg_users) -> ActivationService:
    return ActivationService(pg_tokens, pg_users)


def _register(users: UserRepository, email: str = "pg@example.com"):
    return users.create_user(CreateUserInput(email=email, password_hash="hash"))


def _used_at(pool, token_value: str):
    with pool.connection() as conn:
        row = conn.execute(
            "SELECT used_at FROM activation_tokens WHERE token = %s", (token_value,)
        ).fetchone()
    return row[0]


def test_activate_once_then_reuse(pg_activation, pg_users):
    user = _register(pg_users)
    token = pg_activation.register_and_issue(user).token.token

    assert pg_activation.activate(token).outcome is Outcome.consumed
    assert pg_users.get_user(user.user_id).status is UserStatus.active
    assert pg_activation.activate(token).outcome is Outcome.already_used
    assert pg_activation.activate("0" * 64).outcome is Outcome.not_found


def test_concurrent_consumers_see_one_success(pg_activation, pg_users):
    user = _register(pg_users)
    token = pg_activation.register_and_issue(user).token.token
    barrier = Barrier(WORKERS)

    def attempt(_: int) -> Outcome:
        barrier.wait()
        return pg_activation.activate(token).outcome

    with ThreadPoolExecutor(max_workers=WORKERS) as executor:
        outcomes = list(executor.map(attempt, range(WORKERS)))

    assert outcomes.count(Outcome.consumed) == 1
    assert outcomes.count(Outcome.already_used) == WORKERS - 1


def test_suspended_user_keeps_token_unused(pg_activation, pg_users, pool):
    user = _register(pg_users)
    token = pg_activation.register_and_issue(user).token.token
    pg_users.set_status(user.user_id, UserStatus.suspended.value)

    assert pg_activation.activate(token).outcome is Outcome.account_suspended
    assert _used_at(pool, token) is None


def test_token_collisions_exhaust_retries(pool, pg_users, clock):
    store = ActivationTokenStore(pool, retry_budget=2, generator=lambda n: "e" * (2 * n), clock=clock)
    service = ActivationService(store, pg_users)

    assert service.register_and_issue(_register(pg_users, "one@example.com")).ok
    second = service.register_and_issue(_register(pg_users, "two@example.com"))
    assert second.outcome is Outcome.exhausted_retries


def test_resend_invalidates_previous_token(pg_activation, pg_users, pg_tokens):
    user = _register(pg_users)
    old = pg_activation.register_and_issue(user).token.token

    fresh = pg_activation.resend(user.user_id).token.token

    assert pg_tokens.has_outstanding(user.user_id)
    assert pg_activation.activate(old).outcome is Outcome.already_used
    assert pg_activation.activate(fresh).outcome is Outcome.consumed
    assert not pg_tokens.has_outstanding(user.user_id)


def test_purge_keeps_unused_tokens(pg_activation, pg_users, pool, clock):
    used = pg_activation.register_and_issue(_register(pg_users, "used@example.com")).token.token
    unused = pg_activation.register_and_issue(_register(pg_users, "unused@example.com")).token.token
    assert pg_activation.activate(used).ok

    clock.advance(timedelta(hours=73).total_seconds())
    result = pg_activation.purge_expired(clock())

    assert result.purged == 1
    with pool.connection() as conn:
        remaining = [row[0] for row in conn.execute("SELECT token FROM activation_tokens")]
    assert remaining == [unused]


def test_email_lookup_and_soft_delete(pg_users):
    user = _register(pg_users, "Mixed@Example.com")

    assert pg_users.find_by_email("MIXED@example.COM").user_id == user.user_id
    deleted = pg_users.soft_delete(user.user_id)
    assert deleted.is_deleted
    assert pg_users.activate(user.user_id) is UserStatus.deleted


def test_sessions_round_trip(pool, pg_users, clock):
    user = _register(pg_users)
    sessions = SessionRepository(pool, clock=clock)
    expires_at = clock() + timedelta(hours=1)

    sessions.create_session("h1", user.user_id, expires_at)
    sessions.create_session("h2", user.user_id, expires_at)
    sessions.touch_session("h1", clock())

    assert sessions.find_session("h1").last_seen_at == clock()
    assert sorted(sessions.list_user_sessions(user.user_id)) == ["h1", "h2"]
    assert sessions.delete_session("h1")
    assert not sessions.delete_session("h1")
    assert sessions.delete_user_sessions(user.user_id) == ["h2"]


def test_statement_timeout_surfaces_as_unavailable():
    settings = replace(Settings(), database_url=DATABASE_URL, database_statement_timeout_ms=50)
    with build_pool(settings) as bounded:
        with pytest.raises(StoreUnavailable):
            with _store_errors("sleep"):
                with bounded.connection() as conn:
                    conn.execute("SELECT pg_sleep(1)")
