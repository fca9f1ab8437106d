"""Postgres repositories for users, activation tokens and sessions."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

from psycopg import Connection, OperationalError
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool, PoolTimeout

from .config import Settings
from .domain.account import (
    ActivationToken,
    SessionToken,
    User,
    UserStatus,
    classify_activation,
    normalise_email,
    utcnow,
)
from .domain.contracts import Clock, CreateUserInput, OnConsumed
from .domain.errors import Conflict, EmailTaken, ExhaustedRetries, StoreUnavailable
from .domain.outcomes import ConsumeResult, Outcome
from .security.tokens import DEFAULT_TOKEN_BYTES, generate_token, token_prefix

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    "id, email, password_hash, status, credits, subscription_tier, "
    "subscription_expires_at, deleted_at, created_at"
)
TOKEN_COLUMNS = "id, user_id, email, token, expires_at, created_at, used_at"


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate driver connectivity failures into :class:`StoreUnavailable`."""
    try:
        yield
    except (OperationalError, PoolTimeout) as exc:
        raise StoreUnavailable(f"{operation} failed: {exc}") from exc


def build_pool(settings: Settings) -> ConnectionPool:
    """Create an unopened pool whose connections bound both connect and query time.

    A statement running past ``statement_timeout`` is cancelled server-side
    and surfaces as ``QueryCanceled``, an ``OperationalError``.
    """
    return ConnectionPool(
        settings.database_url,
        open=False,
        timeout=settings.database_timeout_seconds,
        kwargs={
            "connect_timeout": max(1, int(settings.database_connect_timeout_seconds)),
            "options": f"-c statement_timeout={settings.database_statement_timeout_ms}",
        },
    )


class UserRepository:
    """Postgres-backed user persistence; users are never hard-deleted."""

    def __init__(self, pool: ConnectionPool, clock: Clock = utcnow) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool
        self._clock = clock

    @contextmanager
    def _connection(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self._pool.connection() as owned:
            yield owned

    def create_user(self, payload: CreateUserInput) -> User:
        """Insert a new ``inactive`` user, rejecting emails already registered."""
        now = self._clock()
        with _store_errors("create_user"):
            try:
                with self._pool.connection() as conn:
                    with conn.cursor(row_factory=tuple_row) as cur:
                        cur.execute(
                            f"""
                            INSERT INTO users (id, email, password_hash, status, created_at, updated_at)
                            VALUES (%s, %s, %s, %s, %s, %s)
                            RETURNING {USER_COLUMNS}
                            """,
                            (
                                str(uuid.uuid4()),
                                normalise_email(payload.email),
                                payload.password_hash,
                                UserStatus.inactive.value,
                                now,
                                now,
                            ),
                        )
                        row = cur.fetchone()
                        conn.commit()
            except UniqueViolation as exc:
                raise EmailTaken("email already registered") from exc
        return self._map_user(row)

    def get_user(self, user_id: str) -> User | None:
        with _store_errors("get_user"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
                    row = cur.fetchone()
        return self._map_user(row) if row else None

    def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup, including soft-deleted rows."""
        with _store_errors("find_by_email"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"SELECT {USER_COLUMNS} FROM users WHERE lower(email) = %s",
                        (normalise_email(email),),
                    )
                    row = cur.fetchone()
        return self._map_user(row) if row else None

    def activate(self, user_id: str, conn: Connection | None = None) -> UserStatus | None:
        """Flip ``inactive -> active`` and return the resulting status.

        When ``conn`` is given the statements join its open transaction and
        nothing is committed here. Returns ``None`` for an unknown user and
        :attr:`UserStatus.deleted` for soft-deleted rows.
        """
        with _store_errors("activate_user"):
            with self._connection(conn) as active_conn:
                with active_conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        "SELECT status, deleted_at FROM users WHERE id = %s FOR UPDATE",
                        (user_id,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        return None
                    status, deleted_at = UserStatus(row[0]), row[1]
                    if deleted_at is not None:
                        return UserStatus.deleted
                    if status is UserStatus.inactive:
                        cur.execute(
                            "UPDATE users SET status = %s, updated_at = %s WHERE id = %s",
                            (UserStatus.active.value, self._clock(), user_id),
                        )
                        status = UserStatus.active
                if conn is None:
                    active_conn.commit()
        return status

    def set_status(self, user_id: str, status: str) -> User | None:
        with _store_errors("set_status"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE users SET status = %s, updated_at = %s
                        WHERE id = %s
                        RETURNING {USER_COLUMNS}
                        """,
                        (UserStatus(status).value, self._clock(), user_id),
                    )
                    row = cur.fetchone()
                    conn.commit()
        return self._map_user(row) if row else None

    def soft_delete(self, user_id: str) -> User | None:
        """Set the soft-delete marker; the row is kept for audit."""
        now = self._clock()
        with _store_errors("soft_delete"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE users
                        SET status = %s, deleted_at = COALESCE(deleted_at, %s), updated_at = %s
                        WHERE id = %s
                        RETURNING {USER_COLUMNS}
                        """,
                        (UserStatus.deleted.value, now, now, user_id),
                    )
                    row = cur.fetchone()
                    conn.commit()
        return self._map_user(row) if row else None

    def _map_user(self, row: tuple) -> User:
        """Convert a raw database tuple into the domain ``User`` dataclass."""
        return User(
            user_id=str(row[0]),
            email=row[1],
            password_hash=row[2],
            status=UserStatus(row[3]),
            credits=row[4],
            subscription_tier=row[5],
            subscription_expires_at=row[6],
            deleted_at=row[7],
            created_at=row[8],
        )


class ActivationTokenStore:
    """Durable activation tokens with atomic single-use consumption."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        token_bytes: int = DEFAULT_TOKEN_BYTES,
        retry_budget: int = 5,
        generator: Callable[[int], str] = generate_token,
        clock: Clock = utcnow,
    ) -> None:
        """Store the pool plus token generation policy."""
        self._pool = pool
        self._token_bytes = token_bytes
        self._retry_budget = retry_budget
        self._generate = generator
        self._clock = clock

    def issue(self, user_id: str, email: str, ttl: timedelta) -> ActivationToken:
        """Persist a fresh token, regenerating the value on unique collisions."""
        for attempt in range(1, self._retry_budget + 1):
            value = self._generate(self._token_bytes)
            now = self._clock()
            try:
                with _store_errors("issue_token"):
                    with self._pool.connection() as conn:
                        with conn.cursor(row_factory=tuple_row) as cur:
                            cur.execute(
                                f"""
                                INSERT INTO activation_tokens (id, user_id, email, token, expires_at, created_at)
                                VALUES (%s, %s, %s, %s, %s, %s)
                                RETURNING {TOKEN_COLUMNS}
                                """,
                                (str(uuid.uuid4()), user_id, email, value, now + ttl, now),
                            )
                            row = cur.fetchone()
                            conn.commit()
            except UniqueViolation:
                logger.warning(
                    "activation token collision for user %s (attempt %d/%d)",
                    user_id,
                    attempt,
                    self._retry_budget,
                )
                continue
            return self._map_token(row)
        raise ExhaustedRetries(self._retry_budget)

    def consume(self, token_value: str, on_consumed: OnConsumed | None = None) -> ConsumeResult:
        """Check and mark a token used in one transaction.

        The row lock taken by ``SELECT ... FOR UPDATE`` serialises concurrent
        consumers: the first commits ``used_at`` and every later one observes
        it. ``on_consumed`` runs before commit with the open connection; if it
        raises, the token stays unused.
        """
        with _store_errors("consume_token"):
            with self._pool.connection() as conn:
                with conn.transaction():
                    with conn.cursor(row_factory=tuple_row) as cur:
                        cur.execute(
                            """
                            SELECT user_id, expires_at, used_at
                            FROM activation_tokens
                            WHERE token = %s
                            FOR UPDATE
                            """,
                            (token_value,),
                        )
                        row = cur.fetchone()
                        if row is None:
                            return ConsumeResult(Outcome.not_found)
                        user_id, expires_at, used_at = str(row[0]), row[1], row[2]
                        now = self._clock()
                        outcome = classify_activation(expires_at, used_at, now)
                        if outcome is not Outcome.consumed:
                            return ConsumeResult(outcome, user_id)
                        cur.execute(
                            "UPDATE activation_tokens SET used_at = %s WHERE token = %s",
                            (now, token_value),
                        )
                    if on_consumed is not None:
                        on_consumed(conn, user_id)
        logger.debug("activation token %s consumed", token_prefix(token_value))
        return ConsumeResult.consumed(user_id)

    def invalidate_outstanding(self, user_id: str) -> int:
        """Mark every unused, unexpired token of the user as used."""
        now = self._clock()
        with _store_errors("invalidate_tokens"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        UPDATE activation_tokens
                        SET used_at = %s
                        WHERE user_id = %s AND used_at IS NULL AND expires_at > %s
                        """,
                        (now, user_id, now),
                    )
                    count = cur.rowcount
                    conn.commit()
        return max(count, 0)

    def has_outstanding(self, user_id: str) -> bool:
        with _store_errors("has_outstanding"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        """
                        SELECT EXISTS (
                            SELECT 1 FROM activation_tokens
                            WHERE user_id = %s AND used_at IS NULL AND expires_at > %s
                        )
                        """,
                        (user_id, self._clock()),
                    )
                    row = cur.fetchone()
        return bool(row[0])

    def purge_expired(self, older_than: datetime) -> int:
        """Delete used tokens that expired before ``older_than``.

        Unused tokens are kept for audit even once expired.
        """
        with _store_errors("purge_tokens"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM activation_tokens WHERE expires_at < %s AND used_at IS NOT NULL",
                        (older_than,),
                    )
                    count = cur.rowcount
                    conn.commit()
        return max(count, 0)

    def _map_token(self, row: tuple) -> ActivationToken:
        return ActivationToken(
            token_id=str(row[0]),
            user_id=str(row[1]),
            email=row[2],
            token=row[3],
            expires_at=row[4],
            created_at=row[5],
            used_at=row[6],
        )


class SessionRepository:
    """Durable session records keyed by the SHA-256 of the bearer token."""

    def __init__(self, pool: ConnectionPool, clock: Clock = utcnow) -> None:
        self._pool = pool
        self._clock = clock

    def create_session(self, token_hash: str, user_id: str, expires_at: datetime) -> SessionToken:
        now = self._clock()
        with _store_errors("create_session"):
            try:
                with self._pool.connection() as conn:
                    with conn.cursor() as cur:
                        cur.execute(
                            """
                            INSERT INTO session_tokens (token_hash, user_id, expires_at, created_at)
                            VALUES (%s, %s, %s, %s)
                            """,
                            (token_hash, user_id, expires_at, now),
                        )
                        conn.commit()
            except UniqueViolation as exc:
                raise Conflict("session token collision") from exc
        return SessionToken(token_hash=token_hash, user_id=user_id, expires_at=expires_at, created_at=now)

    def find_session(self, token_hash: str) -> SessionToken | None:
        with _store_errors("find_session"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        """
                        SELECT token_hash, user_id, expires_at, created_at, last_seen_at
                        FROM session_tokens
                        WHERE token_hash = %s
                        """,
                        (token_hash,),
                    )
                    row = cur.fetchone()
        if row is None:
            return None
        return SessionToken(
            token_hash=row[0],
            user_id=str(row[1]),
            expires_at=row[2],
            created_at=row[3],
            last_seen_at=row[4],
        )

    def touch_session(self, token_hash: str, seen_at: datetime) -> None:
        with _store_errors("touch_session"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "UPDATE session_tokens SET last_seen_at = %s WHERE token_hash = %s",
                        (seen_at, token_hash),
                    )
                    conn.commit()

    def delete_session(self, token_hash: str) -> bool:
        with _store_errors("delete_session"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM session_tokens WHERE token_hash = %s", (token_hash,))
                    deleted = cur.rowcount > 0
                    conn.commit()
        return deleted

    def list_user_sessions(self, user_id: str) -> list[str]:
        with _store_errors("list_user_sessions"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute("SELECT token_hash FROM session_tokens WHERE user_id = %s", (user_id,))
                    hashes = [row[0] for row in cur.fetchall()]
        return hashes

    def delete_user_sessions(self, user_id: str) -> list[str]:
        """Remove every session of a user and return the deleted token hashes."""
        with _store_errors("delete_user_sessions"):
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        "DELETE FROM session_tokens WHERE user_id = %s RETURNING token_hash",
                        (user_id,),
                    )
                    hashes = [row[0] for row in cur.fetchall()]
                    conn.commit()
        return hashes
