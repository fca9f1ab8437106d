"""Table definitions for users, activation tokens and sessions."""

from __future__ import annotations

import logging

from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)

USERS_TABLE = """
    CREATE TABLE IF NOT EXISTS users (
        id                      UUID PRIMARY KEY,
        email                   TEXT NOT NULL UNIQUE,
        password_hash           TEXT NOT NULL,
        status                  TEXT NOT NULL DEFAULT 'inactive',
        credits                 INTEGER NOT NULL DEFAULT 0,
        subscription_tier       VARCHAR(20) NOT NULL DEFAULT 'free',
        subscription_expires_at TIMESTAMPTZ,
        deleted_at              TIMESTAMPTZ,
        created_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

ACTIVATION_TOKENS_TABLE = """
    CREATE TABLE IF NOT EXISTS activation_tokens (
        id          UUID PRIMARY KEY,
        user_id     UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        email       TEXT NOT NULL,
        token       TEXT NOT NULL UNIQUE,
        expires_at  TIMESTAMPTZ NOT NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at     TIMESTAMPTZ
    )
"""

SESSION_TOKENS_TABLE = """
    CREATE TABLE IF NOT EXISTS session_tokens (
        token_hash   TEXT PRIMARY KEY,
        user_id      UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expires_at   TIMESTAMPTZ NOT NULL,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_seen_at TIMESTAMPTZ
    )
"""

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_activation_tokens_user ON activation_tokens (user_id, used_at)",
    "CREATE INDEX IF NOT EXISTS idx_activation_tokens_cleanup ON activation_tokens (expires_at, used_at)",
    "CREATE INDEX IF NOT EXISTS idx_session_tokens_user ON session_tokens (user_id)",
)

STATEMENTS = (USERS_TABLE, ACTIVATION_TOKENS_TABLE, SESSION_TOKENS_TABLE, *INDEXES)


def ensure_schema(pool: ConnectionPool) -> None:
    """Create any missing tables and indexes; existing ones are left alone."""
    with pool.connection() as conn:
        with conn.transaction():
            for statement in STATEMENTS:
                conn.execute(statement)
    logger.info("database schema ready")
