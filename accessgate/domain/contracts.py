"""Domain-level contracts shared by the services and their collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from .account import ActivationToken, SessionToken, User, UserStatus
from .outcomes import ConsumeResult

Clock = Callable[[], datetime]

# Called inside the consume transaction with the open connection (or None
# for stores that have no connection concept) and the owning user id.
OnConsumed = Callable[[Any, str], None]


@dataclass(slots=True)
class CreateUserInput:
    """Validated inputs required to register a new account."""

    email: str
    password_hash: str


class TokenStore(Protocol):
    def issue(self, user_id: str, email: str, ttl: timedelta) -> ActivationToken: ...

    def consume(self, token_value: str, on_consumed: OnConsumed | None = None) -> ConsumeResult: ...

    def invalidate_outstanding(self, user_id: str) -> int: ...

    def has_outstanding(self, user_id: str) -> bool: ...

    def purge_expired(self, older_than: datetime) -> int: ...


class UserStore(Protocol):
    def create_user(self, payload: CreateUserInput) -> User: ...

    def get_user(self, user_id: str) -> User | None: ...

    def find_by_email(self, email: str) -> User | None: ...

    def activate(self, user_id: str, conn: Any = None) -> UserStatus | None: ...

    def set_status(self, user_id: str, status: str) -> User | None: ...

    def soft_delete(self, user_id: str) -> User | None: ...


class SessionStore(Protocol):
    def create_session(self, token_hash: str, user_id: str, expires_at: datetime) -> SessionToken: ...

    def find_session(self, token_hash: str) -> SessionToken | None: ...

    def list_user_sessions(self, user_id: str) -> list[str]: ...

    def touch_session(self, token_hash: str, seen_at: datetime) -> None: ...

    def delete_session(self, token_hash: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> list[str]: ...


class Cache(Protocol):
    def set(self, key: str, value: Any, ttl: int) -> None: ...

    def get(self, key: str) -> Any: ...

    def delete(self, key: str) -> None: ...

    def incr(self, key: str, ttl: int) -> int: ...


class ActivationNotifier(Protocol):
    def send_activation(self, email: str, token: ActivationToken) -> None: ...
