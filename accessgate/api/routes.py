"""HTTP route definitions for account activation and sessions."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field

from ..domain.account import User
from ..domain.activation import ActivationService
from ..domain.contracts import CreateUserInput, UserStore
from ..domain.errors import AccessGateError, EmailTaken
from ..domain.outcomes import EXHAUSTION_OUTCOMES, Outcome
from ..domain.sessions import SessionAuthenticator
from ..security.passwords import PasswordHasher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

RETRY_AFTER_SECONDS = "5"

_STATUS_FOR_OUTCOME = {
    Outcome.not_found: status.HTTP_404_NOT_FOUND,
    Outcome.expired: status.HTTP_410_GONE,
    Outcome.already_used: status.HTTP_409_CONFLICT,
    Outcome.invalid_credentials: status.HTTP_401_UNAUTHORIZED,
    Outcome.account_inactive: status.HTTP_403_FORBIDDEN,
    Outcome.account_suspended: status.HTTP_403_FORBIDDEN,
    Outcome.account_active: status.HTTP_409_CONFLICT,
    Outcome.conflict: status.HTTP_409_CONFLICT,
    Outcome.throttled: status.HTTP_429_TOO_MANY_REQUESTS,
    Outcome.unavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class UserResponse(BaseModel):
    """Serialised representation of a `User` without its password digest."""

    user_id: str
    email: EmailStr
    status: str
    created_at: str | None = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            user_id=user.user_id,
            email=user.email,
            status=user.status.value,
            created_at=user.created_at.isoformat() if user.created_at else None,
        )


class RegisterRequest(BaseModel):
    """Payload accepted when registering a new account."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class ActivateRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ActivateResponse(BaseModel):
    user_id: str
    status: str = "active"


class ResendRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    """Bearer token returned after a successful login."""

    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: str


class CurrentSessionResponse(BaseModel):
    user_id: str


def get_activation_service(request: Request) -> ActivationService:
    """Resolve the `ActivationService` stored on the FastAPI application state."""
    service: ActivationService = request.app.state.activation_service
    return service


def get_authenticator(request: Request) -> SessionAuthenticator:
    authenticator: SessionAuthenticator = request.app.state.session_authenticator
    return authenticator


def get_users(request: Request) -> UserStore:
    users: UserStore = request.app.state.users
    return users


def get_hasher(request: Request) -> PasswordHasher:
    hasher: PasswordHasher = request.app.state.password_hasher
    return hasher


def bearer_token(authorization: str | None = Header(default=None)) -> str:
    """Extract the bearer credential from the ``Authorization`` header."""
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return token.strip()


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register_user(
    payload: RegisterRequest,
    users: UserStore = Depends(get_users),
    hasher: PasswordHasher = Depends(get_hasher),
    service: ActivationService = Depends(get_activation_service),
) -> UserResponse:
    """Create an inactive account and send its first activation token."""
    try:
        user = users.create_user(
            CreateUserInput(email=payload.email, password_hash=hasher.hash(payload.password))
        )
    except EmailTaken as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="email already registered") from exc
    except AccessGateError as exc:
        raise _http_error(exc.outcome) from exc

    issued = service.register_and_issue(user)
    if not issued.ok:
        # the account exists; the client can recover through the resend route
        logger.warning("registration of %s left without activation token: %s", user.user_id, issued.outcome.value)
    return UserResponse.from_domain(user)


@router.post("/activation", response_model=ActivateResponse)
def activate_account(
    payload: ActivateRequest,
    service: ActivationService = Depends(get_activation_service),
) -> ActivateResponse:
    """Consume an activation token and activate its account."""
    result = service.activate(payload.token)
    if not result.ok:
        raise _http_error(result.outcome)
    return ActivateResponse(user_id=result.user_id)


@router.post("/activation/resend", status_code=status.HTTP_202_ACCEPTED)
def resend_activation(
    payload: ResendRequest,
    service: ActivationService = Depends(get_activation_service),
) -> dict[str, str]:
    """Reissue an activation token; the response never reveals whether the account exists."""
    result = service.resend_by_email(payload.email)
    if result.outcome is Outcome.unavailable or result.outcome in EXHAUSTION_OUTCOMES:
        raise _http_error(result.outcome)
    return {"status": "accepted"}


@router.post("/sessions", response_model=SessionResponse)
def login(
    payload: LoginRequest,
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> SessionResponse:
    """Exchange credentials for a bearer session token."""
    result = authenticator.login(payload.email, payload.password)
    if not result.ok:
        raise _http_error(result.outcome)
    return SessionResponse(
        access_token=result.token,
        expires_at=result.expires_at,
        user_id=result.user_id,
    )


@router.get("/sessions/current", response_model=CurrentSessionResponse)
def current_session(
    token: str = Depends(bearer_token),
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> CurrentSessionResponse:
    result = authenticator.validate(token)
    if result.outcome is Outcome.unavailable:
        raise _http_error(result.outcome)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return CurrentSessionResponse(user_id=result.user_id)


@router.delete("/sessions/current", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    token: str = Depends(bearer_token),
    authenticator: SessionAuthenticator = Depends(get_authenticator),
) -> Response:
    failure = authenticator.logout(token)
    if failure is not None:
        raise _http_error(failure)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _http_error(outcome: Outcome) -> HTTPException:
    if outcome in EXHAUSTION_OUTCOMES:
        # nothing the client can act on
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal error")
    status_code = _STATUS_FOR_OUTCOME.get(outcome, status.HTTP_400_BAD_REQUEST)
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if outcome is Outcome.unavailable else None
    return HTTPException(status_code=status_code, detail=outcome.value, headers=headers)
