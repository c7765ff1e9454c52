"""Security helpers: password hashing, bearer tokens and role checks."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Collection, Iterable

import jwt
from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from .errors import AuthenticationError, AuthorizationError
from .models import Role, User

TOKEN_ALGORITHM = "HS256"


class PasswordHasher:
    """Salted bcrypt hashing with a configurable cost factor."""

    def __init__(self, rounds: int = 12) -> None:
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password must not be empty")
        return self._context.hash(password)

    def verify(self, password: str, hashed: str) -> bool:
        if not password or not hashed:
            return False
        try:
            return self._context.verify(password, hashed)
        except ValueError:
            return False


@dataclass(frozen=True)
class TokenClaims:
    """Identity embedded in an issued access token."""

    user_id: int


class TokenService:
    """Issue and verify HS256-signed access tokens."""

    def __init__(self, secret: str, *, ttl: timedelta = timedelta(days=7)) -> None:
        if not secret:
            raise ValueError("A token signing secret must be provided")
        self._secret = secret
        self._ttl = ttl

    def issue(self, user: User) -> str:
        now = self._now()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
            return TokenClaims(user_id=int(payload["sub"]))
        except (jwt.PyJWTError, KeyError, ValueError) as exc:
            raise AuthenticationError("Invalid token") from exc

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


def authorize(required_roles: Collection[Role], presented_role: Role) -> None:
    """Raise :class:`AuthorizationError` unless ``presented_role`` is allowed."""

    if presented_role not in required_roles:
        raise AuthorizationError()


class BearerAuth:
    """Resolve the calling user from an ``Authorization: Bearer`` header."""

    def __init__(self, resolve_user: Callable[[str], User]) -> None:
        self._resolve_user = resolve_user
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> User:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise AuthenticationError("Access token not provided")

        token = credentials.credentials.strip()
        if not token:
            raise AuthenticationError("Access token not provided")
        return self._resolve_user(token)


def require_roles(
    auth: BearerAuth,
    roles: Iterable[Role],
) -> Callable[[Request], Awaitable[User]]:
    """Build a dependency that authenticates and then checks the caller's role."""

    allowed = frozenset(roles)

    async def dependency(request: Request) -> User:
        user = await auth(request)
        authorize(allowed, user.role)
        return user

    return dependency


__all__ = [
    "BearerAuth",
    "PasswordHasher",
    "TOKEN_ALGORITHM",
    "TokenClaims",
    "TokenService",
    "authorize",
    "require_roles",
]
