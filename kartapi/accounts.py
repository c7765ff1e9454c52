"""User accounts: registration, login, profile updates and deactivation."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .database import Database
from .errors import (
    AuthenticationError,
    DuplicateEmailError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from .models import Page, Role, User
from .security import PasswordHasher, TokenService

logger = logging.getLogger("kartapi.accounts")

MIN_PASSWORD_LENGTH = 6


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name must not be empty")
    return cleaned


def _check_password(password: str) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return password


class AccountService:
    """Identity, authentication and role assignment for the API."""

    def __init__(self, database: Database, hasher: PasswordHasher, tokens: TokenService) -> None:
        self._db = database
        self._hasher = hasher
        self._tokens = tokens
        # Compared against on unknown emails so every login attempt pays one bcrypt verify.
        self._placeholder_hash = hasher.hash(secrets.token_urlsafe(16))

    def create_user(self, name: str, email: str, password: str, role: Role = Role.USER) -> User:
        """Register a new account; the email must not already be in use."""

        name = _clean_name(name)
        _check_password(password)
        if self._db.email_in_use(email):
            raise DuplicateEmailError()
        user = self._db.create_user(name, email, self._hasher.hash(password), Role(role))
        logger.info("Created %s user %s", user.role.value, user.id)
        return user

    def authenticate(self, email: str, password: str) -> LoginResult:
        """Verify credentials and issue an access token.

        Unknown emails, inactive accounts and wrong passwords all fail with the
        same :class:`InvalidCredentialsError` so that callers cannot tell which
        addresses are registered.
        """

        credentials = self._db.get_user_credentials(email)
        if credentials is None:
            self._hasher.verify(password, self._placeholder_hash)
            logger.warning("Failed login attempt for %s", email)
            raise InvalidCredentialsError()

        user, password_hash = credentials
        if not user.is_active or not self._hasher.verify(password, password_hash):
            logger.warning("Failed login attempt for %s", email)
            raise InvalidCredentialsError()

        logger.info("User %s signed in", user.id)
        return LoginResult(user=user, token=self._tokens.issue(user))

    def resolve_token(self, token: str) -> User:
        """Return the active user behind ``token``."""

        claims = self._tokens.verify(token)
        user = self._db.get_user(claims.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("User not found or inactive")
        return user

    def bootstrap_admin(self, name: str, email: str, password: str) -> Optional[User]:
        """Create the first administrator; return ``None`` if one already exists."""

        if self._db.has_role(Role.ADMIN):
            logger.info("Admin user already exists")
            return None
        admin = self.create_user(name, email, password, role=Role.ADMIN)
        logger.info("Admin user created: %s", admin.email)
        return admin

    def get_user(self, user_id: int) -> User:
        user = self._db.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(self, page: int = 1, limit: int = 10) -> Tuple[List[User], Page]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        users = self._db.list_users(offset=(page - 1) * limit, limit=limit)
        return users, Page(page=page, limit=limit, total=self._db.count_users())

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> User:
        """Apply an administrative update to any account."""

        self.get_user(user_id)
        if email is not None and self._db.email_in_use(email, exclude_id=user_id):
            raise DuplicateEmailError()

        fields: dict[str, object] = {
            "name": _clean_name(name) if name is not None else None,
            "email": email,
            "role": role,
            "is_active": is_active,
        }
        if password is not None:
            fields["password_hash"] = self._hasher.hash(_check_password(password))

        updated = self._db.update_user(user_id, **fields)
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    def update_profile(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """Self-service update; role and activation stay with the administrators."""

        return self.update_user(user_id, name=name, email=email, password=password)

    def deactivate_user(self, user_id: int) -> User:
        """Soft-delete an account; the record is kept but can no longer sign in."""

        self.get_user(user_id)
        updated = self._db.update_user(user_id, is_active=False)
        if updated is None:
            raise NotFoundError("User not found")
        logger.info("User %s deactivated", user_id)
        return updated


__all__ = ["AccountService", "LoginResult", "MIN_PASSWORD_LENGTH"]
