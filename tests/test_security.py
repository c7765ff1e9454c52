"""Tests for password hashing, token signing and role checks."""

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

import jwt

from kartapi.errors import AuthenticationError, AuthorizationError
from kartapi.models import Role, User
from kartapi.security import TOKEN_ALGORITHM, PasswordHasher, TokenService, authorize


def _user(role: Role = Role.USER) -> User:
    now = datetime.now(timezone.utc)
    return User(
        id=7,
        name="Alice",
        email="alice@example.com",
        role=role,
        is_active=True,
        created_at=now,
        updated_at=now,
    )


class PasswordHashingTests(unittest.TestCase):
    def test_hash_is_salted_and_verifiable(self) -> None:
        hasher = PasswordHasher(rounds=4)
        first = hasher.hash("supersecurepassword")
        second = hasher.hash("supersecurepassword")

        self.assertNotEqual(first, second)
        self.assertTrue(first.startswith("$2"))
        self.assertTrue(hasher.verify("supersecurepassword", first))
        self.assertFalse(hasher.verify("incorrect", first))

    def test_empty_inputs_never_verify(self) -> None:
        hasher = PasswordHasher(rounds=4)
        self.assertFalse(hasher.verify("", hasher.hash("password")))
        self.assertFalse(hasher.verify("password", ""))
        self.assertFalse(hasher.verify("password", "not-a-hash"))
        with self.assertRaises(ValueError):
            hasher.hash("")


class TokenServiceTests(unittest.TestCase):
    def test_issued_token_round_trips_claims(self) -> None:
        tokens = TokenService("secret", ttl=timedelta(hours=1))
        token = tokens.issue(_user(Role.ADMIN))

        self.assertEqual(tokens.verify(token).user_id, 7)
        payload = jwt.decode(token, "secret", algorithms=[TOKEN_ALGORITHM])
        self.assertEqual(payload["email"], "alice@example.com")
        self.assertEqual(payload["role"], "ADMIN")
        self.assertEqual(payload["exp"] - payload["iat"], 3600)

    def test_token_signed_with_other_secret_is_rejected(self) -> None:
        token = TokenService("other-secret").issue(_user())
        with self.assertRaises(AuthenticationError):
            TokenService("secret").verify(token)

    def test_expired_token_is_rejected(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(days=1)
        token = jwt.encode(
            {"sub": "7", "iat": past, "exp": past + timedelta(minutes=5)},
            "secret",
            algorithm=TOKEN_ALGORITHM,
        )
        with self.assertRaises(AuthenticationError):
            TokenService("secret").verify(token)

    def test_garbage_token_is_rejected(self) -> None:
        with self.assertRaises(AuthenticationError):
            TokenService("secret").verify("not-a-jwt")

    def test_secret_is_required(self) -> None:
        with self.assertRaises(ValueError):
            TokenService("")


class AuthorizeTests(unittest.TestCase):
    def test_authorize_accepts_listed_roles(self) -> None:
        authorize({Role.ADMIN, Role.USER}, Role.USER)

    def test_authorize_rejects_other_roles(self) -> None:
        with self.assertRaises(AuthorizationError):
            authorize({Role.ADMIN}, Role.USER)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
