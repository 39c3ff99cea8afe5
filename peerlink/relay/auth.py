"""Credential verification for real-time connections.

Tokens are the HS256 JWTs issued by the login service. Older tokens carry the
user id as `id` or `_id` instead of `userId`; all three are accepted.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jwt

DEFAULT_TOKEN_TTL_S = 7 * 24 * 3600


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str

    def to_dict(self) -> dict[str, str]:
        return {"userId": self.user_id, "username": self.display_name}


class AuthFailure(str, Enum):
    MISSING = "auth_missing"
    INVALID = "auth_invalid"


class AuthError(Exception):
    def __init__(self, failure: AuthFailure, message: str) -> None:
        super().__init__(message)
        self.failure = failure
        self.message = message


class IdentityVerifier:
    def __init__(self, secret: str, algorithms: tuple[str, ...] = ("HS256",), leeway_s: float = 0) -> None:
        if not secret:
            raise ValueError("secret required")
        self.secret = secret
        self.algorithms = algorithms
        self.leeway_s = leeway_s

    def verify(self, token: str | None) -> Identity:
        if not token:
            raise AuthError(AuthFailure.MISSING, "Authentication error: No token provided")
        try:
            claims = jwt.decode(token, self.secret, algorithms=list(self.algorithms), leeway=self.leeway_s)
        except jwt.PyJWTError as e:
            raise AuthError(AuthFailure.INVALID, f"Authentication error: Invalid token ({e})") from e
        return self._identity_from_claims(claims)

    def issue(self, user_id: str, username: str | None = None, ttl_s: int = DEFAULT_TOKEN_TTL_S) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {"userId": user_id, "iat": now, "exp": now + int(ttl_s)}
        if username:
            claims["username"] = username
        return jwt.encode(claims, self.secret, algorithm=self.algorithms[0])

    @staticmethod
    def _identity_from_claims(claims: dict[str, Any]) -> Identity:
        user_id = claims.get("userId") or claims.get("id") or claims.get("_id")
        if not user_id:
            raise AuthError(AuthFailure.INVALID, "Authentication error: Invalid token (no user id)")
        user_id = str(user_id)
        display_name = claims.get("username") or claims.get("name") or user_id
        return Identity(user_id=user_id, display_name=str(display_name))
