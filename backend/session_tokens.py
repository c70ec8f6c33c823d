from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Response

DEFAULT_ALGORITHM = "HS256"
BEARER_PREFIX = "Bearer "
REQUIRED_CLAIMS = ("sub", "email", "iat", "exp")


@dataclass(frozen=True)
class SessionIdentity:
    user_id: int
    email: str


@dataclass(frozen=True)
class TokenSource:
    source: str
    token: str


@dataclass(frozen=True)
class SessionTokenService:
    """Issues and verifies stateless HS256 session tokens.

    ``verify`` never raises for bad input: malformed, expired, mis-signed and
    claim-incomplete tokens all come back as ``None``.
    """

    secret: str
    expires_in_seconds: int = 7 * 24 * 60 * 60
    algorithm: str = DEFAULT_ALGORITHM

    def issue(self, user_id: int, email: str, issued_at: datetime | None = None) -> str:
        issued = issued_at or datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "email": email,
            "iat": issued,
            "exp": issued + timedelta(seconds=self.expires_in_seconds),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str | None) -> SessionIdentity | None:
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": list(REQUIRED_CLAIMS)},
            )
        except jwt.InvalidTokenError:
            return None
        return _identity_from_claims(payload)


def _identity_from_claims(payload: dict) -> SessionIdentity | None:
    email = payload.get("email")
    if not isinstance(email, str) or not email:
        return None
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    return SessionIdentity(user_id=user_id, email=email)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    return authorization[len(BEARER_PREFIX):].strip() or None


def find_session_token(authorization: str | None, cookie_token: str | None) -> TokenSource | None:
    """Return the first present token source: Bearer header, then session cookie."""
    candidates = (
        ("header", bearer_token(authorization)),
        ("cookie", cookie_token or None),
    )
    for source, token in candidates:
        if token:
            return TokenSource(source=source, token=token)
    return None


@dataclass(frozen=True)
class SessionCookiePolicy:
    name: str = "authToken"
    max_age_seconds: int = 7 * 24 * 60 * 60
    secure: bool = False

    def attach(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.name,
            value=token,
            max_age=self.max_age_seconds,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="strict",
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            key=self.name,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="strict",
        )
