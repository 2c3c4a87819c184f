"""Bearer credential verification for the sync endpoint."""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

import jwt

from core.errors import Unauthorized
from core.settings import ServerSettings
from core.sync_targets import read_string
from datetime_utils import utc_now


_ALGORITHM = "HS256"


def bearer_token(header: Optional[str]) -> str:
    """Extract the token from an ``Authorization`` header value."""

    if not header or not header.startswith("Bearer "):
        raise Unauthorized("Missing bearer token")
    token = header[len("Bearer ") :].strip()
    if not token:
        raise Unauthorized("Missing bearer token")
    return token


class IdentityVerifier:
    """Validates HS256 access tokens and yields the caller's user id."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "supabase",
        audience: str = "authenticated",
    ) -> None:
        if not secret:
            raise RuntimeError("JWT_SECRET (or SUPABASE_JWT_SECRET) is required")
        self.secret = secret
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: ServerSettings) -> "IdentityVerifier":
        return cls(
            settings.jwt_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    def verify(self, token: Optional[str]) -> str:
        if not token:
            raise Unauthorized("Missing bearer token")
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise Unauthorized("Auth token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthorized(f"Invalid auth token: {exc}") from exc

        user_id = read_string(claims.get("sub"))
        if not user_id:
            raise Unauthorized("Invalid auth token subject")
        return user_id


def issue_token(
    user_id: str,
    secret: str,
    *,
    issuer: str = "supabase",
    audience: str = "authenticated",
    ttl: timedelta = timedelta(hours=1),
) -> str:
    """Mint an access token the verifier accepts (local development and tests)."""

    now = utc_now()
    claims = {
        "sub": user_id,
        "iss": issuer,
        "aud": audience,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=_ALGORITHM)


__all__ = ["IdentityVerifier", "bearer_token", "issue_token"]
