"""Bearer tokens for the admin API. The subject is the user's email."""

from datetime import datetime, timedelta, timezone

import jwt

from unit_admin.core import config

REQUIRED_CLAIMS = ["exp", "iat", "sub"]


def create_access_token(email: str, role: str | None = None, expires_minutes: int | None = None) -> str:
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or config.JWT_EXPIRES_MINUTES)
    claims = {"sub": email, "iat": issued_at, "exp": issued_at + lifetime}
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    # Role in the token is informational; require_admin reads the stored role.
    return jwt.decode(
        token,
        config.JWT_SECRET_KEY,
        algorithms=[config.JWT_ALGORITHM],
        options={"require": REQUIRED_CLAIMS},
    )
