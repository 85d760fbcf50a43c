"""
Bearer-token authentication.

Sign-in happens at an external identity provider that issues HS256 JWTs; the
``sub`` claim is the account id every document and payment is scoped to.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .errors import BuildLedgerError


class AuthenticationError(BuildLedgerError):
    code = "unauthorized"
    status_code = 401


def create_token(owner_id: str, secret: str, *, algorithm: str = "HS256", ttl: timedelta = timedelta(hours=1)) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": owner_id, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_owner(token: str, secret: str, *, algorithm: str = "HS256") -> Optional[str]:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.PyJWTError:
        return None
    owner_id = payload.get("sub")
    return owner_id or None


def owner_from_header(authorization: Optional[str], secret: str, *, algorithm: str = "HS256") -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("missing bearer token")
    owner_id = decode_owner(token.strip(), secret, algorithm=algorithm)
    if owner_id is None:
        raise AuthenticationError("invalid or expired token")
    return owner_id
