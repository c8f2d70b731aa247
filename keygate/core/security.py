"""
security.py — Credentials for the key-management surface (not the gateway).

Two kinds, both checked here:
  - account bearer tokens: HS256 JWTs (python-jose) whose `sub` is the
    account id, issued by POST /accounts
  - the operator's X-Admin-Token for tier changes

Gateway API keys live in keygate.services.credentials; nothing here
touches them.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from keygate.core.config import settings


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Bearer token for *subject* (an account id), valid for jwt_expiry_hours by default."""
    issued = datetime.now(tz=timezone.utc)
    claims = {
        "sub": subject,
        "iat": issued,
        "exp": issued + (expires_delta or timedelta(hours=settings.jwt_expiry_hours)),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """The account id a bearer token was issued to, or None if it does not verify."""
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) and subject else None


def verify_admin_token(presented: Optional[str]) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), settings.admin_token.encode("utf-8"))
