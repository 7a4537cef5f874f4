"""
Bearer token helpers.

Tokens are minted by the identity service; this API only needs to verify
them and read the subject. create_access_token exists for service-to-service
calls and the test suite. Key strength is enforced by Settings.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from uuid import UUID

from jose import JWTError, jwt

from core.config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    claims = dict(data)
    claims["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Verified claims, or None for a bad signature, expired token or garbage."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def token_subject(token: str) -> Optional[UUID]:
    """The principal id carried in `sub`, or None if the token is unusable."""
    payload = decode_access_token(token)
    if not payload or not payload.get("sub"):
        return None
    try:
        return UUID(str(payload["sub"]))
    except ValueError:
        return None
