"""
Access tokens

Accounts live with the identity provider; this service only needs the
caller's user id. Tokens are JWTs whose `sub` claim carries that id.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from storefront.core.config import settings

TOKEN_TYPE = "access"


def issue_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token for `user_id` (seed scripts, tests, local tooling)."""
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "type": TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def user_id_from_token(token: str) -> Optional[int]:
    """User id of a valid, unexpired access token; None for anything else."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    if claims.get("type") != TOKEN_TYPE:
        return None
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        return None
