# paygate/core/security.py
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any

import jwt
from fastapi import Header

from paygate.core.errors import Unauthorized
from paygate.core.settings import settings


@dataclass(frozen=True)
class SessionUser:
    id: str
    email: str


def verify_jwt_token(token: str) -> Dict[str, Any]:
    options = {"require": ["exp", "sub"], "verify_signature": True}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE if settings.JWT_AUDIENCE else None,
            issuer=settings.JWT_ISSUER if settings.JWT_ISSUER else None,
            options=options,
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


async def get_session_user(authorization: Optional[str] = Header(None)) -> Optional[SessionUser]:
    """
    Resolve the caller from a `Bearer` JWT. Returns None when the header is
    missing or the token lacks an email, so routes decide how to reject.
    """
    if not authorization or not authorization.startswith("Bearer "):
        return None
    claims = verify_jwt_token(authorization.split("Bearer ", 1)[1].strip())
    sub, email = claims.get("sub"), claims.get("email")
    if not sub or not email:
        return None
    return SessionUser(id=str(sub), email=str(email))


async def require_session_user(authorization: Optional[str] = Header(None)) -> SessionUser:
    user = await get_session_user(authorization)
    if user is None:
        raise Unauthorized("Please sign in to continue")
    return user


def mint_dev_token(
    *,
    sub: Optional[str] = None,
    email: Optional[str] = None,
    ttl_seconds: int = 3600,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    DEV ONLY: create a short-lived JWT for local testing.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": sub or settings.DEV_JWT_SUBJECT,
        "email": email or settings.DEV_JWT_EMAIL,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if settings.JWT_ISSUER:
        payload["iss"] = settings.JWT_ISSUER
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
