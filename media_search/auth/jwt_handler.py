import logging
import secrets
from typing import List, Optional

import jwt
from fastapi import HTTPException, status
from pydantic import BaseModel

from ..config import config

logger = logging.getLogger(__name__)

ADMIN_SCOPE = "admin"

_fallback_secret: Optional[str] = None


def get_secret_key() -> str:
    """Configured signing key, or a per-process random one that no issued token can match"""
    global _fallback_secret
    if config.jwt_secret_key:
        return config.jwt_secret_key
    if _fallback_secret is None:
        logger.warning("JWT_SECRET_KEY not set in environment. Authenticated routes will reject every token")
        _fallback_secret = secrets.token_urlsafe(32)
    return _fallback_secret


class CurrentUser(BaseModel):
    user_id: str
    tenant_id: Optional[str] = None
    is_admin: bool = False
    scopes: List[str] = []


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> CurrentUser:
    """Verify a bearer token issued by the auth service and return its principal"""
    try:
        payload = jwt.decode(
            token,
            get_secret_key(),
            algorithms=[config.jwt_algorithm],
            audience=config.jwt_audience,
            issuer=config.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise _unauthorized("Could not validate credentials")

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized("Could not validate credentials")

    scopes = payload.get("scopes") or []
    tenant_id = payload.get("tenant_id")
    return CurrentUser(
        user_id=str(user_id),
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        is_admin=bool(payload.get("is_admin")) or ADMIN_SCOPE in scopes,
        scopes=scopes,
    )
