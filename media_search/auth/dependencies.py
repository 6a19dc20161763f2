import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .jwt_handler import CurrentUser, verify_token
from .security import log_security_event

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


class BearerTokenAuth(HTTPBearer):
    """Bearer token extraction; a missing token means an anonymous caller"""

    def __init__(self):
        super().__init__(auto_error=False)

    async def __call__(self, request: Request) -> Optional[HTTPAuthorizationCredentials]:
        credentials = await super().__call__(request)
        if credentials:
            client_ip = request.client.host if request.client else "unknown"
            logger.debug(f"Token authentication attempt from {client_ip}")
        return credentials


bearer_auth = BearerTokenAuth()


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_auth),
) -> Optional[CurrentUser]:
    """Caller's principal, or None for anonymous requests. A bad token is still a 401."""
    if not credentials:
        return None
    return verify_token(credentials.credentials)


async def get_current_user(
    current_user: Optional[CurrentUser] = Depends(get_optional_user),
) -> CurrentUser:
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user


async def get_current_admin_user(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if not current_user.is_admin:
        log_security_event("admin_access_denied", user=current_user.user_id, request=request)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
        )
    log_security_event("admin_access", user=current_user.user_id, request=request)
    return current_user


async def get_tenant_id(
    request: Request,
    current_user: Optional[CurrentUser] = Depends(get_optional_user),
) -> Optional[str]:
    """Tenant scope of the request: the token's claim wins over the header"""
    if current_user is not None and current_user.tenant_id:
        return current_user.tenant_id
    return request.headers.get(TENANT_HEADER) or None
