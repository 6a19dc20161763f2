"""
Bearer-token authentication for the search API.

Tokens are issued elsewhere; this package only verifies them and exposes
FastAPI dependencies for optional-auth, admin-only and tenant-scoped routes.
"""

from .dependencies import (
    get_current_admin_user,
    get_current_user,
    get_optional_user,
    get_tenant_id,
)
from .jwt_handler import CurrentUser, verify_token

__all__ = [
    "CurrentUser",
    "verify_token",
    "get_current_admin_user",
    "get_current_user",
    "get_optional_user",
    "get_tenant_id",
]
