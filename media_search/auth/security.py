import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Audit trail for admin endpoints, kept apart from the application log
security_logger = logging.getLogger("security")
security_logger.setLevel(logging.INFO)

_audit_handler = logging.StreamHandler()
_audit_handler.setFormatter(
    logging.Formatter("%(asctime)s - SECURITY - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
)
security_logger.addHandler(_audit_handler)

ADMIN_PATHS = ("/search/reindex", "/search/stats")

RESPONSE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Cache-Control": "no-store",
}


def log_security_event(
    event_type: str,
    user: Optional[str] = None,
    request: Optional[Request] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Write one audit record for an admin access decision or admin request"""
    event = {
        "event": event_type,
        "at": datetime.now(timezone.utc).isoformat(),
        "user": user or "anonymous",
    }
    if request is not None:
        event["ip"] = request.client.host if request.client else "unknown"
        event["route"] = f"{request.method} {request.url.path}"
        event["tenant"] = request.headers.get("X-Tenant-ID")
    if details:
        event.update(details)

    security_logger.info(f"Security Event: {event}")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers on every response; admin calls also get an audit record"""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(RESPONSE_HEADERS)

        if request.url.path.startswith(ADMIN_PATHS):
            log_security_event(
                "admin_request_completed",
                request=request,
                details={"status_code": response.status_code},
            )
        return response
