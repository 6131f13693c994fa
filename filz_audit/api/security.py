"""Operator authentication and response hardening for the audit API."""

from __future__ import annotations

import logging
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

security_logger = logging.getLogger("filz_audit.security")

security = HTTPBearer(auto_error=False)


async def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Allow the request only with the configured operator token."""
    client = request.client.host if request.client else "unknown"

    if not credentials:
        security_logger.warning("Missing auth header from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    admin_token = request.app.state.settings.admin_token
    if not admin_token:
        security_logger.warning("Admin operation attempted from %s but no admin token is configured", client)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrative operations are disabled",
        )

    if not hmac.compare_digest(credentials.credentials.encode(), admin_token.encode()):
        security_logger.warning("Invalid admin token from %s", client)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator privileges required",
        )

    return "admin"


async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    # Audit data must never sit in shared caches
    if request.url.path.startswith("/audit"):
        response.headers["Cache-Control"] = "no-store, max-age=0"

    return response
