"""
Tenant identity for billing routes.

The upstream auth layer resolves the organization account and stores it in
request.state.tenant_id. Outside production an X-Tenant-Id header is
accepted as well (local development and tests).
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, Request

from teammove.core.config import settings
from teammove.core.errors import ForbiddenError, UnauthorizedError

logger = logging.getLogger("teammove")


def get_current_tenant_id(request: Request, x_tenant_id: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the authenticated tenant id."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id and x_tenant_id and settings.ENV.lower() != "production":
        tenant_id = x_tenant_id.strip()
        request.state.tenant_id = tenant_id
    if not tenant_id:
        raise UnauthorizedError("Authentication required")
    return tenant_id


def require_admin(x_admin_key: Optional[str] = Header(None)) -> str:
    """FastAPI dependency guarding maintenance endpoints with X-Admin-Key."""
    expected = settings.ADMIN_KEY
    if not expected:
        raise ForbiddenError("Admin access is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.strip(), expected):
        logger.warning("[admin] rejected admin key")
        raise ForbiddenError("Invalid admin key")
    return "admin"
