"""
Tenant middleware for multi-tenant support.
Extracts tenant and caller identity from request headers and stores them in request.state.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import Request
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware to extract tenant information from request headers.

    The API Gateway injects X-Tenant-ID, X-User-ID, X-User-Role and X-Username
    after authentication. For development mode (direct access without gateway),
    tenant_id defaults to 0.
    """

    async def dispatch(self, request: Request, call_next):
        tenant_id_str = request.headers.get("X-Tenant-ID")
        user_id = request.headers.get("X-User-ID")
        role = request.headers.get("X-User-Role", "user")
        username = request.headers.get("X-Username")

        # Parse tenant_id
        if tenant_id_str:
            try:
                request.state.tenant_id = int(tenant_id_str)
            except ValueError:
                logger.warning(f"[TenantMiddleware] Invalid tenant_id format: {tenant_id_str}, defaulting to 0")
                request.state.tenant_id = 0
        else:
            request.state.tenant_id = 0

        # Store user information
        request.state.user_id = user_id
        request.state.role = role
        request.state.username = username

        logger.debug(
            f"[TenantMiddleware] Request: {request.method} {request.url.path} | "
            f"Tenant: {request.state.tenant_id} | User: {user_id or 'anonymous'} | Role: {role}"
        )

        response = await call_next(request)
        return response
