"""
Tenant-aware helper functions for multi-tenant operations

Provides utilities for reading the caller identity set by TenantMiddleware
"""
from fastapi import Request

from ..services.dto import UserContext


def get_tenant_id(request: Request) -> int:
    """
    Extract tenant_id from request state (set by TenantMiddleware)

    Args:
        request: FastAPI Request object

    Returns:
        tenant_id: Integer tenant ID (0 for development)
    """
    return getattr(request.state, 'tenant_id', 0)


def get_user_id(request: Request) -> str:
    """
    Extract user_id from request state (set by TenantMiddleware)

    Returns:
        user_id: caller identifier ("anonymous" when the header is missing)
    """
    return getattr(request.state, 'user_id', None) or "anonymous"


def get_current_user(request: Request) -> UserContext:
    """
    Build the caller identity used by the permission gate

    Used as a FastAPI dependency: ``user: UserContext = Depends(get_current_user)``
    """
    return UserContext(
        user_id=get_user_id(request),
        role=getattr(request.state, 'role', None) or "user",
        tenant_id=get_tenant_id(request),
        username=getattr(request.state, 'username', None),
    )
