"""
Multi-tenant middleware

Extracts tenant and caller identity from headers injected by the API Gateway
and stores them in request.state for use by routes.
"""
from .tenant import TenantMiddleware

__all__ = ["TenantMiddleware"]
