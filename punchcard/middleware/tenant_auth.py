"""
Tenant Authentication Middleware.

Admin API requests identify their merchant with an X-Tenant-ID header.
Sets g.tenant_id and g.tenant for the wrapped view.
"""
from functools import wraps
from flask import request, g

from ..extensions import db
from ..models import Tenant
from ..utils.errors import ErrorCode, error_response, unauthorized, not_found


def get_tenant_from_request() -> Tenant | None:
    """
    Resolve the tenant named by the X-Tenant-ID header.

    Returns:
        Tenant or None when the header is missing, malformed or unknown
    """
    tenant_id = request.headers.get('X-Tenant-ID')
    if not tenant_id:
        return None
    try:
        return db.session.get(Tenant, int(tenant_id))
    except (ValueError, TypeError):
        return None


def require_tenant(f):
    """
    Decorator to require a known, active tenant.

    Usage:
        @require_tenant
        def my_endpoint():
            tenant_id = g.tenant_id
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not request.headers.get('X-Tenant-ID'):
            return unauthorized('Missing X-Tenant-ID header')

        tenant = get_tenant_from_request()
        if not tenant:
            return not_found('Tenant not found', ErrorCode.TENANT_NOT_FOUND)

        if not tenant.is_active:
            return error_response('Tenant access has been disabled', ErrorCode.TENANT_INACTIVE, 403, log_error=False)

        g.tenant_id = tenant.id
        g.tenant = tenant

        return f(*args, **kwargs)

    return decorated_function
