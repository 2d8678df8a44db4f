"""
Services for tenant lifecycle and active tenant selection.
"""
from .tenant_service import TenantService
from .active_tenant import (
    ActiveTenantResolver,
    PreferenceActiveTenantResolver,
    get_active_tenant_resolver,
    set_active_tenant,
)

__all__ = [
    'TenantService',
    'ActiveTenantResolver',
    'PreferenceActiveTenantResolver',
    'get_active_tenant_resolver',
    'set_active_tenant',
]
