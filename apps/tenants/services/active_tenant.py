"""
Active tenant resolution.

A principal may belong to several tenants but operates in one at a time.
ActiveTenantResolver is the seam the access gate asks for that tenant;
PreferenceActiveTenantResolver backs it with the choice stored on the user.
"""
import logging

from django.conf import settings
from django.utils.module_loading import import_string

from apps.rbac.gate import PermissionCache
from apps.rbac.models import Membership, User
from apps.tenants.models import Tenant
from apps.tenants.services.tenant_service import TenantService

logger = logging.getLogger(__name__)

DEFAULT_RESOLVER = 'apps.tenants.services.active_tenant.PreferenceActiveTenantResolver'


class ActiveTenantResolver:
    """
    Decides which tenant a principal is currently operating in.

    Implementations return a tenant id, or None when the principal has no
    tenant to operate in (which the gate treats as deny-all).
    """

    def resolve_active_tenant(self, user):
        raise NotImplementedError


class PreferenceActiveTenantResolver(ActiveTenantResolver):
    """
    Uses ``User.active_tenant`` while its membership is active.

    Otherwise falls back to the user's oldest active membership and stores
    it as the new preference.
    """

    def _memberships(self, user):
        return Membership.objects.for_user(user).active().filter(
            tenant__deleted_at__isnull=True,
            tenant__status__in=[Tenant.STATUS_ACTIVE, Tenant.STATUS_TRIAL],
        )

    def resolve_active_tenant(self, user):
        if user is None or not getattr(user, 'is_authenticated', False):
            return None

        memberships = self._memberships(user)
        preferred = user.active_tenant_id
        if preferred is not None and memberships.filter(tenant_id=preferred).exists():
            return preferred

        fallback = memberships.order_by('joined_at').values_list('tenant_id', flat=True).first()
        if fallback != preferred:
            User.objects.filter(pk=user.pk).update(active_tenant_id=fallback)
            user.active_tenant_id = fallback
            logger.info(
                "Active tenant reset",
                extra={
                    'user_id': str(user.pk),
                    'previous_tenant_id': str(preferred) if preferred else None,
                    'tenant_id': str(fallback) if fallback else None,
                }
            )
        return fallback


def get_active_tenant_resolver() -> ActiveTenantResolver:
    """Instantiate the resolver named by ACTIVE_TENANT_RESOLVER."""
    path = getattr(settings, 'ACTIVE_TENANT_RESOLVER', DEFAULT_RESOLVER)
    return import_string(path)()


def set_active_tenant(user, tenant) -> Membership:
    """
    Switch the tenant ``user`` operates in.

    Cached permission sets for the previous and the new tenant are dropped
    so the next query resolves against the new context.

    Raises:
        PermissionDeniedError: the user has no active membership in ``tenant``
    """
    membership = TenantService.validate_tenant_access(user, tenant)

    previous = user.active_tenant_id
    user.active_tenant = tenant
    user.save(update_fields=['active_tenant', 'updated_at'])

    pairs = [(user.pk, tenant.pk)]
    if previous is not None and previous != tenant.pk:
        pairs.append((user.pk, previous))
    PermissionCache().invalidate_pairs(pairs)

    logger.info(
        "Active tenant switched",
        extra={
            'user_id': str(user.pk),
            'previous_tenant_id': str(previous) if previous else None,
            'tenant_id': str(tenant.pk),
        }
    )
    return membership
