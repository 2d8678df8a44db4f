"""
Access gate: the enforcement entry points used by views and UI layers.

Two shapes of the same check:
- the guard (``check_permission``, ``check_any_permission``,
  ``check_all_permissions``) always resolves from the database, because it
  decides whether privileged data is fetched at all;
- the boolean query (``can``, ``get_module_permissions``,
  ``get_current_user_permissions``) reads through PermissionCache, a
  short-TTL per-(principal, tenant) cache with an injectable clock.

Unexpected errors while resolving deny access. Catalog misuse
(UnknownPermissionError) always propagates.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from django.conf import settings

from apps.core.cache import CacheKeys, CacheService, CacheTTL
from apps.core.logging import SecurityLogger
from apps.rbac.catalog import UnknownPermissionError, validate_module, validate_permission
from apps.rbac.resolver import EffectivePermissionSet, PermissionResolver

logger = logging.getLogger(__name__)


def _pk(obj):
    return getattr(obj, 'pk', obj)


@dataclass(frozen=True)
class AccessSnapshot:
    """Resolved access of one principal in one tenant."""

    membership_id: Optional[str]
    is_owner: bool
    role_id: Optional[str]
    role_slug: Optional[str]
    role_name: Optional[str]
    permissions: EffectivePermissionSet

    @classmethod
    def no_access(cls):
        return cls(None, False, None, None, None, EffectivePermissionSet.all_denied())

    @classmethod
    def from_membership(cls, membership):
        if membership is None or not membership.is_active:
            return cls.no_access()
        role = membership.role
        return cls(
            membership_id=str(membership.pk),
            is_owner=membership.is_owner,
            role_id=str(role.pk) if role else None,
            role_slug=role.slug if role else None,
            role_name=role.name if role else None,
            permissions=PermissionResolver.resolve_membership(membership),
        )

    @property
    def has_membership(self):
        return self.membership_id is not None

    @property
    def is_system_role(self):
        from apps.rbac.catalog import is_system_role_slug
        return is_system_role_slug(self.role_slug)

    def to_cache(self) -> dict:
        return {
            'membership_id': self.membership_id,
            'is_owner': self.is_owner,
            'role_id': self.role_id,
            'role_slug': self.role_slug,
            'role_name': self.role_name,
            'permissions': self.permissions.as_dict(),
        }

    @classmethod
    def from_cache(cls, data: dict):
        return cls(
            membership_id=data['membership_id'],
            is_owner=data['is_owner'],
            role_id=data['role_id'],
            role_slug=data['role_slug'],
            role_name=data['role_name'],
            permissions=EffectivePermissionSet.from_dict(data['permissions']),
        )

    def as_payload(self) -> dict:
        return {
            'memberId': self.membership_id,
            'isOwner': self.is_owner,
            'roleId': self.role_id,
            'roleSlug': self.role_slug,
            'roleName': self.role_name,
            'permissions': self.permissions.as_dict(),
        }


class PermissionCache:
    """
    Short-lived cache of AccessSnapshots keyed by (principal, tenant).

    Entries live in Django's cache so every worker shares them. Expiry is
    decided by ``clock`` (seconds, ``time.time`` by default) so tests can
    move time deterministically; the backend timeout only reclaims space.
    """

    def __init__(self, ttl: Optional[int] = None, clock: Optional[Callable[[], float]] = None):
        if ttl is None:
            ttl = getattr(settings, 'RBAC_PERMISSION_CACHE_TTL', CacheTTL.RBAC_PERMISSIONS)
        self.ttl = ttl
        self.clock = clock or time.time

    @staticmethod
    def key(user, tenant) -> str:
        return CacheKeys.format(CacheKeys.USER_PERMISSIONS, tenant_id=_pk(tenant), user_id=_pk(user))

    def get(self, user, tenant) -> Optional[AccessSnapshot]:
        key = self.key(user, tenant)
        entry = CacheService.get(key)
        if entry is None:
            return None
        if self.clock() - entry['stored_at'] >= self.ttl:
            CacheService.delete(key)
            return None
        return AccessSnapshot.from_cache(entry['snapshot'])

    def set(self, user, tenant, snapshot: AccessSnapshot):
        CacheService.set(
            self.key(user, tenant),
            {'stored_at': self.clock(), 'snapshot': snapshot.to_cache()},
            ttl=self.ttl,
        )

    def invalidate(self, user, tenant):
        CacheService.delete(self.key(user, tenant))

    def invalidate_pairs(self, pairs: Iterable[Tuple]):
        """Drop entries for several (user, tenant) pairs."""
        CacheService.delete_many(self.key(user, tenant) for user, tenant in pairs)

    def invalidate_user(self, user):
        """Drop the user's entries for every tenant they belong to."""
        from apps.rbac.models import Membership

        tenant_ids = Membership.objects.for_user(user).values_list('tenant_id', flat=True)
        self.invalidate_pairs((_pk(user), tenant_id) for tenant_id in tenant_ids)


@dataclass(frozen=True)
class PermissionCheck:
    """Outcome of a guard check. ``redirect_to`` is set only for a redirecting denial."""

    allowed: bool
    redirect_to: Optional[str] = None

    def __bool__(self):
        return self.allowed

    def as_dict(self):
        data = {'allowed': self.allowed}
        if self.redirect_to:
            data['redirectTo'] = self.redirect_to
        return data


class AccessGate:
    """
    Permission checks for the current principal in its active tenant.

    Args:
        user: The authenticated principal, or None/anonymous
        tenant: Tenant to check against; when omitted the tenant resolver
            decides which tenant the principal is operating in
        tenant_resolver: ActiveTenantResolver implementation
        cache: PermissionCache used by the boolean queries
    """

    def __init__(self, user, tenant=None, tenant_resolver=None, cache: Optional[PermissionCache] = None):
        if user is not None and not getattr(user, 'is_authenticated', False):
            user = None
        self.user = user
        self._tenant = tenant
        self._tenant_resolver = tenant_resolver
        self.cache = cache or PermissionCache()

    @property
    def tenant_resolver(self):
        if self._tenant_resolver is None:
            from apps.tenants.services.active_tenant import get_active_tenant_resolver
            self._tenant_resolver = get_active_tenant_resolver()
        return self._tenant_resolver

    def current_tenant_id(self):
        """Tenant the principal is operating in, or None."""
        if self.user is None:
            return None
        if self._tenant is not None:
            return _pk(self._tenant)
        return self.tenant_resolver.resolve_active_tenant(self.user)

    def _load(self, tenant_id) -> AccessSnapshot:
        from apps.rbac.models import Membership

        membership = Membership.objects.get_membership(tenant_id, self.user)
        return AccessSnapshot.from_membership(membership)

    def _resolve(self, use_cache: bool) -> Tuple[Optional[Any], AccessSnapshot]:
        """The tenant asked about (resolved once) and the principal's snapshot there."""
        tenant_id = None
        try:
            tenant_id = self.current_tenant_id()
            if self.user is None or tenant_id is None:
                return tenant_id, AccessSnapshot.no_access()

            if use_cache:
                cached = self.cache.get(self.user, tenant_id)
                if cached is not None:
                    return tenant_id, cached

            snapshot = self._load(tenant_id)
            if use_cache:
                self.cache.set(self.user, tenant_id, snapshot)
            return tenant_id, snapshot
        except UnknownPermissionError:
            raise
        except Exception:
            logger.error(
                "Permission resolution failed; denying access",
                extra={'user_id': str(_pk(self.user)) if self.user else None},
                exc_info=True
            )
            return tenant_id, AccessSnapshot.no_access()

    def _snapshot(self, use_cache: bool) -> AccessSnapshot:
        return self._resolve(use_cache)[1]

    def _validate(self, module, action):
        try:
            return validate_permission(module, action)
        except UnknownPermissionError:
            SecurityLogger.log_unknown_permission(module, action, user_id=_pk(self.user) if self.user else None)
            raise

    # Guard shape

    def check_permission(self, module, action, redirect: bool = False,
                         redirect_to: Optional[str] = None) -> PermissionCheck:
        """
        Check one (module, action) for the current principal.

        Always re-resolves. When ``redirect`` is true a denial carries the
        URL the caller should navigate to (``redirect_to`` or
        PERMISSION_DENIED_REDIRECT_URL).
        """
        module, action = self._validate(module, action)
        tenant_id, snapshot = self._resolve(use_cache=False)
        allowed = snapshot.permissions.allows(module, action)

        if not allowed:
            SecurityLogger.log_permission_denied(
                user_id=_pk(self.user) if self.user else None,
                tenant_id=tenant_id,
                module=module.value,
                action=action.value,
            )
            if redirect:
                return PermissionCheck(
                    allowed=False,
                    redirect_to=redirect_to or getattr(settings, 'PERMISSION_DENIED_REDIRECT_URL', '/dashboard'),
                )
        return PermissionCheck(allowed=allowed)

    def check_any_permission(self, checks: Iterable[Tuple]) -> bool:
        """True if at least one of the (module, action) pairs is allowed."""
        keys = [self._validate(module, action) for module, action in checks]
        permissions = self._snapshot(use_cache=False).permissions
        return any(permissions.allows(module, action) for module, action in keys)

    def check_all_permissions(self, checks: Iterable[Tuple]) -> bool:
        """True if every (module, action) pair is allowed."""
        keys = [self._validate(module, action) for module, action in checks]
        permissions = self._snapshot(use_cache=False).permissions
        return all(permissions.allows(module, action) for module, action in keys)

    def is_owner(self) -> bool:
        return self._snapshot(use_cache=False).is_owner

    def is_system_role(self) -> bool:
        return self._snapshot(use_cache=False).is_system_role

    # Boolean query shape

    def can(self, module, action) -> bool:
        module, action = self._validate(module, action)
        return self._snapshot(use_cache=True).permissions.allows(module, action)

    def get_module_permissions(self, module) -> Dict[str, bool]:
        """canView/canCreate/canUpdate/canDelete for one module."""
        try:
            module = validate_module(module)
        except UnknownPermissionError:
            SecurityLogger.log_unknown_permission(module, None)
            raise
        return self._snapshot(use_cache=True).permissions.module_permissions(module)

    def get_multiple_module_permissions(self, modules) -> Dict[str, Dict[str, bool]]:
        modules = [validate_module(module) for module in modules]
        permissions = self._snapshot(use_cache=True).permissions
        return {module.value: permissions.module_permissions(module) for module in modules}

    def get_current_user_permissions(self) -> Optional[dict]:
        """
        Full snapshot for client-side caching.

        Returns None when there is no principal, no active tenant or no
        active membership.
        """
        snapshot = self._snapshot(use_cache=True)
        if not snapshot.has_membership:
            return None
        return snapshot.as_payload()

    def refresh(self):
        """Forget the cached snapshot for the current (principal, tenant)."""
        tenant_id = self.current_tenant_id()
        if self.user is not None and tenant_id is not None:
            self.cache.invalidate(self.user, tenant_id)
