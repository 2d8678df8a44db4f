"""
Permission resolution.

PermissionResolver turns a membership, its role grants and its overrides
into an EffectivePermissionSet:

1. No membership, or an inactive one: everything denied.
2. Owner flag, or a role whose slug is a system role slug: everything allowed.
3. Otherwise start from the role's grants (deny by default) and let each
   override replace the role's value for its (module, action).

The bypass is evaluated only here; call sites never check owner flags.
"""
import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from apps.rbac.catalog import (
    Action,
    PermissionKey,
    all_permission_keys,
    is_system_role_slug,
    validate_module,
    validate_permission,
)

logger = logging.getLogger(__name__)

MODULE_FLAG_NAMES = {
    Action.VIEW: 'canView',
    Action.CREATE: 'canCreate',
    Action.UPDATE: 'canUpdate',
    Action.DELETE: 'canDelete',
}


class EffectivePermissionSet:
    """
    Immutable Module x Action -> bool mapping covering the whole catalog.

    Keys are validated when the set is built and when it is queried, so an
    identifier outside the catalog raises UnknownPermissionError instead of
    reading as False.
    """

    __slots__ = ('_grants',)

    def __init__(self, granted: Iterable[Tuple] = ()):
        granted_keys = {validate_permission(module, action) for module, action in granted}
        self._grants: Dict[PermissionKey, bool] = {
            key: key in granted_keys for key in all_permission_keys()
        }

    @classmethod
    def all_denied(cls) -> 'EffectivePermissionSet':
        return cls()

    @classmethod
    def all_allowed(cls) -> 'EffectivePermissionSet':
        return cls(all_permission_keys())

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, bool]]) -> 'EffectivePermissionSet':
        """Rebuild from the nested dict produced by ``as_dict``."""
        return cls(
            (module, action)
            for module, actions in data.items()
            for action, allowed in actions.items()
            if allowed
        )

    def allows(self, module, action) -> bool:
        return self._grants[validate_permission(module, action)]

    def module_permissions(self, module) -> Dict[str, bool]:
        """canView/canCreate/canUpdate/canDelete flags for one module."""
        module = validate_module(module)
        return {
            flag: self._grants[(module, action)]
            for action, flag in MODULE_FLAG_NAMES.items()
        }

    def granted_keys(self):
        return frozenset(key for key, allowed in self._grants.items() if allowed)

    def as_dict(self) -> Dict[str, Dict[str, bool]]:
        """Nested ``{module: {action: bool}}`` with plain string keys."""
        result: Dict[str, Dict[str, bool]] = {}
        for (module, action), allowed in self._grants.items():
            result.setdefault(module.value, {})[action.value] = allowed
        return result

    def __eq__(self, other):
        if not isinstance(other, EffectivePermissionSet):
            return NotImplemented
        return self._grants == other._grants

    def __hash__(self):
        return hash(self.granted_keys())

    def __repr__(self):
        return f"<EffectivePermissionSet granted={len(self.granted_keys())}>"


class PermissionResolver:
    """
    Resolves effective permissions for one principal in one tenant.

    ``evaluate`` is the pure algorithm; ``resolve`` and
    ``resolve_membership`` load its inputs from the database.
    """

    @staticmethod
    def evaluate(
        is_active: bool,
        is_owner: bool,
        role_slug: Optional[str],
        role_grants: Iterable[Tuple] = (),
        overrides: Optional[Mapping[Tuple, bool]] = None,
    ) -> EffectivePermissionSet:
        """
        Compute an effective permission set from plain inputs.

        Args:
            is_active: Membership active flag (False denies everything)
            is_owner: Membership owner flag
            role_slug: Slug of the membership's role, or None
            role_grants: (module, action) pairs granted by the role
            overrides: {(module, action): granted} for the membership

        Returns:
            EffectivePermissionSet
        """
        if not is_active:
            return EffectivePermissionSet.all_denied()

        if is_owner or is_system_role_slug(role_slug):
            return EffectivePermissionSet.all_allowed()

        granted = {validate_permission(module, action) for module, action in role_grants}
        for (module, action), allowed in (overrides or {}).items():
            key = validate_permission(module, action)
            if allowed:
                granted.add(key)
            else:
                granted.discard(key)
        return EffectivePermissionSet(granted)

    @classmethod
    def resolve_membership(cls, membership) -> EffectivePermissionSet:
        """Resolve for an already loaded Membership (or None). A deactivated account has no access."""
        if membership is None or not membership.is_active or not membership.user.is_active:
            return EffectivePermissionSet.all_denied()

        role = membership.role
        role_slug = role.slug if role is not None else None

        if membership.is_owner or is_system_role_slug(role_slug):
            return EffectivePermissionSet.all_allowed()

        role_grants = role.grants.values_list('module', 'action') if role is not None else ()
        overrides = {
            (module, action): granted
            for module, action, granted in membership.overrides.values_list(
                'module', 'action', 'granted'
            )
        }
        return cls.evaluate(
            is_active=True,
            is_owner=False,
            role_slug=role_slug,
            role_grants=role_grants,
            overrides=overrides,
        )

    @classmethod
    def resolve(cls, user, tenant) -> EffectivePermissionSet:
        """
        Resolve for (principal, tenant).

        A missing principal or tenant is not an error: it resolves to
        all-denied so callers can treat "no access" uniformly.
        """
        from apps.rbac.models import Membership

        if user is None or tenant is None:
            return EffectivePermissionSet.all_denied()

        membership = Membership.objects.get_membership(tenant, user)
        if membership is None:
            logger.debug(
                "No active membership; denying all",
                extra={
                    'user_id': str(getattr(user, 'pk', user)),
                    'tenant_id': str(getattr(tenant, 'pk', tenant)),
                }
            )
        return cls.resolve_membership(membership)
