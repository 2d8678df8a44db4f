"""
RBAC and Authentication services.

Implements:
- RoleService: tenant roles and their grants
- MembershipService: role assignment and activation of memberships
- OverrideService: per-membership grant/revoke/clear
- InvitationService: invite, cancel, preview, accept and expire
- AuthService: JWT authentication

Every mutation runs in transaction.atomic together with exactly one
AuditLogger entry, and drops the affected cached permission sets once the
transaction commits.
"""
import logging
import re
import unicodedata
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

import jwt
from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from apps.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from apps.rbac.audit import AuditLogger, AuditTarget
from apps.rbac.catalog import (
    SYSTEM_ROLES,
    AuditActionKind,
    all_permission_keys,
    is_system_role_slug,
    permission_code,
    validate_permission,
)
from apps.rbac.exceptions import (
    CrossTenantReference,
    InvitationError,
    InvitationExpired,
    OwnerMembershipProtected,
    RoleConflict,
    SelfDeactivationError,
    SystemRoleProtected,
)
from apps.rbac.gate import PermissionCache
from apps.rbac.models import (
    Invitation,
    Membership,
    PermissionOverride,
    Role,
    RolePermission,
    User,
)

logger = logging.getLogger(__name__)


def invalidate_on_commit(pairs: Iterable):
    """Drop cached permission sets for (user, tenant) pairs after commit."""
    pairs = [(getattr(user, 'pk', user), getattr(tenant, 'pk', tenant)) for user, tenant in pairs]
    if pairs:
        transaction.on_commit(lambda: PermissionCache().invalidate_pairs(pairs))


def _role_memberships(role):
    return list(Membership.objects.filter(role=role).values_list('user_id', 'tenant_id'))


def _role_state(role) -> Dict[str, Any]:
    return {
        'name': role.name,
        'slug': role.slug,
        'description': role.description,
        'color': role.color,
        'is_default': role.is_default,
        'permissions': sorted(permission_code(m, a) for m, a in role.grant_keys()),
    }


def _require_owner(tenant, performed_by):
    """Role management is reserved to owners and system-role members."""
    if performed_by is None:
        return
    membership = Membership.objects.get_membership(tenant, performed_by)
    if membership is None or not membership.has_bypass:
        raise PermissionDeniedError(
            "Only company owners can manage roles",
            details={'tenant_id': str(getattr(tenant, 'pk', tenant))}
        )


class RoleService:
    """Service for tenant roles and role-level grants."""

    @staticmethod
    def slugify_role_name(name: str) -> str:
        """Lower-case ASCII slug; every run of other characters becomes one '-'."""
        value = unicodedata.normalize('NFKD', name or '')
        value = ''.join(ch for ch in value if not unicodedata.combining(ch))
        return re.sub(r'[^a-z0-9]+', '-', value.lower()).strip('-')

    @classmethod
    def _check_unique(cls, tenant, name, slug, exclude=None):
        qs = Role.objects.for_tenant(tenant).filter(Q(name__iexact=name) | Q(slug=slug))
        if exclude is not None:
            qs = qs.exclude(pk=exclude.pk)
        if qs.exists():
            raise RoleConflict(
                f"A role named '{name}' already exists",
                details={'name': name, 'slug': slug}
            )

    @classmethod
    def _replace_grants(cls, role, permissions) -> bool:
        """Make the role's grants exactly ``permissions``. Returns True if anything changed."""
        target = {validate_permission(module, action) for module, action in permissions}
        current = role.grant_keys()

        to_remove = current - target
        for module, action in to_remove:
            RolePermission.objects.revoke_permission(role, module, action)

        to_add = target - current
        RolePermission.objects.bulk_create([
            RolePermission(role=role, module=module, action=action)
            for module, action in sorted(to_add)
        ])
        return bool(to_remove or to_add)

    @classmethod
    def _clear_other_defaults(cls, role):
        Role.objects.for_tenant(role.tenant_id).filter(is_default=True).exclude(pk=role.pk).update(
            is_default=False
        )

    @classmethod
    @transaction.atomic
    def create_role(cls, tenant, name: str, performed_by: Optional[User] = None,
                    description: str = '', color: str = '', is_default: bool = False,
                    permissions: Iterable = (), request=None) -> Role:
        """
        Create a custom role.

        Args:
            tenant: Tenant the role belongs to
            name: Display name, unique in the tenant
            performed_by: Owner performing the change (None for system actions)
            permissions: (module, action) pairs granted by the role

        Raises:
            ValidationError: empty name or reserved slug
            RoleConflict: name or slug already used in the tenant
            UnknownPermissionError: a pair outside the catalog
        """
        _require_owner(tenant, performed_by)

        name = (name or '').strip()
        slug = cls.slugify_role_name(name)
        if not slug:
            raise ValidationError("Role name is required", details={'field': 'name'})
        if is_system_role_slug(slug) or slug in SYSTEM_ROLES:
            raise ValidationError(f"'{slug}' is reserved for system roles", details={'field': 'name'})
        permissions = [validate_permission(module, action) for module, action in permissions]

        cls._check_unique(tenant, name, slug)

        role = Role.objects.create(
            tenant=tenant,
            name=name,
            slug=slug,
            description=description or '',
            color=color or '',
            is_default=is_default,
        )
        if is_default:
            cls._clear_other_defaults(role)
        cls._replace_grants(role, permissions)

        AuditLogger.record(
            tenant=tenant,
            performed_by=performed_by,
            action=AuditActionKind.ROLE_CREATED,
            target=AuditTarget.for_role(role),
            new_value=_role_state(role),
            request=request,
        )
        return role

    @classmethod
    @transaction.atomic
    def update_role(cls, role: Role, performed_by: Optional[User] = None, name: Optional[str] = None,
                    description: Optional[str] = None, color: Optional[str] = None,
                    is_default: Optional[bool] = None, permissions: Optional[Iterable] = None,
                    request=None) -> Role:
        """
        Update a role's attributes and/or replace its grants.

        System roles keep their name and description; their grants and
        color may still be tuned.
        """
        role = Role.objects.select_for_update().get(pk=role.pk)
        _require_owner(role.tenant_id, performed_by)

        if role.is_system and (
            (name is not None and name.strip() != role.name)
            or (description is not None and description != role.description)
        ):
            raise SystemRoleProtected(
                f"System role '{role.slug}' cannot be renamed",
                details={'role_id': str(role.id)}
            )
        if is_default and role.is_bypass:
            raise ValidationError(
                "A system role with full access cannot be the default role",
                details={'field': 'is_default'}
            )

        old_state = _role_state(role)
        update_fields = []

        if name is not None and name.strip() != role.name:
            name = name.strip()
            slug = cls.slugify_role_name(name)
            if not slug:
                raise ValidationError("Role name is required", details={'field': 'name'})
            if is_system_role_slug(slug) or slug in SYSTEM_ROLES:
                raise ValidationError(f"'{slug}' is reserved for system roles", details={'field': 'name'})
            cls._check_unique(role.tenant_id, name, slug, exclude=role)
            role.name, role.slug = name, slug
            update_fields += ['name', 'slug']

        if description is not None and description != role.description:
            role.description = description
            update_fields.append('description')
        if color is not None and color != role.color:
            role.color = color
            update_fields.append('color')
        if is_default is not None and is_default != role.is_default:
            role.is_default = is_default
            update_fields.append('is_default')

        if update_fields:
            role.save(update_fields=update_fields + ['updated_at'])
            if role.is_default:
                cls._clear_other_defaults(role)

        grants_changed = permissions is not None and cls._replace_grants(role, permissions)

        new_state = _role_state(role)
        if new_state == old_state:
            return role

        AuditLogger.record(
            tenant=role.tenant,
            performed_by=performed_by,
            action=AuditActionKind.ROLE_UPDATED,
            target=AuditTarget.for_role(role),
            old_value=old_state,
            new_value=new_state,
            request=request,
        )
        if grants_changed:
            invalidate_on_commit(_role_memberships(role))
        return role

    @classmethod
    @transaction.atomic
    def delete_role(cls, role: Role, performed_by: Optional[User] = None, request=None) -> int:
        """
        Delete a custom role.

        Memberships holding the role are left without one: they keep only
        their overrides. One role_deleted entry is written for the whole
        operation.

        Returns:
            Number of memberships that lost the role
        """
        role = Role.objects.select_for_update().get(pk=role.pk)
        _require_owner(role.tenant_id, performed_by)

        if role.is_system:
            raise SystemRoleProtected(
                f"System role '{role.slug}' cannot be deleted",
                details={'role_id': str(role.id)}
            )

        affected_pairs = _role_memberships(role)
        affected = Membership.objects_with_deleted.filter(role=role).update(role=None)
        tenant = role.tenant

        AuditLogger.record(
            tenant=tenant,
            performed_by=performed_by,
            action=AuditActionKind.ROLE_DELETED,
            target=AuditTarget.for_role(role),
            old_value=_role_state(role),
            details={'affected_memberships': len(affected_pairs)},
            request=request,
        )
        role.hard_delete()

        logger.info(
            f"Role {role.slug} deleted",
            extra={'tenant_id': str(tenant.id), 'affected_memberships': affected}
        )
        invalidate_on_commit(affected_pairs)
        return len(affected_pairs)

    @classmethod
    @transaction.atomic
    def grant_role_permission(cls, role: Role, module, action, performed_by: Optional[User] = None,
                              request=None) -> RolePermission:
        """Add (module, action) to the role's grants. Granting twice is a no-op apart from the audit entry."""
        module, action = validate_permission(module, action)
        role = Role.objects.select_for_update().get(pk=role.pk)
        _require_owner(role.tenant_id, performed_by)

        grant, created = RolePermission.objects.grant_permission(role, module, action)
        AuditLogger.record(
            tenant=role.tenant,
            performed_by=performed_by,
            action=AuditActionKind.ROLE_PERMISSION_GRANTED,
            target=AuditTarget.for_role(role),
            module=module,
            new_value={'action': action.value, 'granted': True},
            details={'changed': created},
            request=request,
        )
        if created:
            invalidate_on_commit(_role_memberships(role))
        return grant

    @classmethod
    @transaction.atomic
    def revoke_role_permission(cls, role: Role, module, action, performed_by: Optional[User] = None,
                               request=None) -> bool:
        """Remove (module, action) from the role's grants. Returns True if a grant was removed."""
        module, action = validate_permission(module, action)
        role = Role.objects.select_for_update().get(pk=role.pk)
        _require_owner(role.tenant_id, performed_by)

        removed = RolePermission.objects.revoke_permission(role, module, action) > 0
        AuditLogger.record(
            tenant=role.tenant,
            performed_by=performed_by,
            action=AuditActionKind.ROLE_PERMISSION_REVOKED,
            target=AuditTarget.for_role(role),
            module=module,
            old_value={'action': action.value, 'granted': removed},
            new_value={'action': action.value, 'granted': False},
            details={'changed': removed},
            request=request,
        )
        if removed:
            invalidate_on_commit(_role_memberships(role))
        return removed

    @classmethod
    @transaction.atomic
    def seed_system_roles(cls, tenant) -> list:
        """
        Create the system roles of a tenant (idempotent).

        Returns:
            Slugs of the roles created by this call
        """
        created_slugs = []
        has_default = Role.objects.for_tenant(tenant).filter(is_default=True).exists()

        for slug, config in SYSTEM_ROLES.items():
            role, created = Role.objects.get_or_create(
                tenant=tenant,
                slug=slug,
                defaults={
                    'name': config['name'],
                    'description': config['description'],
                    'color': config['color'],
                    'is_system': True,
                    'is_default': config['is_default'] and not has_default,
                }
            )
            if not created:
                continue

            grants = all_permission_keys() if config['grants'] == 'ALL' else config['grants']
            cls._replace_grants(role, grants)
            created_slugs.append(slug)

            AuditLogger.record(
                tenant=tenant,
                performed_by=None,
                action=AuditActionKind.ROLE_CREATED,
                target=AuditTarget.for_role(role),
                new_value=_role_state(role),
                details={'seeded': True},
            )

        if created_slugs:
            logger.info(
                f"Seeded system roles for tenant {tenant.slug}",
                extra={'tenant_id': str(tenant.id), 'roles': created_slugs}
            )
        return created_slugs


class MembershipService:
    """Service for membership role assignment and activation."""

    @classmethod
    def _lock(cls, membership) -> Membership:
        return Membership.objects.select_for_update().select_related('user', 'role').get(pk=membership.pk)

    @classmethod
    @transaction.atomic
    def change_role(cls, membership: Membership, role: Optional[Role],
                    performed_by: Optional[User] = None, request=None) -> Membership:
        """
        Assign ``role`` (or no role) to a membership.

        Raises:
            OwnerMembershipProtected: the membership is the tenant owner's
            CrossTenantReference: the role belongs to another tenant
            PermissionDeniedError: a non-owner tried to hand out a system role
        """
        membership = cls._lock(membership)

        if membership.is_owner:
            raise OwnerMembershipProtected(
                "The owner's role cannot be changed",
                details={'membership_id': str(membership.id)}
            )
        if role is not None and role.tenant_id != membership.tenant_id:
            raise CrossTenantReference(
                "Role belongs to another tenant",
                details={'role_id': str(role.id)}
            )
        if role is not None and role.is_bypass and performed_by is not None:
            performer = Membership.objects.get_membership(membership.tenant_id, performed_by)
            if performer is None or not performer.has_bypass:
                raise PermissionDeniedError(
                    "Only company owners can assign system roles",
                    details={'role_id': str(role.id)}
                )

        old_role = membership.role
        if (old_role.pk if old_role else None) == (role.pk if role else None):
            return membership

        membership.role = role
        membership.save(update_fields=['role', 'updated_at'])

        AuditLogger.record(
            tenant=membership.tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_ROLE_CHANGED,
            target=AuditTarget.for_membership(membership),
            old_value={
                'role_id': str(old_role.id) if old_role else None,
                'role_name': old_role.name if old_role else None,
            },
            new_value={
                'role_id': str(role.id) if role else None,
                'role_name': role.name if role else None,
            },
            request=request,
        )
        invalidate_on_commit([(membership.user_id, membership.tenant_id)])
        return membership

    @classmethod
    @transaction.atomic
    def deactivate(cls, membership: Membership, performed_by: Optional[User] = None,
                   request=None) -> Membership:
        """Deactivate a membership; the member loses all access to the tenant."""
        membership = cls._lock(membership)

        if membership.is_owner:
            raise OwnerMembershipProtected(
                "The owner cannot be deactivated",
                details={'membership_id': str(membership.id)}
            )
        if performed_by is not None and membership.user_id == performed_by.pk:
            raise SelfDeactivationError("You cannot deactivate your own membership")
        if not membership.is_active:
            return membership

        membership.is_active = False
        membership.deactivated_at = timezone.now()
        membership.save(update_fields=['is_active', 'deactivated_at', 'updated_at'])

        AuditLogger.record(
            tenant=membership.tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_DEACTIVATED,
            target=AuditTarget.for_membership(membership),
            old_value={'is_active': True},
            new_value={'is_active': False},
            request=request,
        )
        invalidate_on_commit([(membership.user_id, membership.tenant_id)])
        return membership

    @classmethod
    @transaction.atomic
    def reactivate(cls, membership: Membership, performed_by: Optional[User] = None,
                   request=None) -> Membership:
        membership = cls._lock(membership)
        if membership.is_active:
            return membership

        membership.is_active = True
        membership.deactivated_at = None
        membership.save(update_fields=['is_active', 'deactivated_at', 'updated_at'])

        AuditLogger.record(
            tenant=membership.tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_REACTIVATED,
            target=AuditTarget.for_membership(membership),
            old_value={'is_active': False},
            new_value={'is_active': True},
            request=request,
        )
        invalidate_on_commit([(membership.user_id, membership.tenant_id)])
        return membership


class OverrideService:
    """
    Service for per-membership overrides.

    Overrides on owner or system-role memberships are stored and audited
    but have no effect while the bypass holds.
    """

    @classmethod
    def _set(cls, membership, module, action, granted, performed_by, reason, request):
        module, action = validate_permission(module, action)
        membership = Membership.objects.select_related('user', 'tenant').get(pk=membership.pk)

        override, previous = PermissionOverride.objects.set_override(
            membership=membership,
            module=module,
            action=action,
            granted=granted,
            reason=reason,
            granted_by=performed_by,
        )

        AuditLogger.record(
            tenant=membership.tenant,
            performed_by=performed_by,
            action=(
                AuditActionKind.MEMBER_PERMISSION_GRANTED if granted
                else AuditActionKind.MEMBER_PERMISSION_REVOKED
            ),
            target=AuditTarget.for_membership(membership),
            module=module,
            old_value={'action': action.value, 'granted': previous} if previous is not None else None,
            new_value={'action': action.value, 'granted': granted},
            details={'reason': reason} if reason else None,
            request=request,
        )
        invalidate_on_commit([(membership.user_id, membership.tenant_id)])
        return override

    @classmethod
    @transaction.atomic
    def grant(cls, membership: Membership, module, action, performed_by: Optional[User] = None,
              reason: str = '', request=None) -> PermissionOverride:
        """Grant (module, action) to the member regardless of its role."""
        return cls._set(membership, module, action, True, performed_by, reason, request)

    @classmethod
    @transaction.atomic
    def revoke(cls, membership: Membership, module, action, performed_by: Optional[User] = None,
               reason: str = '', request=None) -> PermissionOverride:
        """Deny (module, action) to the member regardless of its role."""
        return cls._set(membership, module, action, False, performed_by, reason, request)

    @classmethod
    @transaction.atomic
    def clear(cls, membership: Membership, module, action, performed_by: Optional[User] = None,
              request=None) -> Optional[bool]:
        """
        Remove the override so the role default applies again.

        Returns:
            The cleared override's granted value, or None if there was none
        """
        module, action = validate_permission(module, action)
        membership = Membership.objects.select_related('user', 'tenant').get(pk=membership.pk)

        previous = PermissionOverride.objects.clear_override(membership, module, action)
        if previous is None:
            return None

        AuditLogger.record(
            tenant=membership.tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_PERMISSION_REVOKED,
            target=AuditTarget.for_membership(membership),
            module=module,
            old_value={'action': action.value, 'granted': previous},
            new_value=None,
            details={'cleared': True},
            request=request,
        )
        invalidate_on_commit([(membership.user_id, membership.tenant_id)])
        return previous


class InvitationService:
    """Service for tenant invitations."""

    @classmethod
    @transaction.atomic
    def invite(cls, tenant, email: str, role: Optional[Role] = None,
               performed_by: Optional[User] = None, request=None) -> Invitation:
        """
        Invite ``email`` to the tenant with ``role`` (or the tenant's default role).

        Raises:
            CrossTenantReference: role from another tenant
            InvitationError: already a member or already invited
        """
        email = User.objects.normalize_email(email)
        if not email:
            raise ValidationError("Email is required", details={'field': 'email'})
        if role is not None and role.tenant_id != getattr(tenant, 'pk', tenant):
            raise CrossTenantReference("Role belongs to another tenant", details={'role_id': str(role.id)})
        if role is not None and role.is_bypass:
            _require_owner(tenant, performed_by)

        if Membership.objects.for_tenant(tenant).active().filter(user__email__iexact=email).exists():
            raise InvitationError(
                f"{email} is already a member of this company",
                details={'email': email}
            )
        if Invitation.objects.for_tenant(tenant).pending().filter(email__iexact=email).exists():
            raise InvitationError(
                f"{email} already has a pending invitation",
                details={'email': email}
            )

        invitation = Invitation.objects.create(
            tenant=tenant,
            email=email,
            role=role or Role.objects.default_for_tenant(tenant),
            invited_by=performed_by,
        )

        AuditLogger.record(
            tenant=invitation.tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_INVITED,
            target=AuditTarget.for_invitation(invitation),
            new_value={
                'email': email,
                'role_id': str(invitation.role_id) if invitation.role_id else None,
                'expires_at': invitation.expires_at.isoformat(),
            },
            request=request,
        )
        return invitation

    @classmethod
    @transaction.atomic
    def cancel(cls, invitation: Invitation, performed_by: Optional[User] = None,
               request=None) -> Invitation:
        invitation = Invitation.objects.select_for_update().get(pk=invitation.pk)
        if invitation.status != Invitation.STATUS_PENDING:
            raise InvitationError(
                f"Only pending invitations can be cancelled (status: {invitation.status})",
                details={'invitation_id': str(invitation.id)}
            )

        invitation.status = Invitation.STATUS_CANCELLED
        invitation.save(update_fields=['status', 'updated_at'])

        AuditLogger.record(
            tenant=invitation.tenant,
            performed_by=performed_by,
            action=AuditActionKind.INVITATION_CANCELLED,
            target=AuditTarget.for_invitation(invitation),
            old_value={'status': Invitation.STATUS_PENDING},
            new_value={'status': Invitation.STATUS_CANCELLED},
            request=request,
        )
        return invitation

    @classmethod
    def _expire(cls, invitation, performed_by=None):
        invitation.status = Invitation.STATUS_EXPIRED
        invitation.save(update_fields=['status', 'updated_at'])
        AuditLogger.record(
            tenant=invitation.tenant,
            performed_by=performed_by,
            action=AuditActionKind.INVITATION_EXPIRED,
            target=AuditTarget.for_invitation(invitation),
            old_value={'status': Invitation.STATUS_PENDING},
            new_value={'status': Invitation.STATUS_EXPIRED},
        )

    @classmethod
    def get_by_token(cls, token: str) -> Invitation:
        """
        Look up an invitation for the invitee to review before accepting.

        Read-only: an overdue pending invitation is reported as is and only
        marked expired by ``accept`` or ``expire_stale``.

        Raises:
            NotFoundError: no invitation carries ``token``
        """
        invitation = Invitation.objects.select_related('tenant', 'role', 'invited_by').filter(
            token=token
        ).first() if token else None
        if invitation is None:
            raise NotFoundError("Invitation not found")
        return invitation

    @classmethod
    def accept(cls, token: str, user: User, request=None) -> Membership:
        """
        Accept an invitation on behalf of ``user``.

        Creates the membership (or reactivates a deactivated one) with the
        invitation's role.

        Raises:
            InvitationError: unknown token, wrong status, wrong email or already a member
            InvitationExpired: the invitation expired; it is marked expired
        """
        expired = False
        with transaction.atomic():
            invitation = Invitation.objects.select_for_update().filter(token=token).first()
            if invitation is None:
                raise InvitationError("Invitation not found")
            if invitation.status != Invitation.STATUS_PENDING:
                raise InvitationError(
                    f"Invitation is no longer pending (status: {invitation.status})",
                    details={'invitation_id': str(invitation.id)}
                )
            if invitation.is_expired():
                cls._expire(invitation)
                expired = True
            else:
                membership = cls._accept(invitation, user, request)

        # Raised after the block so the expiry and its audit entry commit.
        if expired:
            raise InvitationExpired(
                "Invitation has expired",
                details={'invitation_id': str(invitation.id)}
            )
        return membership

    @classmethod
    def _accept(cls, invitation, user, request):
        if User.objects.normalize_email(user.email) != invitation.email:
            raise InvitationError(
                "This invitation was sent to a different email address",
                details={'invitation_id': str(invitation.id)}
            )

        membership = Membership.objects.get_membership(invitation.tenant_id, user, include_inactive=True)
        if membership is not None and membership.is_active:
            raise InvitationError(
                "You are already a member of this company",
                details={'membership_id': str(membership.id)}
            )

        if membership is None:
            membership = Membership.objects.create(
                tenant=invitation.tenant,
                user=user,
                role=invitation.role,
                invited_by=invitation.invited_by,
            )
        else:
            membership.role = invitation.role
            membership.is_active = True
            membership.deactivated_at = None
            membership.joined_at = timezone.now()
            membership.save(update_fields=['role', 'is_active', 'deactivated_at', 'joined_at', 'updated_at'])

        invitation.status = Invitation.STATUS_ACCEPTED
        invitation.accepted_at = timezone.now()
        invitation.save(update_fields=['status', 'accepted_at', 'updated_at'])

        AuditLogger.record(
            tenant=invitation.tenant,
            performed_by=user,
            action=AuditActionKind.INVITATION_ACCEPTED,
            target=AuditTarget.for_invitation(invitation),
            new_value={
                'membership_id': str(membership.id),
                'role_id': str(invitation.role_id) if invitation.role_id else None,
            },
            request=request,
        )
        invalidate_on_commit([(user.pk, invitation.tenant_id)])
        return membership

    @classmethod
    def expire_stale(cls, now=None) -> int:
        """
        Mark overdue pending invitations as expired.

        Each invitation expires in its own transaction with its own entry.

        Returns:
            Number of invitations expired
        """
        count = 0
        for invitation_id in Invitation.objects.overdue(now).values_list('id', flat=True):
            with transaction.atomic():
                invitation = Invitation.objects.select_for_update().filter(
                    pk=invitation_id, status=Invitation.STATUS_PENDING
                ).select_related('tenant').first()
                if invitation is None:
                    continue
                cls._expire(invitation)
                count += 1

        if count:
            logger.info(f"Expired {count} stale invitations")
        return count


class AuthService:
    """
    Service for authentication operations: JWT issue and validation, login.
    """

    @classmethod
    def generate_jwt(cls, user: User) -> str:
        """
        Generate JWT token for a user.

        Args:
            user: User instance

        Returns:
            JWT token string
        """
        payload = {
            'user_id': str(user.id),
            'email': user.email,
            'exp': datetime.utcnow() + timedelta(hours=getattr(settings, 'JWT_EXPIRATION_HOURS', 24)),
            'iat': datetime.utcnow(),
        }

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def validate_jwt(cls, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate JWT token and return payload.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')]
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

    @classmethod
    def get_user_from_jwt(cls, token: str) -> Optional[User]:
        """Extract and return the active user from a JWT token."""
        payload = cls.validate_jwt(token)
        if not payload:
            return None

        user_id = payload.get('user_id')
        if not user_id:
            return None

        try:
            return User.objects.get(id=user_id, is_active=True)
        except (User.DoesNotExist, DjangoValidationError, ValueError, TypeError):
            return None

    @classmethod
    def login(cls, email: str, password: str, request=None) -> Optional[Dict[str, Any]]:
        """
        Authenticate user and return JWT token.

        Returns:
            Dict with user and token, or None if authentication failed
        """
        from django.contrib.auth import authenticate

        user = authenticate(request, username=User.objects.normalize_email(email), password=password)
        if user is None:
            return None

        user.update_last_login()
        return {
            'user': user,
            'token': cls.generate_jwt(user),
        }
