"""
Tenant management service.

Handles tenant lifecycle operations including:
- Tenant creation with the creator as owner
- Owner membership management
- User tenant listing and access validation
"""
import logging
from typing import Optional

from django.db import transaction
from django.utils.text import slugify

from apps.core.exceptions import PermissionDeniedError, ValidationError
from apps.core.logging import SecurityLogger
from apps.rbac.audit import AuditLogger, AuditTarget
from apps.rbac.catalog import OWNER_ROLE_SLUG, AuditActionKind
from apps.rbac.models import Membership, Role, User
from apps.rbac.services import invalidate_on_commit
from apps.tenants.models import Tenant

logger = logging.getLogger(__name__)


class TenantService:
    """
    Service for tenant lifecycle and membership lookups.
    """

    @classmethod
    @transaction.atomic
    def create_tenant(cls, user: User, name: str, slug: Optional[str] = None) -> Tenant:
        """
        Create new tenant with user as owner.

        System roles are seeded by the post_save signal inside this
        transaction, so the owner role exists before the membership.

        Args:
            user: User who will own the tenant
            name: Company name
            slug: URL-friendly identifier (auto-generated if not provided)

        Returns:
            Tenant instance
        """
        name = (name or '').strip()
        if not name:
            raise ValidationError("Company name is required", details={'field': 'name'})

        slug = slug or slugify(name)
        base_slug = slug
        counter = 1
        while Tenant.objects_with_deleted.filter(slug=slug).exists():
            slug = f"{base_slug}-{counter}"
            counter += 1

        tenant = Tenant.objects.create(name=name, slug=slug)
        cls.ensure_owner(tenant, user)

        if user.active_tenant_id is None:
            user.active_tenant = tenant
            user.save(update_fields=['active_tenant', 'updated_at'])

        logger.info(
            f"Tenant created: {tenant.slug}",
            extra={'tenant_id': str(tenant.id), 'owner_id': str(user.id)}
        )
        return tenant

    @classmethod
    @transaction.atomic
    def ensure_owner(cls, tenant: Tenant, user: User, performed_by: Optional[User] = None) -> Membership:
        """
        Create or promote the user's membership to owner of ``tenant``.

        Promoting an existing membership is a role change and is audited as
        ``member_role_changed``; a membership that already is the active
        owner is left untouched.
        """
        owner_role = Role.objects.by_slug(tenant, OWNER_ROLE_SLUG)
        membership = Membership.objects.get_membership(tenant, user, include_inactive=True)

        if membership is None:
            membership = Membership.objects.create(
                tenant=tenant,
                user=user,
                role=owner_role,
                is_owner=True,
            )
            invalidate_on_commit([(user.pk, tenant.pk)])
            return membership

        membership = Membership.objects.select_for_update().select_related('user', 'role').get(
            pk=membership.pk
        )
        old_role = membership.role
        old_value = {
            'role_id': str(old_role.id) if old_role else None,
            'role_name': old_role.name if old_role else None,
            'is_owner': membership.is_owner,
            'is_active': membership.is_active,
        }
        new_value = {
            'role_id': str(owner_role.id) if owner_role else None,
            'role_name': owner_role.name if owner_role else None,
            'is_owner': True,
            'is_active': True,
        }
        if old_value == new_value:
            return membership

        membership.is_owner = True
        membership.is_active = True
        membership.deactivated_at = None
        membership.role = owner_role
        membership.save(update_fields=['is_owner', 'is_active', 'deactivated_at', 'role', 'updated_at'])

        AuditLogger.record(
            tenant=tenant,
            performed_by=performed_by,
            action=AuditActionKind.MEMBER_ROLE_CHANGED,
            target=AuditTarget.for_membership(membership),
            old_value=old_value,
            new_value=new_value,
            details={'promoted_to_owner': True},
        )
        invalidate_on_commit([(user.pk, tenant.pk)])
        logger.info(
            "Membership promoted to owner",
            extra={'tenant_id': str(tenant.pk), 'user_id': str(user.pk)}
        )
        return membership

    @classmethod
    def get_user_memberships(cls, user: User):
        """Active memberships of ``user`` in reachable tenants, by tenant name."""
        return Membership.objects.for_user(user).active().filter(
            tenant__deleted_at__isnull=True,
            tenant__status__in=[Tenant.STATUS_ACTIVE, Tenant.STATUS_TRIAL],
        ).select_related('tenant', 'role').order_by('tenant__name')

    @classmethod
    def validate_tenant_access(cls, user: User, tenant: Tenant) -> Membership:
        """
        Validate user has access to tenant.

        Returns:
            The active Membership

        Raises:
            PermissionDeniedError: no active membership, or tenant unreachable
        """
        membership = None
        if tenant is not None and tenant.deleted_at is None and tenant.is_active():
            membership = Membership.objects.get_membership(tenant, user)

        if membership is None:
            SecurityLogger.log_cross_tenant_access(
                user_id=getattr(user, 'pk', None),
                tenant_id=getattr(tenant, 'pk', None),
            )
            raise PermissionDeniedError(
                "You do not have access to this company",
                details={'tenant_id': str(getattr(tenant, 'pk', ''))}
            )

        membership.update_last_seen()
        return membership
