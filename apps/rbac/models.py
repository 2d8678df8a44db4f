"""
RBAC models for multi-tenant access control.

Implements:
- Global User identity (can work across multiple tenants)
- Membership binding a user to a tenant (optional role, owner flag, active flag)
- Role (per-tenant bundle of module/action grants)
- RolePermission (one granted module/action pair of a role)
- PermissionOverride (per-membership grant or revoke that beats the role)
- Invitation (pending access to a tenant)
- AuditLog (append-only trail of authorization changes)
"""
import logging
import secrets
from datetime import timedelta

from django.conf import settings
from django.contrib.auth.hashers import make_password, check_password
from django.db import models
from django.utils import timezone

from apps.core.models import BaseModel, BaseModelManager, BaseModelQuerySet
from apps.rbac.catalog import (
    Action,
    AuditActionKind,
    AuditTargetType,
    Module,
    SYSTEM_ROLE_SLUGS,
)
from apps.rbac.exceptions import ImmutableAuditLogError

logger = logging.getLogger(__name__)


class UserManager(BaseModelManager):
    """
    Manager for User queries.

    Compatible with Django's authentication system.
    """

    def active(self):
        return self.filter(is_active=True)

    def by_email(self, email):
        return self.filter(email__iexact=email).first()

    def create_user(self, email, password=None, **extra_fields):
        """Create a new user with hashed password."""
        if not email:
            raise ValueError('Email address is required')

        email = self.normalize_email(email)
        extra_fields.setdefault('is_active', True)
        extra_fields.setdefault('is_superuser', False)

        user = self.model(email=email, **extra_fields)
        if password:
            user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields['is_superuser'] = True
        return self.create_user(email, password, **extra_fields)

    @staticmethod
    def normalize_email(email):
        """Lowercase the whole address; invitations match on it."""
        return (email or '').strip().lower()

    def get_by_natural_key(self, email):
        return self.get(**{self.model.USERNAME_FIELD: email})


class User(BaseModel):
    """
    Global user identity - can belong to multiple tenants.

    Authentication happens at the User level, authorization at the
    Membership level. ``active_tenant`` remembers which tenant the user
    last chose to operate in.

    This is the AUTH_USER_MODEL for the entire application.
    """

    email = models.EmailField(
        unique=True,
        db_index=True,
        help_text="User email address (unique globally)"
    )
    password_hash = models.CharField(
        max_length=255,
        db_column='password_hash',
        help_text="Hashed password"
    )
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)

    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether user account is active"
    )
    is_superuser = models.BooleanField(
        default=False,
        help_text="Platform administrator"
    )
    last_login_at = models.DateTimeField(null=True, blank=True)

    active_tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        help_text="Tenant the user is currently operating in"
    )

    USERNAME_FIELD = 'email'
    EMAIL_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['is_active', 'created_at']),
        ]

    def __str__(self):
        return self.email

    @property
    def password(self):
        return self.password_hash

    @password.setter
    def password(self, value):
        self.password_hash = value

    def check_password(self, raw_password):
        return check_password(raw_password, self.password_hash)

    def set_password(self, raw_password):
        self.password_hash = make_password(raw_password)

    def get_full_name(self):
        """Return full name or email if name not set."""
        if self.first_name or self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.email

    def get_username(self):
        return self.email

    def update_last_login(self):
        self.last_login_at = timezone.now()
        self.save(update_fields=['last_login_at', 'updated_at'])

    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    @property
    def is_staff(self):
        return self.is_superuser

    def natural_key(self):
        return (self.email,)


class RoleQuerySet(BaseModelQuerySet):

    def system(self):
        return self.filter(is_system=True)

    def custom(self):
        return self.filter(is_system=False)


class RoleManager(BaseModelManager.from_queryset(RoleQuerySet)):
    """Manager for Role queries."""

    def by_slug(self, tenant, slug):
        return self.for_tenant(tenant).filter(slug=slug).first()

    def default_for_tenant(self, tenant):
        """The role new members get when an invitation names none."""
        return self.for_tenant(tenant).filter(is_default=True).first()


class Role(BaseModel):
    """
    Per-tenant bundle of module/action grants.

    System roles are seeded for every tenant. Those whose slug is in
    SYSTEM_ROLE_SLUGS grant everything regardless of their stored grants.
    """

    tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.CASCADE,
        related_name='roles',
        db_index=True,
        help_text="Tenant this role belongs to"
    )
    name = models.CharField(max_length=100)
    slug = models.SlugField(max_length=100)
    description = models.TextField(blank=True)
    color = models.CharField(
        max_length=20,
        blank=True,
        help_text="Display color (hex)"
    )
    is_system = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Seeded role; cannot be renamed or deleted"
    )
    is_default = models.BooleanField(
        default=False,
        help_text="Role assigned when an invitation names none"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        unique_together = [('tenant', 'name'), ('tenant', 'slug')]
        ordering = ['-is_system', 'name']
        indexes = [
            models.Index(fields=['tenant', 'is_system']),
        ]

    def __str__(self):
        return f"{self.name} ({self.slug})"

    @property
    def is_bypass(self):
        """Whether members holding this role skip grant evaluation."""
        return self.slug in SYSTEM_ROLE_SLUGS

    def grant_keys(self):
        """Set of (Module, Action) pairs stored on this role."""
        return {
            (Module(module), Action(action))
            for module, action in self.grants.values_list('module', 'action')
        }


class RolePermissionManager(BaseModelManager):
    """Manager for RolePermission queries."""

    def for_role(self, role):
        return self.filter(role=role)

    def grant_permission(self, role, module, action):
        """Grant module/action to role (idempotent)."""
        return self.get_or_create(role=role, module=module, action=action)

    def revoke_permission(self, role, module, action):
        """Remove the grant row; returns the number of rows removed."""
        deleted, _ = self.filter(role=role, module=module, action=action).hard_delete()
        return deleted


class RolePermission(BaseModel):
    """One granted (module, action) pair of a role."""

    role = models.ForeignKey(
        Role,
        on_delete=models.CASCADE,
        related_name='grants',
        db_index=True
    )
    module = models.CharField(max_length=64, choices=Module.choices)
    action = models.CharField(max_length=16, choices=Action.choices)

    objects = RolePermissionManager()

    class Meta:
        db_table = 'role_permissions'
        unique_together = [('role', 'module', 'action')]
        ordering = ['module', 'action']

    def __str__(self):
        return f"{self.role.slug} -> {self.module}:{self.action}"


class MembershipQuerySet(BaseModelQuerySet):

    def active(self):
        return self.filter(is_active=True)

    def for_user(self, user):
        user_id = getattr(user, 'pk', user)
        return self.filter(user_id=user_id)


class MembershipManager(BaseModelManager.from_queryset(MembershipQuerySet)):
    """Manager for Membership queries."""

    def get_membership(self, tenant, user, include_inactive=False):
        """
        Get the membership binding ``user`` to ``tenant``.

        Inactive memberships are only returned when asked for; callers that
        decide access must treat them as absent.
        """
        qs = self.for_tenant(tenant).for_user(user).select_related('role', 'tenant', 'user')
        if not include_inactive:
            qs = qs.filter(is_active=True)
        return qs.first()


class Membership(BaseModel):
    """
    Binding of a user to a tenant.

    ``is_owner`` is independent of ``role`` and is the strongest bypass.
    ``role`` may be empty: a member with no role only has its overrides.
    """

    tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.CASCADE,
        related_name='memberships',
        db_index=True
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='memberships',
        db_index=True
    )
    role = models.ForeignKey(
        Role,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='memberships'
    )
    is_owner = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True, db_index=True)

    invited_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )
    joined_at = models.DateTimeField(default=timezone.now)
    deactivated_at = models.DateTimeField(null=True, blank=True)
    last_seen_at = models.DateTimeField(null=True, blank=True)

    objects = MembershipManager()

    class Meta:
        db_table = 'memberships'
        unique_together = [('tenant', 'user')]
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant', 'user', 'is_active']),
            models.Index(fields=['user', 'is_active']),
        ]

    def __str__(self):
        return f"{self.user.email} @ {self.tenant.name}"

    @property
    def has_bypass(self):
        """Owner flag or a system role slug grants everything."""
        return self.is_owner or (self.role is not None and self.role.is_bypass)

    def update_last_seen(self):
        self.last_seen_at = timezone.now()
        self.save(update_fields=['last_seen_at'])


class PermissionOverrideManager(BaseModelManager):
    """Manager for PermissionOverride queries."""

    def for_membership(self, membership):
        return self.filter(membership=membership)

    def set_override(self, membership, module, action, granted, reason='', granted_by=None):
        """
        Create or replace the override for (membership, module, action).

        Returns (override, previous_granted) where previous_granted is None
        when no override existed before.
        """
        existing = self.select_for_update().filter(
            membership=membership, module=module, action=action
        ).first()
        previous = existing.granted if existing else None

        override, _ = self.update_or_create(
            membership=membership,
            module=module,
            action=action,
            defaults={
                'granted': granted,
                'reason': reason,
                'granted_by': granted_by,
            }
        )
        return override, previous

    def clear_override(self, membership, module, action):
        """
        Remove the override so the role default applies again.

        Returns the removed override's granted value, or None if there was
        nothing to clear.
        """
        existing = self.select_for_update().filter(
            membership=membership, module=module, action=action
        ).first()
        if existing is None:
            return None
        previous = existing.granted
        existing.hard_delete()
        return previous


class PermissionOverride(BaseModel):
    """
    Per-membership exception for one (module, action) pair.

    At most one row per (membership, module, action); a later write
    replaces the earlier one.
    """

    membership = models.ForeignKey(
        Membership,
        on_delete=models.CASCADE,
        related_name='overrides',
        db_index=True
    )
    module = models.CharField(max_length=64, choices=Module.choices)
    action = models.CharField(max_length=16, choices=Action.choices)
    granted = models.BooleanField(help_text="True = grant, False = revoke")
    reason = models.TextField(blank=True)
    granted_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+'
    )

    objects = PermissionOverrideManager()

    class Meta:
        db_table = 'permission_overrides'
        unique_together = [('membership', 'module', 'action')]
        ordering = ['module', 'action']

    def __str__(self):
        verb = "GRANT" if self.granted else "REVOKE"
        return f"{verb} {self.module}:{self.action} for membership {self.membership_id}"


def default_invitation_expiry():
    days = getattr(settings, 'INVITATION_EXPIRY_DAYS', 7)
    return timezone.now() + timedelta(days=days)


def generate_invitation_token():
    return secrets.token_urlsafe(32)


class InvitationQuerySet(BaseModelQuerySet):

    def pending(self):
        return self.filter(status=Invitation.STATUS_PENDING)

    def overdue(self, now=None):
        return self.pending().filter(expires_at__lte=now or timezone.now())


class Invitation(BaseModel):
    """
    Pending access to a tenant for an email address.

    Accepting creates (or reactivates) the membership with ``role``.
    """

    STATUS_PENDING = 'pending'
    STATUS_ACCEPTED = 'accepted'
    STATUS_EXPIRED = 'expired'
    STATUS_CANCELLED = 'cancelled'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_ACCEPTED, 'Accepted'),
        (STATUS_EXPIRED, 'Expired'),
        (STATUS_CANCELLED, 'Cancelled'),
    ]

    tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.CASCADE,
        related_name='invitations'
    )
    email = models.EmailField(db_index=True)
    role = models.ForeignKey(
        Role,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='invitations'
    )
    token = models.CharField(
        max_length=64,
        unique=True,
        default=generate_invitation_token
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        db_index=True
    )
    invited_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='invitations_sent'
    )
    expires_at = models.DateTimeField(default=default_invitation_expiry)
    accepted_at = models.DateTimeField(null=True, blank=True)

    objects = BaseModelManager.from_queryset(InvitationQuerySet)()

    class Meta:
        db_table = 'invitations'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant', 'email', 'status']),
        ]

    def __str__(self):
        return f"Invitation {self.email} -> {self.tenant_id} ({self.status})"

    def is_expired(self, now=None):
        return self.expires_at <= (now or timezone.now())


class AuditLogQuerySet(BaseModelQuerySet):
    """QuerySet that refuses bulk modification of audit entries."""

    def update(self, **kwargs):
        raise ImmutableAuditLogError("Audit log entries cannot be updated")

    def delete(self):
        raise ImmutableAuditLogError("Audit log entries cannot be deleted")

    def hard_delete(self):
        raise ImmutableAuditLogError("Audit log entries cannot be deleted")

    def by_action(self, action):
        return self.filter(action=action)

    def by_target(self, target_type, target_id=None):
        qs = self.filter(target_type=target_type)
        if target_id:
            qs = qs.filter(target_id=target_id)
        return qs


class AuditLogManager(models.Manager.from_queryset(AuditLogQuerySet)):
    """Audit entries are never soft deleted, so no deleted_at filter."""


class AuditLog(BaseModel):
    """
    Append-only record of one authorization-relevant mutation.

    Rows are written by AuditLogger inside the mutation's transaction and
    can never be changed or removed afterwards; corrections are new rows.
    """

    tenant = models.ForeignKey(
        'tenants.Tenant',
        on_delete=models.PROTECT,
        related_name='audit_logs',
        db_index=True
    )
    performed_by = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='audit_logs',
        help_text="User who performed the action (null for system actions)"
    )
    action = models.CharField(
        max_length=50,
        choices=AuditActionKind.choices,
        db_index=True
    )
    target_type = models.CharField(
        max_length=20,
        choices=AuditTargetType.choices,
        db_index=True
    )
    target_id = models.UUIDField(null=True, blank=True, db_index=True)
    target_name = models.CharField(max_length=255, blank=True)
    module = models.CharField(
        max_length=64,
        choices=Module.choices,
        blank=True,
        help_text="Module affected, for permission changes"
    )
    old_value = models.JSONField(null=True, blank=True)
    new_value = models.JSONField(null=True, blank=True)
    details = models.JSONField(default=dict, blank=True)

    # Request context
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)
    request_id = models.CharField(max_length=64, blank=True, db_index=True)

    objects = AuditLogManager()
    objects_with_deleted = AuditLogManager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['tenant', 'created_at']),
            models.Index(fields=['tenant', 'action']),
            models.Index(fields=['tenant', 'target_type', 'target_id']),
        ]

    def __str__(self):
        return f"{self.action} on {self.target_type}:{self.target_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableAuditLogError("Audit log entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, using=None, keep_parents=False):
        raise ImmutableAuditLogError("Audit log entries cannot be deleted")

    def hard_delete(self, using=None, keep_parents=False):
        raise ImmutableAuditLogError("Audit log entries cannot be deleted")

    def restore(self):
        raise ImmutableAuditLogError("Audit log entries cannot be modified")
