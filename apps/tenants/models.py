"""
Tenant models for multi-tenant isolation.

A tenant is one company. Every role, membership, invitation and audit
entry is scoped to exactly one tenant.
"""
import uuid

from django.db import models

from apps.core.models import BaseModel, BaseModelManager


class TenantManager(BaseModelManager):
    """Manager for tenant queries."""

    def active(self):
        """Return only active tenants."""
        return self.filter(status__in=[Tenant.STATUS_ACTIVE, Tenant.STATUS_TRIAL])

    def by_slug_or_id(self, value):
        """Find a tenant by slug, falling back to its UUID."""
        tenant = self.filter(slug=value).first()
        if tenant is not None:
            return tenant
        try:
            return self.filter(id=uuid.UUID(str(value))).first()
        except ValueError:
            return None


class Tenant(BaseModel):
    """
    Tenant model representing an isolated company account.

    Users reach a tenant only through a Membership (see apps.rbac.models).
    """

    STATUS_ACTIVE = 'active'
    STATUS_TRIAL = 'trial'
    STATUS_SUSPENDED = 'suspended'
    STATUS_CANCELED = 'canceled'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_TRIAL, 'Free Trial'),
        (STATUS_SUSPENDED, 'Suspended'),
        (STATUS_CANCELED, 'Canceled'),
    ]

    name = models.CharField(
        max_length=255,
        help_text="Company name"
    )
    slug = models.SlugField(
        unique=True,
        max_length=100,
        help_text="URL-friendly identifier"
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_ACTIVE,
        db_index=True,
        help_text="Current tenant status"
    )
    contact_email = models.EmailField(blank=True)
    timezone = models.CharField(max_length=50, default='UTC')

    objects = TenantManager()

    class Meta:
        db_table = 'tenants'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at']),
        ]

    def __str__(self):
        return f"{self.name} ({self.slug})"

    def is_active(self):
        """Suspended and canceled tenants are unreachable for everyone."""
        return self.status in (self.STATUS_ACTIVE, self.STATUS_TRIAL)
