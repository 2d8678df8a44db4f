"""
RBAC signals.

- Seeds the system roles when a new tenant is created
- Drops cached permission sets when a user account is deactivated
"""
from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import receiver


@receiver(post_save, sender='tenants.Tenant')
def seed_roles_on_tenant_creation(sender, instance, created, **kwargs):
    """Seed owner/developer/admin roles for a new tenant."""
    if not created or kwargs.get('raw'):
        return

    # Import here to avoid circular imports
    from apps.rbac.services import RoleService

    RoleService.seed_system_roles(instance)


@receiver(post_save, sender='rbac.User')
def invalidate_permissions_on_user_deactivation(sender, instance, created, **kwargs):
    """A deactivated account must stop resolving from cached snapshots in every tenant."""
    if created or kwargs.get('raw') or instance.is_active:
        return

    from apps.rbac.gate import PermissionCache

    transaction.on_commit(lambda: PermissionCache().invalidate_user(instance))
