"""
Tests for the RBAC management commands.
"""
from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError
from django.utils import timezone

from apps.rbac.models import Invitation, Membership, Role
from apps.rbac.services import InvitationService


def run(*args, **options):
    out = StringIO()
    call_command(*args, stdout=out, **options)
    return out.getvalue()


@pytest.mark.django_db
class TestSeedTenantRoles:

    def test_backfills_missing_role(self, tenant):
        Role.objects.by_slug(tenant, 'developer').hard_delete()

        output = run('seed_tenant_roles', tenant=tenant.slug)

        assert 'created developer' in output
        assert Role.objects.by_slug(tenant, 'developer').is_system

    def test_up_to_date(self, tenant, other_tenant):
        output = run('seed_tenant_roles', all=True)
        assert '0 roles created across 2 tenant(s)' in output

    def test_requires_target(self, db):
        with pytest.raises(CommandError):
            run('seed_tenant_roles')

    def test_unknown_tenant(self, db):
        with pytest.raises(CommandError):
            run('seed_tenant_roles', tenant='nowhere')


@pytest.mark.django_db
class TestExpireInvitations:

    def test_expires_overdue(self, tenant, owner):
        invitation = InvitationService.invite(tenant, 'late@example.com', performed_by=owner)
        Invitation.objects.filter(pk=invitation.pk).update(expires_at=timezone.now() - timedelta(hours=1))

        output = run('expire_invitations')

        assert 'Expired 1 invitation(s)' in output
        invitation.refresh_from_db()
        assert invitation.status == Invitation.STATUS_EXPIRED


@pytest.mark.django_db
class TestCreateOwner:

    def test_creates_user_and_owner_membership(self, tenant):
        run('create_owner', tenant=str(tenant.id), email='boss@example.com',
            create_user=True, password='Sup3r-Secret-Pass')

        membership = Membership.objects.get(tenant=tenant, user__email='boss@example.com')
        assert membership.is_owner

    def test_unknown_user_without_create(self, tenant):
        with pytest.raises(CommandError):
            run('create_owner', tenant=tenant.slug, email='nobody@example.com')

    def test_create_user_requires_password(self, tenant):
        with pytest.raises(CommandError):
            run('create_owner', tenant=tenant.slug, email='boss@example.com', create_user=True)
