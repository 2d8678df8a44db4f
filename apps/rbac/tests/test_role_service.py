"""
Tests for RoleService.
"""
import pytest

from apps.core.exceptions import PermissionDeniedError, ValidationError
from apps.rbac.catalog import AuditActionKind, Module, all_permission_keys
from apps.rbac.exceptions import RoleConflict, SystemRoleProtected
from apps.rbac.models import AuditLog, Membership, Role
from apps.rbac.services import RoleService


def entries(tenant, action):
    return AuditLog.objects.filter(tenant=tenant, action=action)


@pytest.mark.django_db
class TestSystemRoleSeeding:

    def test_new_tenant_gets_system_roles(self, tenant):
        slugs = set(Role.objects.for_tenant(tenant).system().values_list('slug', flat=True))
        assert slugs == {'owner', 'developer', 'admin'}

    def test_seeded_roles_grant_full_catalog(self, tenant):
        admin = Role.objects.by_slug(tenant, 'admin')
        assert admin.grant_keys() == set(all_permission_keys())

    def test_admin_is_default_role(self, tenant):
        assert Role.objects.default_for_tenant(tenant).slug == 'admin'

    def test_seeding_is_idempotent(self, tenant):
        count = AuditLog.objects.filter(tenant=tenant).count()
        assert RoleService.seed_system_roles(tenant) == []
        assert Role.objects.for_tenant(tenant).count() == 3
        assert AuditLog.objects.filter(tenant=tenant).count() == count


@pytest.mark.django_db
class TestCreateRole:

    def test_create_role_with_grants(self, tenant, owner):
        role = RoleService.create_role(
            tenant, 'Sales Rep', performed_by=owner,
            permissions=[('commercial.leads', 'view'), ('commercial.leads', 'create')]
        )
        assert role.slug == 'sales-rep'
        assert not role.is_system
        assert {(m.value, a.value) for m, a in role.grant_keys()} == {
            ('commercial.leads', 'view'), ('commercial.leads', 'create'),
        }

        entry = entries(tenant, AuditActionKind.ROLE_CREATED).get(target_id=role.id)
        assert entry.performed_by == owner
        assert entry.new_value['permissions'] == ['commercial.leads:create', 'commercial.leads:view']

    def test_duplicate_name_conflicts(self, tenant, viewer_role):
        with pytest.raises(RoleConflict):
            RoleService.create_role(tenant, 'viewer')

    def test_same_name_allowed_in_other_tenant(self, tenant, other_tenant, viewer_role):
        role = RoleService.create_role(other_tenant, 'Viewer')
        assert role.tenant == other_tenant

    @pytest.mark.parametrize('name', ['Owner', 'developer', 'Admin', '   '])
    def test_reserved_or_empty_names_rejected(self, tenant, name):
        with pytest.raises(ValidationError):
            RoleService.create_role(tenant, name)

    def test_non_owner_cannot_create_roles(self, tenant, member):
        with pytest.raises(PermissionDeniedError):
            RoleService.create_role(tenant, 'Sneaky', performed_by=member)

    def test_new_default_role_replaces_previous_default(self, tenant):
        role = RoleService.create_role(tenant, 'Newcomer', is_default=True)
        assert Role.objects.default_for_tenant(tenant) == role
        assert Role.objects.for_tenant(tenant).filter(is_default=True).count() == 1

    def test_punctuation_only_names_rejected(self, tenant):
        with pytest.raises(ValidationError):
            RoleService.create_role(tenant, '&/!')

    def test_names_differing_in_punctuation_do_not_conflict(self, tenant, owner):
        first = RoleService.create_role(tenant, 'Ops/Sales', performed_by=owner)
        second = RoleService.create_role(tenant, 'OpsSales', performed_by=owner)
        assert (first.slug, second.slug) == ('ops-sales', 'opssales')


class TestSlugifyRoleName:

    @pytest.mark.parametrize('name,expected', [
        ('Sales Rep', 'sales-rep'),
        ('R&D', 'r-d'),
        ('Ops/Sales', 'ops-sales'),
        ('field_crew', 'field-crew'),
        ('  Gerente   General  ', 'gerente-general'),
        ('Técnico Ñandú', 'tecnico-nandu'),
        ('--QA--', 'qa'),
        ('Tier 2 Support', 'tier-2-support'),
    ])
    def test_slug(self, name, expected):
        assert RoleService.slugify_role_name(name) == expected

    def test_empty(self):
        assert RoleService.slugify_role_name('') == ''
        assert RoleService.slugify_role_name(None) == ''


@pytest.mark.django_db
class TestUpdateRole:

    def test_rename_and_replace_grants(self, tenant, owner, viewer_role):
        role = RoleService.update_role(
            viewer_role, performed_by=owner, name='Reader',
            permissions=[('documents', 'view')]
        )
        assert role.name == 'Reader'
        assert role.slug == 'reader'
        assert role.grant_keys() == {(Module.DOCUMENTS, 'view')}

        entry = entries(tenant, AuditActionKind.ROLE_UPDATED).get(target_id=role.id)
        assert entry.old_value['name'] == 'Viewer'
        assert entry.new_value['name'] == 'Reader'
        assert entry.new_value['permissions'] == ['documents:view']

    def test_noop_update_writes_no_entry(self, tenant, owner, viewer_role):
        RoleService.update_role(viewer_role, performed_by=owner, name='Viewer')
        assert not entries(tenant, AuditActionKind.ROLE_UPDATED).exists()

    def test_system_role_cannot_be_renamed(self, tenant, owner):
        admin = Role.objects.by_slug(tenant, 'admin')
        with pytest.raises(SystemRoleProtected):
            RoleService.update_role(admin, performed_by=owner, name='Boss')

    def test_system_role_grants_can_be_tuned(self, tenant, owner):
        admin = Role.objects.by_slug(tenant, 'admin')
        RoleService.update_role(admin, performed_by=owner, permissions=[('dashboard', 'view')])
        assert admin.grant_keys() == {(Module.DASHBOARD, 'view')}

    def test_bypass_role_cannot_be_default(self, tenant, owner):
        developer = Role.objects.by_slug(tenant, 'developer')
        with pytest.raises(ValidationError):
            RoleService.update_role(developer, performed_by=owner, is_default=True)

    def test_rename_to_existing_name_conflicts(self, tenant, owner, viewer_role, make_role):
        make_role('Sales')
        with pytest.raises(RoleConflict):
            RoleService.update_role(viewer_role, performed_by=owner, name='Sales')


@pytest.mark.django_db
class TestDeleteRole:

    def test_delete_leaves_members_without_role(self, tenant, owner, viewer_role, member_membership):
        affected = RoleService.delete_role(viewer_role, performed_by=owner)

        assert affected == 1
        assert not Role.objects_with_deleted.filter(pk=viewer_role.pk).exists()
        member_membership.refresh_from_db()
        assert member_membership.role is None

        entry = entries(tenant, AuditActionKind.ROLE_DELETED).get()
        assert entry.target_id == viewer_role.id
        assert entry.details == {'affected_memberships': 1}

    def test_system_role_cannot_be_deleted(self, tenant, owner):
        with pytest.raises(SystemRoleProtected):
            RoleService.delete_role(Role.objects.by_slug(tenant, 'owner'), performed_by=owner)
        assert Role.objects.by_slug(tenant, 'owner') is not None

    def test_members_keep_overrides_after_delete(self, tenant, owner, viewer_role, member_membership):
        from apps.rbac.gate import AccessGate
        from apps.rbac.services import OverrideService

        OverrideService.grant(member_membership, 'documents', 'view', performed_by=owner)
        RoleService.delete_role(viewer_role, performed_by=owner)

        gate = AccessGate(member_membership.user, tenant=tenant)
        assert gate.check_permission('documents', 'view')
        assert not gate.check_permission('employees', 'view')
        assert Membership.objects.get(pk=member_membership.pk).is_active


@pytest.mark.django_db
class TestRoleGrants:

    def test_grant_writes_one_entry_per_call(self, tenant, owner, viewer_role):
        RoleService.grant_role_permission(viewer_role, 'documents', 'view', performed_by=owner)
        RoleService.grant_role_permission(viewer_role, 'documents', 'view', performed_by=owner)

        granted = entries(tenant, AuditActionKind.ROLE_PERMISSION_GRANTED)
        assert sorted(e.details['changed'] for e in granted) == [False, True]
        assert {e.module for e in granted} == {'documents'}
        assert (Module.DOCUMENTS, 'view') in viewer_role.grant_keys()

    def test_revoke_removes_grant(self, tenant, owner, viewer_role):
        assert RoleService.revoke_role_permission(viewer_role, 'employees', 'view', performed_by=owner)
        assert (Module.EMPLOYEES, 'view') not in viewer_role.grant_keys()

        entry = entries(tenant, AuditActionKind.ROLE_PERMISSION_REVOKED).get()
        assert entry.old_value == {'action': 'view', 'granted': True}
        assert entry.new_value == {'action': 'view', 'granted': False}

    def test_revoke_missing_grant_reports_false(self, owner, viewer_role):
        assert not RoleService.revoke_role_permission(viewer_role, 'documents', 'delete', performed_by=owner)


@pytest.mark.django_db
class TestRoleCacheInvalidation:

    def warm(self, user, tenant):
        from apps.rbac.gate import AccessGate, PermissionCache

        AccessGate(user, tenant=tenant).can('employees', 'view')
        assert PermissionCache().get(user, tenant) is not None

    def test_grant_drops_members_cached_sets_on_commit(self, tenant, owner, member, viewer_role,
                                                      django_capture_on_commit_callbacks):
        from apps.rbac.gate import AccessGate, PermissionCache

        self.warm(member, tenant)
        with django_capture_on_commit_callbacks(execute=True):
            RoleService.grant_role_permission(viewer_role, 'documents', 'view', performed_by=owner)

        assert PermissionCache().get(member, tenant) is None
        assert AccessGate(member, tenant=tenant).can('documents', 'view')

    def test_cache_kept_until_commit(self, tenant, owner, member, viewer_role,
                                     django_capture_on_commit_callbacks):
        from apps.rbac.gate import PermissionCache

        self.warm(member, tenant)
        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            RoleService.revoke_role_permission(viewer_role, 'employees', 'view', performed_by=owner)

        assert len(callbacks) == 1
        assert PermissionCache().get(member, tenant) is not None

    def test_delete_drops_cached_sets(self, tenant, owner, member, viewer_role,
                                      django_capture_on_commit_callbacks):
        from apps.rbac.gate import PermissionCache

        self.warm(member, tenant)
        with django_capture_on_commit_callbacks(execute=True):
            RoleService.delete_role(viewer_role, performed_by=owner)

        assert PermissionCache().get(member, tenant) is None
