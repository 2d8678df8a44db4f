"""
Tests for permission resolution.

The pure ``evaluate`` algorithm is exercised with hypothesis; the
database-backed ``resolve`` with real memberships, roles and overrides.
"""
import pytest
from hypothesis import given, settings, strategies as st

from apps.rbac.catalog import Action, Module, UnknownPermissionError, all_permission_keys
from apps.rbac.models import Membership, PermissionOverride, User
from apps.rbac.resolver import EffectivePermissionSet, PermissionResolver

ALL_KEYS = list(all_permission_keys())

keys = st.sampled_from(ALL_KEYS)
grant_sets = st.sets(keys, max_size=20)
override_maps = st.dictionaries(keys, st.booleans(), max_size=10)
custom_slugs = st.sampled_from([None, 'viewer', 'sales', 'admin'])


class TestEvaluateLaws:

    @given(is_owner=st.booleans(), slug=custom_slugs, grants=grant_sets, overrides=override_maps)
    @settings(max_examples=50)
    def test_inactive_membership_denies_everything(self, is_owner, slug, grants, overrides):
        result = PermissionResolver.evaluate(False, is_owner, slug, grants, overrides)
        assert result == EffectivePermissionSet.all_denied()

    @given(slug=custom_slugs, grants=grant_sets, overrides=override_maps)
    @settings(max_examples=50)
    def test_owner_is_allowed_everything_regardless_of_overrides(self, slug, grants, overrides):
        result = PermissionResolver.evaluate(True, True, slug, grants, overrides)
        assert result == EffectivePermissionSet.all_allowed()

    @given(slug=st.sampled_from(['owner', 'developer']), grants=grant_sets, overrides=override_maps)
    @settings(max_examples=50)
    def test_system_role_is_allowed_everything(self, slug, grants, overrides):
        result = PermissionResolver.evaluate(True, False, slug, grants, overrides)
        assert result == EffectivePermissionSet.all_allowed()

    @given(slug=custom_slugs, grants=grant_sets, overrides=override_maps)
    @settings(max_examples=100)
    def test_override_beats_role_and_role_beats_default(self, slug, grants, overrides):
        result = PermissionResolver.evaluate(True, False, slug, grants, overrides)
        for key in ALL_KEYS:
            expected = overrides[key] if key in overrides else key in grants
            assert result.allows(*key) is expected

    @given(grants=grant_sets)
    @settings(max_examples=30)
    def test_no_role_means_overrides_only(self, grants):
        overrides = {key: True for key in grants}
        result = PermissionResolver.evaluate(True, False, None, (), overrides)
        assert result.granted_keys() == frozenset(grants)

    def test_unknown_override_key_raises(self):
        with pytest.raises(UnknownPermissionError):
            PermissionResolver.evaluate(True, False, 'viewer', (), {('payroll', 'view'): True})


class TestEffectivePermissionSet:

    def test_as_dict_covers_full_catalog(self):
        data = EffectivePermissionSet([('employees', 'view')]).as_dict()
        assert set(data) == {m.value for m in Module}
        assert data['employees'] == {'view': True, 'create': False, 'update': False, 'delete': False}

    def test_from_dict_restores_equal_set(self):
        original = EffectivePermissionSet([('employees', 'view'), ('commercial.quotes', 'delete')])
        assert EffectivePermissionSet.from_dict(original.as_dict()) == original

    def test_module_permissions_flags(self):
        perms = EffectivePermissionSet([(Module.EQUIPMENT, Action.VIEW), (Module.EQUIPMENT, Action.UPDATE)])
        assert perms.module_permissions('equipment') == {
            'canView': True, 'canCreate': False, 'canUpdate': True, 'canDelete': False,
        }

    def test_allows_rejects_unknown_action(self):
        with pytest.raises(UnknownPermissionError):
            EffectivePermissionSet().allows('employees', 'approve')


@pytest.mark.django_db
class TestResolveFromDatabase:

    def test_no_membership_denies_everything(self, tenant, user):
        assert PermissionResolver.resolve(user, tenant) == EffectivePermissionSet.all_denied()

    def test_missing_tenant_denies_everything(self, user):
        assert PermissionResolver.resolve(user, None) == EffectivePermissionSet.all_denied()

    def test_role_grants_apply(self, tenant, member):
        perms = PermissionResolver.resolve(member, tenant)
        assert perms.allows('employees', 'view')
        assert perms.allows('commercial.leads', 'view')
        assert not perms.allows('employees', 'create')

    def test_override_revokes_role_grant(self, tenant, member_membership):
        PermissionOverride.objects.create(
            membership=member_membership, module='employees', action='view', granted=False
        )
        perms = PermissionResolver.resolve(member_membership.user, tenant)
        assert not perms.allows('employees', 'view')
        assert perms.allows('commercial.leads', 'view')

    def test_override_grants_outside_role(self, tenant, member_membership):
        PermissionOverride.objects.create(
            membership=member_membership, module='documents', action='create', granted=True
        )
        perms = PermissionResolver.resolve(member_membership.user, tenant)
        assert perms.allows('documents', 'create')

    def test_inactive_membership_denies(self, tenant, member_membership):
        Membership.objects.filter(pk=member_membership.pk).update(is_active=False)
        perms = PermissionResolver.resolve(member_membership.user, tenant)
        assert perms == EffectivePermissionSet.all_denied()

    def test_owner_is_allowed_everything(self, tenant, owner):
        assert PermissionResolver.resolve(owner, tenant) == EffectivePermissionSet.all_allowed()

    def test_deactivated_account_denies_even_for_owner(self, tenant, owner):
        User.objects.filter(pk=owner.pk).update(is_active=False)
        assert PermissionResolver.resolve(owner, tenant) == EffectivePermissionSet.all_denied()

    def test_membership_in_other_tenant_does_not_leak(self, tenant, other_tenant, member):
        assert PermissionResolver.resolve(member, other_tenant) == EffectivePermissionSet.all_denied()
