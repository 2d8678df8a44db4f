"""
Pytest configuration and fixtures.
"""
import pytest
from django.core.cache import cache
from django.core.management import call_command


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database for apps without migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture(autouse=True)
def clear_cache():
    """Permission snapshots and rate limit counters must not leak between tests."""
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def make_user(db):
    """Factory for users with a known password."""
    from apps.rbac.models import User

    def _make_user(email, password='Sup3r-Secret-Pass', **extra):
        return User.objects.create_user(email=email, password=password, **extra)

    return _make_user


@pytest.fixture
def tenant(db):
    """Create a test tenant (system roles are seeded by signal)."""
    from apps.tenants.models import Tenant
    return Tenant.objects.create(
        name='Test Company',
        slug='test-company',
        status='active'
    )


@pytest.fixture
def other_tenant(db):
    """Create another test tenant for isolation tests."""
    from apps.tenants.models import Tenant
    return Tenant.objects.create(
        name='Other Company',
        slug='other-company',
        status='active'
    )


@pytest.fixture
def owner(make_user, tenant):
    """Owner of ``tenant``."""
    from apps.tenants.services import TenantService

    user = make_user('owner@example.com', first_name='Olivia', last_name='Owner')
    TenantService.ensure_owner(tenant, user)
    return user


@pytest.fixture
def owner_membership(owner, tenant):
    from apps.rbac.models import Membership
    return Membership.objects.get_membership(tenant, owner)


@pytest.fixture
def make_role(tenant):
    """Factory for custom roles created through RoleService."""
    from apps.rbac.services import RoleService

    def _make_role(name, permissions=(), role_tenant=None, **extra):
        return RoleService.create_role(role_tenant or tenant, name, permissions=permissions, **extra)

    return _make_role


@pytest.fixture
def make_member(tenant):
    """Factory for memberships."""
    from apps.rbac.models import Membership

    def _make_member(user, role=None, member_tenant=None, **extra):
        return Membership.objects.create(
            tenant=member_tenant or tenant,
            user=user,
            role=role,
            **extra
        )

    return _make_member


@pytest.fixture
def user(make_user):
    """A plain user with no membership."""
    return make_user('user@example.com', first_name='Uma', last_name='User')


@pytest.fixture
def viewer_role(make_role):
    """Custom role that can only view employees and leads."""
    return make_role('Viewer', permissions=[
        ('employees', 'view'),
        ('commercial.leads', 'view'),
    ])


@pytest.fixture
def member(make_user, make_member, viewer_role):
    """Active member of ``tenant`` holding the Viewer role."""
    user = make_user('member@example.com')
    make_member(user, role=viewer_role)
    return user


@pytest.fixture
def member_membership(member, tenant):
    from apps.rbac.models import Membership
    return Membership.objects.get_membership(tenant, member)


@pytest.fixture
def auth_client(api_client):
    """
    Factory returning an API client authenticated as ``user``.

    ``tenant`` is sent as X-TENANT-ID when given.
    """
    from apps.rbac.services import AuthService

    def _auth_client(user, tenant=None):
        headers = {'HTTP_AUTHORIZATION': f'Bearer {AuthService.generate_jwt(user)}'}
        if tenant is not None:
            headers['HTTP_X_TENANT_ID'] = str(tenant.id)
        api_client.credentials(**headers)
        return api_client

    return _auth_client
