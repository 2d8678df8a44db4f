"""
RBAC API URLs.

Provides endpoints for:
- Authentication (login)
- Current user permissions and the permission catalog
- Role management (CRUD, role grants)
- Membership management (role assignment, activation, overrides)
- Invitations
- Audit log viewing
"""
from django.urls import path
from apps.rbac.views import (
    AuditLogListView,
    InvitationAcceptView,
    InvitationDetailView,
    InvitationListView,
    InvitationPreviewView,
    LoginView,
    MembershipDeactivateView,
    MembershipListView,
    MembershipOverrideView,
    MembershipReactivateView,
    MembershipRoleView,
    MyModulePermissionsView,
    MyPermissionsView,
    PermissionCatalogView,
    PermissionCheckView,
    RoleDetailView,
    RoleListView,
    RolePermissionView,
)

app_name = 'rbac'

urlpatterns = [
    # Authentication
    path('auth/login', LoginView.as_view(), name='login'),

    # Current user permissions
    path('me/permissions', MyPermissionsView.as_view(), name='my-permissions'),
    path('me/permissions/check', PermissionCheckView.as_view(), name='permission-check'),
    path('me/permissions/<str:module>', MyModulePermissionsView.as_view(), name='my-module-permissions'),
    path('permissions/catalog', PermissionCatalogView.as_view(), name='permission-catalog'),

    # Role endpoints
    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/<uuid:role_id>', RoleDetailView.as_view(), name='role-detail'),
    path('roles/<uuid:role_id>/permissions', RolePermissionView.as_view(), name='role-permissions'),

    # Membership endpoints
    path('memberships', MembershipListView.as_view(), name='membership-list'),
    path('memberships/<uuid:membership_id>/role', MembershipRoleView.as_view(), name='membership-role'),
    path('memberships/<uuid:membership_id>/deactivate', MembershipDeactivateView.as_view(), name='membership-deactivate'),
    path('memberships/<uuid:membership_id>/reactivate', MembershipReactivateView.as_view(), name='membership-reactivate'),
    path('memberships/<uuid:membership_id>/overrides', MembershipOverrideView.as_view(), name='membership-overrides'),

    # Invitation endpoints
    path('invitations', InvitationListView.as_view(), name='invitation-list'),
    path('invitations/accept', InvitationAcceptView.as_view(), name='invitation-accept'),
    path('invitations/by-token/<str:token>', InvitationPreviewView.as_view(), name='invitation-preview'),
    path('invitations/<uuid:invitation_id>', InvitationDetailView.as_view(), name='invitation-detail'),

    # Audit log endpoint
    path('audit-logs', AuditLogListView.as_view(), name='audit-log-list'),
]
