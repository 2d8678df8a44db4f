"""
RBAC REST API views.

Implements endpoints for:
- Authentication (login)
- Current user permissions (snapshot, per-module flags, guard check)
- Role management (CRUD, role-level grants)
- Membership management (role assignment, activation, overrides)
- Invitations
- Audit log viewing
"""
import json
import logging

from django.shortcuts import get_object_or_404
from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from django_ratelimit.exceptions import Ratelimited
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiParameter, extend_schema, extend_schema_view
from rest_framework import status
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import AuthenticationError, NotFoundError
from apps.core.logging import SecurityLogger
from apps.core.permissions import HasModulePermission, requires_permission
from apps.rbac.catalog import Action, Module, UnknownPermissionError, validate_module
from apps.rbac.exceptions import MembershipNotFound
from apps.rbac.models import AuditLog, Invitation, Membership, PermissionOverride, Role, User
from apps.rbac.serializers import (
    AuditLogFilterSerializer,
    AuditLogSerializer,
    InvitationAcceptSerializer,
    InvitationCreatedSerializer,
    InvitationCreateSerializer,
    InvitationFilterSerializer,
    InvitationPreviewSerializer,
    InvitationSerializer,
    LoginSerializer,
    MembershipFilterSerializer,
    MembershipRoleSerializer,
    MembershipSerializer,
    PermissionCheckSerializer,
    PermissionOverrideCreateSerializer,
    PermissionOverrideSerializer,
    RoleCreateSerializer,
    RolePermissionSerializer,
    RoleSerializer,
    RoleUpdateSerializer,
    UserSerializer,
    catalog_payload,
)
from apps.rbac.services import (
    AuthService,
    InvitationService,
    MembershipService,
    OverrideService,
    RoleService,
)

logger = logging.getLogger(__name__)


class StandardResultsSetPagination(PageNumberPagination):
    """Standard pagination for list endpoints."""
    page_size = 50
    page_size_query_param = 'page_size'
    max_page_size = 100


class AuditLogPagination(StandardResultsSetPagination):
    page_size = 20


def login_email_key(group, request):
    """Rate limit key for login attempts: the normalized email of the JSON body."""
    try:
        payload = json.loads(request.body or b"{}")
    except ValueError:
        return ''
    email = payload.get('email') if isinstance(payload, dict) else None
    return User.objects.normalize_email(email) if isinstance(email, str) else ''


# ===== AUTHENTICATION =====

@extend_schema_view(
    post=extend_schema(
        tags=['Authentication'],
        summary='Login',
        description='''
Authenticate with email and password and receive a JWT.

**No authentication required.**

**Rate limit**: 5 requests/minute per IP, 10 requests/hour per email
        ''',
        request=LoginSerializer,
        responses={200: OpenApiTypes.OBJECT, 401: OpenApiTypes.OBJECT, 429: OpenApiTypes.OBJECT},
    )
)
@method_decorator(ratelimit(key='ip', rate='5/m', method='POST', block=False), name='dispatch')
@method_decorator(ratelimit(key=login_email_key, rate='10/h', method='POST', block=False), name='dispatch')
class LoginView(APIView):
    """
    POST /v1/auth/login

    Authenticate user and return JWT token.
    """
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        if getattr(request, 'limited', False):
            raise Ratelimited()

        serializer = LoginSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = AuthService.login(
            email=serializer.validated_data['email'],
            password=serializer.validated_data['password'],
            request=request._request,
        )
        if not result:
            SecurityLogger.log_failed_login(
                email=serializer.validated_data['email'],
                ip_address=request.META.get('REMOTE_ADDR', 'unknown'),
                reason='Invalid credentials'
            )
            raise AuthenticationError('Invalid email or password')

        return Response({
            'user': UserSerializer(result['user']).data,
            'token': result['token'],
        })


# ===== CURRENT USER PERMISSIONS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Current user permission snapshot',
        description='''
Full effective permission set of the caller in the active company:
`memberId`, `isOwner`, `roleId`, `roleSlug`, `roleName` and
`permissions` (module -> action -> bool).

Returns `null` when the caller has no active company or membership.
        ''',
        responses={200: OpenApiTypes.OBJECT},
    )
)
class MyPermissionsView(APIView):
    """GET /v1/me/permissions"""

    def get(self, request):
        return Response(request.access_gate.get_current_user_permissions())


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Module capability flags',
        description='`canView`, `canCreate`, `canUpdate` and `canDelete` for one module.',
        responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    )
)
class MyModulePermissionsView(APIView):
    """GET /v1/me/permissions/<module>"""

    def get(self, request, module):
        try:
            module = validate_module(module)
        except UnknownPermissionError:
            raise NotFoundError(f"Unknown module '{module}'")
        return Response(request.access_gate.get_module_permissions(module))


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Check one permission',
        description='''
Guard check for one (module, action). Always resolved from the database.
With `redirect=true` a denial includes `redirectTo` (the given
`redirect_to` or the configured default).
        ''',
        request=PermissionCheckSerializer,
        responses={200: OpenApiTypes.OBJECT},
    )
)
class PermissionCheckView(APIView):
    """POST /v1/me/permissions/check"""

    def post(self, request):
        serializer = PermissionCheckSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = request.access_gate.check_permission(
            data['module'],
            data['action'],
            redirect=data['redirect'],
            redirect_to=data['redirect_to'] or None,
        )
        return Response(result.as_dict())


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Permissions'],
        summary='Permission catalog',
        description='Module groups and actions, for building permission matrices.',
        responses={200: OpenApiTypes.OBJECT},
    )
)
class PermissionCatalogView(APIView):
    """GET /v1/permissions/catalog"""

    def get(self, request):
        return Response(catalog_payload())


# ===== ROLES =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='List roles',
        description='**Required permission:** `company.general.roles:view`',
        responses={200: RoleSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Roles'],
        summary='Create role',
        description='''
Create a custom role. Restricted to company owners.

**Required permission:** `company.general.roles:create`
        ''',
        request=RoleCreateSerializer,
        responses={201: RoleSerializer},
    ),
)
@requires_permission(Module.COMPANY_ROLES, Action.VIEW, methods=['GET'])
@requires_permission(Module.COMPANY_ROLES, Action.CREATE, methods=['POST'])
class RoleListView(APIView):
    """GET/POST /v1/roles"""

    permission_classes = [HasModulePermission]

    def get(self, request):
        roles = Role.objects.for_tenant(request.tenant).prefetch_related('grants')
        return Response({
            'count': roles.count(),
            'results': RoleSerializer(roles, many=True).data,
        })

    def post(self, request):
        serializer = RoleCreateSerializer(data=request.data, context={'tenant': request.tenant})
        serializer.is_valid(raise_exception=True)

        role = RoleService.create_role(
            tenant=request.tenant,
            performed_by=request.user,
            request=request,
            **serializer.validated_data
        )
        return Response(RoleSerializer(role).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    get=extend_schema(tags=['RBAC - Roles'], summary='Get role', responses={200: RoleSerializer}),
    patch=extend_schema(
        tags=['RBAC - Roles'],
        summary='Update role',
        description='''
Update a role. `permissions`, when present, replaces the full grant set.
System roles cannot be renamed.

**Required permission:** `company.general.roles:update`
        ''',
        request=RoleUpdateSerializer,
        responses={200: RoleSerializer},
    ),
    delete=extend_schema(
        tags=['RBAC - Roles'],
        summary='Delete role',
        description='''
Delete a custom role. Members holding it are left without a role and keep
only their overrides. System roles cannot be deleted.

**Required permission:** `company.general.roles:delete`
        ''',
        responses={200: OpenApiTypes.OBJECT},
    ),
)
@requires_permission(Module.COMPANY_ROLES, Action.VIEW, methods=['GET'])
@requires_permission(Module.COMPANY_ROLES, Action.UPDATE, methods=['PATCH'])
@requires_permission(Module.COMPANY_ROLES, Action.DELETE, methods=['DELETE'])
class RoleDetailView(APIView):
    """GET/PATCH/DELETE /v1/roles/<id>"""

    permission_classes = [HasModulePermission]

    def get_role(self, request, role_id):
        return get_object_or_404(Role.objects.for_tenant(request.tenant), pk=role_id)

    def get(self, request, role_id):
        return Response(RoleSerializer(self.get_role(request, role_id)).data)

    def patch(self, request, role_id):
        role = self.get_role(request, role_id)
        serializer = RoleUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = RoleService.update_role(
            role,
            performed_by=request.user,
            request=request,
            **serializer.validated_data
        )
        return Response(RoleSerializer(role).data)

    def delete(self, request, role_id):
        role = self.get_role(request, role_id)
        affected = RoleService.delete_role(role, performed_by=request.user, request=request)
        return Response({'deleted': True, 'affected_memberships': affected})


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Roles'],
        summary='Grant permission to role',
        description='**Required permission:** `company.general.roles:update`',
        request=RolePermissionSerializer,
        responses={201: RoleSerializer},
    ),
    delete=extend_schema(
        tags=['RBAC - Roles'],
        summary='Revoke permission from role',
        description='**Required permission:** `company.general.roles:update`',
        request=RolePermissionSerializer,
        responses={200: RoleSerializer},
    ),
)
@requires_permission(Module.COMPANY_ROLES, Action.UPDATE)
class RolePermissionView(APIView):
    """POST/DELETE /v1/roles/<id>/permissions"""

    permission_classes = [HasModulePermission]

    def _handle(self, request, role_id, service_method, status_code):
        role = get_object_or_404(Role.objects.for_tenant(request.tenant), pk=role_id)
        serializer = RolePermissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service_method(
            role,
            serializer.validated_data['module'],
            serializer.validated_data['action'],
            performed_by=request.user,
            request=request,
        )
        role.refresh_from_db()
        return Response(RoleSerializer(role).data, status=status_code)

    def post(self, request, role_id):
        return self._handle(request, role_id, RoleService.grant_role_permission, status.HTTP_201_CREATED)

    def delete(self, request, role_id):
        return self._handle(request, role_id, RoleService.revoke_role_permission, status.HTTP_200_OK)


# ===== MEMBERSHIPS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Memberships'],
        summary='List company members',
        description='**Required permission:** `company.general.users:view`',
        parameters=[
            OpenApiParameter('is_active', OpenApiTypes.BOOL, description='Filter by active flag'),
            OpenApiParameter('role_id', OpenApiTypes.UUID, description='Filter by role'),
        ],
        responses={200: MembershipSerializer(many=True)},
    )
)
@requires_permission(Module.COMPANY_USERS, Action.VIEW)
class MembershipListView(APIView):
    """GET /v1/memberships"""

    permission_classes = [HasModulePermission]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        memberships = Membership.objects.for_tenant(request.tenant).select_related(
            'user', 'role', 'invited_by'
        ).order_by('user__email')

        filters = MembershipFilterSerializer(data=request.query_params.dict())
        filters.is_valid(raise_exception=True)
        params = filters.validated_data

        if 'is_active' in params:
            memberships = memberships.filter(is_active=params['is_active'])
        if 'role_id' in params:
            memberships = memberships.filter(role_id=params['role_id'])

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(memberships, request)
        return paginator.get_paginated_response(MembershipSerializer(page, many=True).data)


class MembershipMixin:

    def get_membership(self, request, membership_id):
        membership = Membership.objects.for_tenant(request.tenant).select_related(
            'user', 'role'
        ).filter(pk=membership_id).first()
        if membership is None:
            raise MembershipNotFound('Member not found', details={'membership_id': str(membership_id)})
        return membership


@extend_schema_view(
    put=extend_schema(
        tags=['RBAC - Memberships'],
        summary="Change a member's role",
        description='''
Assign a role (or `null` for none). The owner's role cannot be changed.

**Required permission:** `company.general.users:update`
        ''',
        request=MembershipRoleSerializer,
        responses={200: MembershipSerializer},
    )
)
@requires_permission(Module.COMPANY_USERS, Action.UPDATE)
class MembershipRoleView(MembershipMixin, APIView):
    """PUT /v1/memberships/<id>/role"""

    permission_classes = [HasModulePermission]

    def put(self, request, membership_id):
        membership = self.get_membership(request, membership_id)
        serializer = MembershipRoleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = None
        role_id = serializer.validated_data['role_id']
        if role_id is not None:
            role = Role.objects.for_tenant(request.tenant).filter(pk=role_id).first()
            if role is None:
                raise NotFoundError('Role not found', details={'role_id': str(role_id)})

        membership = MembershipService.change_role(
            membership, role, performed_by=request.user, request=request
        )
        return Response(MembershipSerializer(membership).data)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Memberships'],
        summary='Deactivate member',
        description='''
The member loses all access to the company. The owner and the caller
cannot be deactivated.

**Required permission:** `company.general.users:update`
        ''',
        request=None,
        responses={200: MembershipSerializer},
    )
)
@requires_permission(Module.COMPANY_USERS, Action.UPDATE)
class MembershipDeactivateView(MembershipMixin, APIView):
    """POST /v1/memberships/<id>/deactivate"""

    permission_classes = [HasModulePermission]

    def post(self, request, membership_id):
        membership = MembershipService.deactivate(
            self.get_membership(request, membership_id), performed_by=request.user, request=request
        )
        return Response(MembershipSerializer(membership).data)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Memberships'],
        summary='Reactivate member',
        description='**Required permission:** `company.general.users:update`',
        request=None,
        responses={200: MembershipSerializer},
    )
)
@requires_permission(Module.COMPANY_USERS, Action.UPDATE)
class MembershipReactivateView(MembershipMixin, APIView):
    """POST /v1/memberships/<id>/reactivate"""

    permission_classes = [HasModulePermission]

    def post(self, request, membership_id):
        membership = MembershipService.reactivate(
            self.get_membership(request, membership_id), performed_by=request.user, request=request
        )
        return Response(MembershipSerializer(membership).data)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Memberships'],
        summary="List a member's overrides",
        description='**Required permission:** `company.general.users:view`',
        responses={200: PermissionOverrideSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Memberships'],
        summary='Grant or revoke one permission for a member',
        description='''
`granted=true` grants and `granted=false` revokes the pair regardless of
the member's role. A later call replaces the earlier override.

**Required permission:** `company.general.users:update`
        ''',
        request=PermissionOverrideCreateSerializer,
        responses={201: PermissionOverrideSerializer},
    ),
    delete=extend_schema(
        tags=['RBAC - Memberships'],
        summary='Clear an override',
        description='''
Remove the override so the role default applies again.

**Required permission:** `company.general.users:update`
        ''',
        request=RolePermissionSerializer,
        responses={200: OpenApiTypes.OBJECT},
    ),
)
@requires_permission(Module.COMPANY_USERS, Action.VIEW, methods=['GET'])
@requires_permission(Module.COMPANY_USERS, Action.UPDATE, methods=['POST', 'DELETE'])
class MembershipOverrideView(MembershipMixin, APIView):
    """GET/POST/DELETE /v1/memberships/<id>/overrides"""

    permission_classes = [HasModulePermission]

    def get(self, request, membership_id):
        membership = self.get_membership(request, membership_id)
        overrides = PermissionOverride.objects.for_membership(membership).select_related('granted_by')
        return Response({
            'count': overrides.count(),
            'results': PermissionOverrideSerializer(overrides, many=True).data,
        })

    def post(self, request, membership_id):
        membership = self.get_membership(request, membership_id)
        serializer = PermissionOverrideCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        service_method = OverrideService.grant if data['granted'] else OverrideService.revoke
        override = service_method(
            membership,
            data['module'],
            data['action'],
            performed_by=request.user,
            reason=data['reason'],
            request=request,
        )
        return Response(PermissionOverrideSerializer(override).data, status=status.HTTP_201_CREATED)

    def delete(self, request, membership_id):
        membership = self.get_membership(request, membership_id)
        serializer = RolePermissionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        previous = OverrideService.clear(
            membership,
            serializer.validated_data['module'],
            serializer.validated_data['action'],
            performed_by=request.user,
            request=request,
        )
        return Response({'cleared': previous is not None})


# ===== INVITATIONS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Invitations'],
        summary='List invitations',
        description='**Required permission:** `company.general.users:view`',
        parameters=[OpenApiParameter('status', OpenApiTypes.STR, description='Filter by status')],
        responses={200: InvitationSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Invitations'],
        summary='Invite a user',
        description='''
Invite an email address with a role (the company's default role when
omitted). Invitations expire after `INVITATION_EXPIRY_DAYS` days.

**Required permission:** `company.general.users:create`
        ''',
        request=InvitationCreateSerializer,
        responses={201: InvitationCreatedSerializer},
    ),
)
@requires_permission(Module.COMPANY_USERS, Action.VIEW, methods=['GET'])
@requires_permission(Module.COMPANY_USERS, Action.CREATE, methods=['POST'])
class InvitationListView(APIView):
    """GET/POST /v1/invitations"""

    permission_classes = [HasModulePermission]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        invitations = Invitation.objects.for_tenant(request.tenant).select_related('role', 'invited_by')
        filters = InvitationFilterSerializer(data=request.query_params.dict())
        filters.is_valid(raise_exception=True)
        if 'status' in filters.validated_data:
            invitations = invitations.filter(status=filters.validated_data['status'])

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(invitations, request)
        return paginator.get_paginated_response(InvitationSerializer(page, many=True).data)

    def post(self, request):
        serializer = InvitationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        role = None
        role_id = serializer.validated_data.get('role_id')
        if role_id:
            role = Role.objects.for_tenant(request.tenant).filter(pk=role_id).first()
            if role is None:
                raise NotFoundError('Role not found', details={'role_id': str(role_id)})

        invitation = InvitationService.invite(
            request.tenant,
            serializer.validated_data['email'],
            role=role,
            performed_by=request.user,
            request=request,
        )
        return Response(InvitationCreatedSerializer(invitation).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    delete=extend_schema(
        tags=['RBAC - Invitations'],
        summary='Cancel invitation',
        description='**Required permission:** `company.general.users:delete`',
        responses={200: InvitationSerializer},
    )
)
@requires_permission(Module.COMPANY_USERS, Action.DELETE)
class InvitationDetailView(APIView):
    """DELETE /v1/invitations/<id>"""

    permission_classes = [HasModulePermission]

    def delete(self, request, invitation_id):
        invitation = get_object_or_404(Invitation.objects.for_tenant(request.tenant), pk=invitation_id)
        invitation = InvitationService.cancel(invitation, performed_by=request.user, request=request)
        return Response(InvitationSerializer(invitation).data)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Invitations'],
        summary='Preview invitation',
        description='''
Company, role, email and expiry of the invitation carrying `token`, so the
invitee can review it before accepting. No company context required.
        ''',
        responses={200: InvitationPreviewSerializer, 404: OpenApiTypes.OBJECT},
    )
)
class InvitationPreviewView(APIView):
    """GET /v1/invitations/by-token/<token>"""

    def get(self, request, token):
        invitation = InvitationService.get_by_token(token)
        return Response(InvitationPreviewSerializer(invitation).data)


@extend_schema_view(
    post=extend_schema(
        tags=['RBAC - Invitations'],
        summary='Accept invitation',
        description='''
Accept an invitation addressed to the caller's email. Creates (or
reactivates) the membership. No company context required.
        ''',
        request=InvitationAcceptSerializer,
        responses={200: MembershipSerializer},
    )
)
class InvitationAcceptView(APIView):
    """POST /v1/invitations/accept"""

    def post(self, request):
        serializer = InvitationAcceptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        membership = InvitationService.accept(
            serializer.validated_data['token'], request.user, request=request
        )
        return Response(MembershipSerializer(membership).data)


# ===== AUDIT LOG =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Audit'],
        summary='List audit log entries',
        description='''
Newest first, 20 per page.

**Required permission:** `company.general.audit:view`
        ''',
        parameters=[
            OpenApiParameter('action', OpenApiTypes.STR, description='Filter by action kind'),
            OpenApiParameter('target_type', OpenApiTypes.STR, description='role, member or invitation'),
            OpenApiParameter('target_id', OpenApiTypes.UUID, description='Filter by target'),
            OpenApiParameter('performed_by', OpenApiTypes.UUID, description='Filter by performer'),
            OpenApiParameter('from_date', OpenApiTypes.DATETIME, description='Created at or after'),
            OpenApiParameter('to_date', OpenApiTypes.DATETIME, description='Created at or before'),
        ],
        responses={200: AuditLogSerializer(many=True)},
    )
)
@requires_permission(Module.COMPANY_AUDIT, Action.VIEW)
class AuditLogListView(APIView):
    """GET /v1/audit-logs"""

    permission_classes = [HasModulePermission]
    pagination_class = AuditLogPagination

    def get(self, request):
        logs = AuditLog.objects.filter(tenant=request.tenant).select_related('performed_by')

        filters = AuditLogFilterSerializer(data=request.query_params.dict())
        filters.is_valid(raise_exception=True)
        params = filters.validated_data

        if 'action' in params:
            logs = logs.by_action(params['action'])
        if 'target_type' in params:
            logs = logs.by_target(params['target_type'], params.get('target_id'))
        elif 'target_id' in params:
            logs = logs.filter(target_id=params['target_id'])
        if 'performed_by' in params:
            logs = logs.filter(performed_by_id=params['performed_by'])
        if 'from_date' in params:
            logs = logs.filter(created_at__gte=params['from_date'])
        if 'to_date' in params:
            logs = logs.filter(created_at__lte=params['to_date'])

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(logs, request)
        return paginator.get_paginated_response(AuditLogSerializer(page, many=True).data)
