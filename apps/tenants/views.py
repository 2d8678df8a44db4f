"""
Tenant API views.

- List the tenants the user belongs to and create new ones
- Read and switch the active tenant
"""
import logging

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema, extend_schema_view
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.rbac.models import Membership
from apps.tenants.models import Tenant
from apps.tenants.serializers import (
    ActiveTenantSerializer,
    TenantCreateSerializer,
    TenantMembershipSerializer,
)
from apps.tenants.services import TenantService, set_active_tenant

logger = logging.getLogger(__name__)


@extend_schema_view(
    get=extend_schema(
        tags=['Tenants'],
        summary="List user's tenants",
        description='''
List the companies where the authenticated user has an active membership,
with the user's role in each and which one is currently active.

No module permission required.
        ''',
        responses={200: TenantMembershipSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['Tenants'],
        summary='Create tenant',
        description='''
Create a company. The caller becomes its owner, the system roles are
seeded, and it becomes the caller's active company if they had none.

No module permission required.
        ''',
        request=TenantCreateSerializer,
        responses={201: TenantMembershipSerializer, 400: OpenApiTypes.OBJECT},
    ),
)
class TenantListView(APIView):
    """GET/POST /v1/tenants"""

    def get(self, request):
        memberships = TenantService.get_user_memberships(request.user)
        active_tenant_id = request.tenant.pk if request.tenant else None
        serializer = TenantMembershipSerializer(
            memberships,
            many=True,
            context={'active_tenant_id': active_tenant_id}
        )
        return Response(serializer.data)

    def post(self, request):
        serializer = TenantCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        tenant = TenantService.create_tenant(
            request.user,
            serializer.validated_data['name'],
            slug=serializer.validated_data.get('slug'),
        )
        membership = Membership.objects.get_membership(tenant, request.user)
        data = TenantMembershipSerializer(
            membership, context={'active_tenant_id': request.user.active_tenant_id}
        ).data
        return Response(data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    get=extend_schema(
        tags=['Tenants'],
        summary='Get active tenant',
        description='The company requests operate in; `tenant` is null when there is none.',
        responses={200: OpenApiTypes.OBJECT},
    ),
    put=extend_schema(
        tags=['Tenants'],
        summary='Switch active tenant',
        description='''
Switch the company the user operates in. The user must hold an active
membership there. Cached permissions for both companies are dropped.
        ''',
        request=ActiveTenantSerializer,
        responses={200: OpenApiTypes.OBJECT, 403: OpenApiTypes.OBJECT},
    ),
)
class ActiveTenantView(APIView):
    """GET/PUT /v1/tenants/active"""

    def _payload(self, membership):
        if membership is None:
            return {'tenant': None}
        return TenantMembershipSerializer(
            membership, context={'active_tenant_id': membership.tenant_id}
        ).data

    def get(self, request):
        membership = None
        if request.tenant is not None:
            membership = Membership.objects.get_membership(request.tenant, request.user)
        return Response(self._payload(membership))

    def put(self, request):
        serializer = ActiveTenantSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        tenant = Tenant.objects.filter(pk=serializer.validated_data['tenant_id']).first()
        membership = set_active_tenant(request.user, tenant)
        return Response(self._payload(membership))
