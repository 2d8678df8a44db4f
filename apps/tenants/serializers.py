"""
Serializers for tenant API endpoints.
"""
from rest_framework import serializers

from apps.rbac.models import Membership
from apps.rbac.serializers import RoleSummarySerializer
from apps.tenants.models import Tenant


class TenantSerializer(serializers.ModelSerializer):
    """Serializer for Tenant."""

    class Meta:
        model = Tenant
        fields = ['id', 'name', 'slug', 'status', 'timezone', 'created_at']
        read_only_fields = fields


class TenantMembershipSerializer(serializers.ModelSerializer):
    """A tenant the user belongs to, with the user's standing in it."""

    tenant = TenantSerializer(read_only=True)
    role = RoleSummarySerializer(read_only=True)
    is_active_tenant = serializers.SerializerMethodField()

    class Meta:
        model = Membership
        fields = ['id', 'tenant', 'role', 'is_owner', 'joined_at', 'is_active_tenant']
        read_only_fields = fields

    def get_is_active_tenant(self, obj):
        active_tenant_id = self.context.get('active_tenant_id')
        return active_tenant_id is not None and obj.tenant_id == active_tenant_id


class ActiveTenantSerializer(serializers.Serializer):
    """Input of PUT /v1/tenants/active."""

    tenant_id = serializers.UUIDField()


class TenantCreateSerializer(serializers.Serializer):
    """Input of POST /v1/tenants."""

    name = serializers.CharField(max_length=255)
    slug = serializers.SlugField(max_length=100, required=False)
