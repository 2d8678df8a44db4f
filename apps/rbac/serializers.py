"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Authentication (login)
- Roles and their grants
- Memberships and permission overrides
- Invitations
- Permission checks and audit logs

Permissions travel as ``"<module>:<action>"`` codes.
"""
from rest_framework import serializers

from apps.rbac.catalog import (
    MODULE_GROUPS,
    Action,
    AuditActionKind,
    AuditTargetType,
    Module,
    UnknownPermissionError,
    parse_permission_code,
    permission_code,
)
from apps.rbac.models import (
    AuditLog,
    Invitation,
    Membership,
    PermissionOverride,
    Role,
    User,
)


class PermissionCodeField(serializers.CharField):
    """``"<module>:<action>"`` <-> (Module, Action)."""

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        try:
            return parse_permission_code(value)
        except UnknownPermissionError:
            raise serializers.ValidationError(f"Unknown permission '{value}'")

    def to_representation(self, value):
        module, action = value
        return permission_code(module, action)


# ===== AUTHENTICATION SERIALIZERS =====

class LoginSerializer(serializers.Serializer):
    """Serializer for user login."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )

    def validate_email(self, value):
        """Normalize email to lowercase."""
        return value.lower()


class UserSerializer(serializers.ModelSerializer):
    """Basic user serializer."""

    full_name = serializers.CharField(source='get_full_name', read_only=True)

    class Meta:
        model = User
        fields = ['id', 'email', 'first_name', 'last_name', 'full_name']
        read_only_fields = fields


# ===== ROLE SERIALIZERS =====

class RoleSummarySerializer(serializers.ModelSerializer):

    class Meta:
        model = Role
        fields = ['id', 'name', 'slug', 'color', 'is_system']
        read_only_fields = fields


class RoleSerializer(serializers.ModelSerializer):
    """Serializer for Role model."""

    permissions = serializers.SerializerMethodField()
    member_count = serializers.SerializerMethodField()

    class Meta:
        model = Role
        fields = [
            'id', 'name', 'slug', 'description', 'color',
            'is_system', 'is_default', 'permissions', 'member_count',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_permissions(self, obj):
        return sorted(permission_code(module, action) for module, action in obj.grant_keys())

    def get_member_count(self, obj):
        return obj.memberships.filter(is_active=True).count()


class RoleCreateSerializer(serializers.Serializer):
    """Serializer for creating roles."""

    name = serializers.CharField(max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    color = serializers.CharField(required=False, allow_blank=True, max_length=20, default='')
    is_default = serializers.BooleanField(required=False, default=False)
    permissions = serializers.ListField(child=PermissionCodeField(), required=False, default=list)

    def validate_name(self, value):
        """Validate role name is unique within tenant."""
        tenant = self.context.get('tenant')
        if not tenant:
            raise serializers.ValidationError("Tenant context is required for role creation")

        value = value.strip()
        if Role.objects.for_tenant(tenant).filter(name__iexact=value).exists():
            raise serializers.ValidationError(f"Role with name '{value}' already exists for this company")
        return value


class RoleUpdateSerializer(serializers.Serializer):
    """All fields optional; ``permissions`` replaces the whole grant set."""

    name = serializers.CharField(max_length=100, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    color = serializers.CharField(required=False, allow_blank=True, max_length=20)
    is_default = serializers.BooleanField(required=False)
    permissions = serializers.ListField(child=PermissionCodeField(), required=False)


class RolePermissionSerializer(serializers.Serializer):
    """One (module, action) pair."""

    module = serializers.ChoiceField(choices=Module.choices)
    action = serializers.ChoiceField(choices=Action.choices)


# ===== MEMBERSHIP SERIALIZERS =====

class MembershipSerializer(serializers.ModelSerializer):
    """Serializer for Membership."""

    user = UserSerializer(read_only=True)
    role = RoleSummarySerializer(read_only=True)
    invited_by_email = serializers.EmailField(source='invited_by.email', read_only=True, default=None)

    class Meta:
        model = Membership
        fields = [
            'id', 'user', 'role', 'is_owner', 'is_active',
            'invited_by_email', 'joined_at', 'deactivated_at',
            'last_seen_at', 'created_at'
        ]
        read_only_fields = fields


class MembershipRoleSerializer(serializers.Serializer):
    """Role to assign; null leaves the member with overrides only."""

    role_id = serializers.UUIDField(allow_null=True)


class PermissionOverrideSerializer(serializers.ModelSerializer):
    """Serializer for PermissionOverride."""

    granted_by_email = serializers.EmailField(source='granted_by.email', read_only=True, default=None)

    class Meta:
        model = PermissionOverride
        fields = [
            'id', 'module', 'action', 'granted', 'reason',
            'granted_by_email', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class PermissionOverrideCreateSerializer(RolePermissionSerializer):
    """Grant (granted=true) or revoke (granted=false) one pair for a member."""

    granted = serializers.BooleanField()
    reason = serializers.CharField(
        required=False,
        allow_blank=True,
        default='',
        help_text="Reason for this permission override"
    )


# ===== INVITATION SERIALIZERS =====

class InvitationSerializer(serializers.ModelSerializer):
    """Serializer for Invitation."""

    role = RoleSummarySerializer(read_only=True)
    invited_by_email = serializers.EmailField(source='invited_by.email', read_only=True, default=None)

    class Meta:
        model = Invitation
        fields = [
            'id', 'email', 'role', 'status', 'invited_by_email',
            'expires_at', 'accepted_at', 'created_at'
        ]
        read_only_fields = fields


class InvitationCreatedSerializer(InvitationSerializer):
    """Creation response; the token is only ever returned here."""

    class Meta(InvitationSerializer.Meta):
        fields = InvitationSerializer.Meta.fields + ['token']
        read_only_fields = fields


class InvitationCreateSerializer(serializers.Serializer):

    email = serializers.EmailField()
    role_id = serializers.UUIDField(required=False, allow_null=True)

    def validate_email(self, value):
        return User.objects.normalize_email(value)


class InvitationAcceptSerializer(serializers.Serializer):

    token = serializers.CharField(max_length=64)


class InvitationPreviewSerializer(serializers.ModelSerializer):
    """What the invitee sees before accepting."""

    tenant_name = serializers.CharField(source='tenant.name', read_only=True)
    role_name = serializers.CharField(source='role.name', read_only=True, default=None)
    invited_by_email = serializers.EmailField(source='invited_by.email', read_only=True, default=None)
    is_expired = serializers.SerializerMethodField()

    class Meta:
        model = Invitation
        fields = [
            'tenant_name', 'role_name', 'email', 'status',
            'invited_by_email', 'expires_at', 'is_expired'
        ]
        read_only_fields = fields

    def get_is_expired(self, obj):
        return obj.status == Invitation.STATUS_EXPIRED or (
            obj.status == Invitation.STATUS_PENDING and obj.is_expired()
        )


# ===== PERMISSION QUERY SERIALIZERS =====

class PermissionCheckSerializer(RolePermissionSerializer):
    """Input of POST /v1/me/permissions/check."""

    redirect = serializers.BooleanField(required=False, default=False)
    redirect_to = serializers.CharField(required=False, allow_blank=True, default='')


def catalog_payload():
    """Module groups with labels and the action list, for permission matrices."""
    return {
        'groups': [
            {
                'key': key,
                'label': label,
                'modules': [{'key': module.value, 'label': module.label} for module in modules],
            }
            for key, label, modules in MODULE_GROUPS
        ],
        'actions': [{'key': action.value, 'label': action.label} for action in Action],
    }


# ===== AUDIT SERIALIZERS =====

class AuditLogSerializer(serializers.ModelSerializer):
    """Serializer for AuditLog model."""

    performed_by_email = serializers.EmailField(source='performed_by.email', read_only=True, default=None)

    class Meta:
        model = AuditLog
        fields = [
            'id', 'action', 'target_type', 'target_id', 'target_name',
            'module', 'old_value', 'new_value', 'details',
            'performed_by_email', 'ip_address', 'user_agent', 'request_id',
            'created_at'
        ]
        read_only_fields = fields


# ===== LIST FILTER SERIALIZERS =====
# Bound to ``request.query_params.dict()`` so absent booleans stay absent.

class MembershipFilterSerializer(serializers.Serializer):

    is_active = serializers.BooleanField(required=False)
    role_id = serializers.UUIDField(required=False)


class InvitationFilterSerializer(serializers.Serializer):

    status = serializers.ChoiceField(choices=Invitation.STATUS_CHOICES, required=False)


class AuditLogFilterSerializer(serializers.Serializer):

    action = serializers.ChoiceField(choices=AuditActionKind.choices, required=False)
    target_type = serializers.ChoiceField(choices=AuditTargetType.choices, required=False)
    target_id = serializers.UUIDField(required=False)
    performed_by = serializers.UUIDField(required=False)
    from_date = serializers.DateTimeField(required=False)
    to_date = serializers.DateTimeField(required=False)

    def validate(self, attrs):
        if attrs.get('from_date') and attrs.get('to_date') and attrs['from_date'] > attrs['to_date']:
            raise serializers.ValidationError({'to_date': 'Must not be earlier than from_date'})
        return attrs
