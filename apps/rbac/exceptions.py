"""
RBAC domain errors.

All of these are ordinary, user-facing failures rendered by the API
exception handler. Catalog misuse (UnknownPermissionError) lives in
apps.rbac.catalog because it is a programming error instead.
"""
from apps.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


class SystemRoleProtected(PermissionDeniedError):
    """System roles cannot be renamed or deleted."""
    default_code = 'SYSTEM_ROLE_PROTECTED'


class RoleConflict(ConflictError):
    """Another role in the tenant already uses the name or slug."""
    default_code = 'ROLE_CONFLICT'


class OwnerMembershipProtected(PermissionDeniedError):
    """The owner membership cannot lose its role or be deactivated."""
    default_code = 'OWNER_PROTECTED'


class SelfDeactivationError(PermissionDeniedError):
    default_code = 'SELF_DEACTIVATION'


class CrossTenantReference(ValidationError):
    """An object from another tenant was referenced."""
    default_code = 'CROSS_TENANT_REFERENCE'


class MembershipNotFound(NotFoundError):
    default_code = 'MEMBERSHIP_NOT_FOUND'


class InvitationError(ValidationError):
    default_code = 'INVITATION_INVALID'


class InvitationExpired(InvitationError):
    default_code = 'INVITATION_EXPIRED'


class AuditTransactionRequired(RuntimeError):
    """
    Raised when an audit entry is written outside a transaction.

    Audit entries must commit or roll back together with the mutation they
    document, so writing one in autocommit mode is a programming error.
    """


class ImmutableAuditLogError(RuntimeError):
    """Raised on any attempt to modify or delete an audit entry."""
