"""
Audit logging for authorization-relevant mutations.

AuditLogger.record must run inside the same transaction.atomic block as
the mutation it documents. It refuses to write in autocommit mode and lets
database errors propagate, so the mutation and its entry commit or roll
back together.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from django.db import DEFAULT_DB_ALIAS, transaction

from apps.rbac.catalog import AuditActionKind, AuditTargetType, validate_module
from apps.rbac.exceptions import AuditTransactionRequired
from apps.rbac.models import AuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditTarget:
    """What an audit entry is about."""

    type: AuditTargetType
    id: Any
    name: str = ''

    @classmethod
    def for_role(cls, role):
        return cls(AuditTargetType.ROLE, role.pk, role.name)

    @classmethod
    def for_membership(cls, membership):
        return cls(AuditTargetType.MEMBER, membership.pk, membership.user.email)

    @classmethod
    def for_invitation(cls, invitation):
        return cls(AuditTargetType.INVITATION, invitation.pk, invitation.email)


def _request_context(request):
    if request is None:
        return {}

    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    ip_address = forwarded.split(',')[0].strip() if forwarded else request.META.get('REMOTE_ADDR')
    return {
        'ip_address': ip_address or None,
        'user_agent': request.META.get('HTTP_USER_AGENT', '')[:500],
        'request_id': getattr(request, 'request_id', '') or '',
    }


class AuditLogger:
    """Writes AuditLog entries for role, membership, override and invitation changes."""

    @classmethod
    def record(
        cls,
        tenant,
        performed_by,
        action: AuditActionKind,
        target: AuditTarget,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        details: Optional[dict] = None,
        module=None,
        request=None,
        using: str = DEFAULT_DB_ALIAS,
    ) -> AuditLog:
        """
        Append one audit entry.

        Args:
            tenant: Tenant the mutation happened in
            performed_by: User who performed it (None for system actions)
            action: AuditActionKind of the mutation
            target: AuditTarget describing the affected object
            old_value: JSON-serializable state before the change
            new_value: JSON-serializable state after the change
            details: Extra JSON-serializable context
            module: Module affected, for permission changes
            request: Optional HTTP request for ip/user agent/request id

        Returns:
            The created AuditLog

        Raises:
            AuditTransactionRequired: if called outside transaction.atomic
        """
        if not transaction.get_connection(using).in_atomic_block:
            raise AuditTransactionRequired(
                f"Audit entry '{action}' must be written inside the mutation's transaction"
            )

        action = AuditActionKind(action)
        target_type = AuditTargetType(target.type)

        entry = AuditLog.objects.using(using).create(
            tenant=tenant,
            performed_by=performed_by,
            action=action,
            target_type=target_type,
            target_id=target.id,
            target_name=target.name or '',
            module=validate_module(module).value if module else '',
            old_value=old_value,
            new_value=new_value,
            details=details or {},
            **_request_context(request),
        )

        logger.info(
            f"Audit: {action.value} on {target_type.value} {target.id}",
            extra={
                'tenant_id': str(getattr(tenant, 'pk', tenant)),
                'audit_id': str(entry.id),
                'performed_by': str(performed_by.pk) if performed_by else None,
                'request_id': getattr(request, 'request_id', None) if request else None,
            }
        )
        return entry
