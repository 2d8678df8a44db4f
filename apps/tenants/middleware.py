"""
Tenant context middleware for multi-tenant isolation.

Authenticates the JWT bearer, decides which tenant the request operates
in and attaches the access gate used by every permission check.
"""
import logging
import threading

from django.contrib.auth.models import AnonymousUser
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

from apps.core.logging import SecurityLogger
from apps.rbac.gate import AccessGate
from apps.rbac.models import Membership
from apps.tenants.models import Tenant
from apps.tenants.services.active_tenant import get_active_tenant_resolver

logger = logging.getLogger(__name__)


class TenantContextMiddleware(MiddlewareMixin):
    """
    Extract authentication and tenant context from request headers.

    This middleware:
    1. Authenticates ``Authorization: Bearer <jwt>`` and sets request.user
    2. Uses X-TENANT-ID when given (the principal must be an active member)
    3. Otherwise asks the ActiveTenantResolver for the active tenant
    4. Attaches request.tenant, request.membership and request.access_gate

    Having no tenant is not an error: the gate then denies everything.
    Public endpoints (login, health checks, schema) skip authentication.
    """

    PUBLIC_PATHS = [
        '/v1/auth/login',
        '/v1/health',
        '/schema',
    ]

    def process_request(self, request):
        request.tenant = None
        request.membership = None

        user = self._authenticate(request)
        request.user = user or AnonymousUser()
        request.access_gate = AccessGate(user)

        if self._is_public_path(request.path):
            return None

        if user is None:
            code = 'INVALID_TOKEN' if self._get_bearer(request) else 'UNAUTHENTICATED'
            return self._error_response(code, 'Authentication credentials were not provided or are invalid', status=401)

        resolver = get_active_tenant_resolver()
        tenant_header = request.headers.get('X-TENANT-ID')

        if tenant_header:
            tenant = self._get_tenant(tenant_header)
            membership = None
            if tenant is not None and tenant.is_active():
                membership = Membership.objects.get_membership(tenant, user)
            if membership is None:
                SecurityLogger.log_cross_tenant_access(
                    user_id=user.pk,
                    tenant_id=tenant_header,
                    ip_address=request.META.get('REMOTE_ADDR'),
                )
                return self._error_response('FORBIDDEN', 'You do not have access to this company', status=403)
        else:
            tenant_id = resolver.resolve_active_tenant(user)
            tenant = Tenant.objects.filter(id=tenant_id).first() if tenant_id else None
            membership = Membership.objects.get_membership(tenant, user) if tenant else None

        request.tenant = tenant
        request.membership = membership
        request.access_gate = AccessGate(user, tenant=tenant, tenant_resolver=resolver)

        if tenant is not None:
            threading.current_thread().tenant_id = str(tenant.id)

        if membership is not None:
            try:
                membership.update_last_seen()
            except Exception as e:
                # Log but don't fail request if timestamp update fails
                logger.warning(
                    f"Failed to update last_seen_at for membership {membership.id}: {e}",
                    extra={'request_id': getattr(request, 'request_id', None)}
                )

        logger.debug(
            "Tenant context set",
            extra={
                'request_id': getattr(request, 'request_id', None),
                'tenant_id': str(tenant.id) if tenant else None,
                'user_id': str(user.pk),
            }
        )
        return None

    def _authenticate(self, request):
        token = self._get_bearer(request)
        if not token:
            return None
        # Import here to avoid circular dependency
        from apps.rbac.services import AuthService
        return AuthService.get_user_from_jwt(token)

    @staticmethod
    def _get_bearer(request):
        header = request.headers.get('Authorization', '')
        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer':
            return None
        return token.strip() or None

    @staticmethod
    def _get_tenant(tenant_id):
        try:
            return Tenant.objects.filter(id=tenant_id).first()
        except (ValueError, DjangoValidationError):
            return None

    def _is_public_path(self, path):
        """Check if path is public and doesn't require authentication."""
        return any(path.startswith(public_path) for public_path in self.PUBLIC_PATHS)

    def _error_response(self, code, message, status=400, details=None):
        """Generate standardized error response."""
        error_data = {
            'error': {
                'code': code,
                'message': message,
            }
        }

        if details:
            error_data['error']['details'] = details

        return JsonResponse(error_data, status=status)
