"""
DRF permission classes and decorators for module permission enforcement.

This module provides:
- HasModulePermission: DRF permission class that asks the request's
  AccessGate for the (module, action) a view requires
- @requires_permission: Class decorator declaring that requirement
- @permission_required: Guard for plain Django views that redirects on denial
"""
import logging
from functools import wraps

from django.core.exceptions import PermissionDenied
from django.shortcuts import redirect as redirect_response
from rest_framework.permissions import BasePermission

from apps.rbac.catalog import validate_permission

logger = logging.getLogger(__name__)

ANY_METHOD = '*'


def _get_gate(request):
    gate = getattr(request, 'access_gate', None)
    if gate is None:
        from apps.rbac.gate import AccessGate
        gate = AccessGate(getattr(request, 'user', None), tenant=getattr(request, 'tenant', None))
    return gate


class HasModulePermission(BasePermission):
    """
    DRF permission class that enforces module permissions on API endpoints.

    Views declare ``required_permissions`` as a mapping of HTTP method (or
    ``'*'``) to a (module, action) pair, usually through
    ``@requires_permission``. The check always re-resolves through the
    request's AccessGate. Object-level checks keep objects inside the
    request's tenant.

    Usage:
        @requires_permission('company.general.roles', 'view', methods=['GET'])
        @requires_permission('company.general.roles', 'create', methods=['POST'])
        class RoleListView(APIView):
            permission_classes = [HasModulePermission]
    """

    message = 'You do not have permission to perform this action.'

    @staticmethod
    def required_for(view, method):
        required = getattr(view, 'required_permissions', None) or {}
        return required.get(method.upper(), required.get(ANY_METHOD))

    def has_permission(self, request, view):
        required = self.required_for(view, request.method)
        if required is None:
            return True

        module, action = required
        result = _get_gate(request).check_permission(module, action)
        if not result.allowed:
            logger.warning(
                f"Permission denied: {module}:{action}",
                extra={
                    'user_id': str(getattr(request.user, 'pk', '')) or None,
                    'tenant_id': str(getattr(getattr(request, 'tenant', None), 'pk', '')) or None,
                    'view': view.__class__.__name__,
                    'method': request.method,
                    'path': request.path,
                    'request_id': getattr(request, 'request_id', None),
                }
            )
            return False
        return True

    def has_object_permission(self, request, view, obj):
        """Objects carrying a tenant must belong to the request's tenant."""
        request_tenant = getattr(request, 'tenant', None)
        if request_tenant is None:
            return False

        object_tenant_id = getattr(obj, 'tenant_id', None)
        if object_tenant_id is None:
            return True

        if object_tenant_id != request_tenant.pk:
            logger.warning(
                "Object permission denied: object belongs to different tenant",
                extra={
                    'request_tenant_id': str(request_tenant.pk),
                    'object_tenant_id': str(object_tenant_id),
                    'object_type': obj.__class__.__name__,
                    'object_id': str(getattr(obj, 'pk', '')),
                    'request_id': getattr(request, 'request_id', None),
                }
            )
            return False
        return True


def requires_permission(module, action, methods=None):
    """
    Class decorator declaring the (module, action) a view requires.

    Stack it once per HTTP method group; without ``methods`` the
    requirement applies to every method that has no specific one.
    Unknown modules or actions fail at import time.
    """
    key = validate_permission(module, action)

    def decorator(view_class):
        required = dict(getattr(view_class, 'required_permissions', None) or {})
        for method in (methods or [ANY_METHOD]):
            required[method.upper()] = key
        view_class.required_permissions = required
        return view_class

    return decorator


def permission_required(module, action, redirect=True, redirect_to=None):
    """
    Guard a plain Django view.

    A denial redirects to ``redirect_to`` (or PERMISSION_DENIED_REDIRECT_URL)
    when ``redirect`` is true and raises PermissionDenied otherwise.
    """
    validate_permission(module, action)

    def decorator(view_func):
        @wraps(view_func)
        def _wrapped(request, *args, **kwargs):
            result = _get_gate(request).check_permission(
                module, action, redirect=redirect, redirect_to=redirect_to
            )
            if result.allowed:
                return view_func(request, *args, **kwargs)
            if result.redirect_to:
                return redirect_response(result.redirect_to)
            raise PermissionDenied
        return _wrapped

    return decorator
