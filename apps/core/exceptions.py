"""
Platform exceptions and the DRF exception handler.
"""
import logging
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
from django_ratelimit.exceptions import Ratelimited
from django.http import JsonResponse

logger = logging.getLogger(__name__)

LOGIN_RETRY_AFTER = 60


class PlatformException(Exception):
    """Base exception for Orbe-specific errors."""

    status_code = 400
    default_code = 'ERROR'

    def __init__(self, message, details=None, code=None):
        self.message = message
        self.details = details or {}
        self.code = code or self.default_code
        super().__init__(self.message)


class AuthenticationError(PlatformException):
    """Raised when authentication fails."""
    status_code = 401
    default_code = 'UNAUTHENTICATED'


class PermissionDeniedError(PlatformException):
    """Raised when the principal may not perform the operation."""
    status_code = 403
    default_code = 'FORBIDDEN'


class NotFoundError(PlatformException):
    status_code = 404
    default_code = 'NOT_FOUND'


class ConflictError(PlatformException):
    status_code = 409
    default_code = 'CONFLICT'


class ValidationError(PlatformException):
    """Raised when input validation fails."""
    status_code = 400
    default_code = 'INVALID'


def _error_payload(code, message, details=None, request_id=None):
    payload = {
        'error': {
            'code': code,
            'message': message,
        }
    }
    if details:
        payload['error']['details'] = details
    if request_id:
        payload['request_id'] = request_id
    return payload


def ratelimit_view(request, exception):
    """
    View used by django-ratelimit outside DRF: 429 with Retry-After.
    """
    from apps.core.logging import SecurityLogger

    SecurityLogger.log_rate_limit_exceeded(
        endpoint=request.path,
        ip_address=request.META.get('REMOTE_ADDR', 'unknown'),
        limit='Rate limit exceeded'
    )

    response = JsonResponse(
        _error_payload(
            'RATE_LIMIT_EXCEEDED',
            'Rate limit exceeded. Please try again later.',
            request_id=getattr(request, 'request_id', None),
        ),
        status=429
    )
    response['Retry-After'] = str(LOGIN_RETRY_AFTER)
    return response


def custom_exception_handler(exc, context):
    """
    Render every API error in one shape.

    PlatformException subclasses carry their own status and code, rate
    limiting becomes 429, and anything DRF does not know about is a 500
    with no internals leaked.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    if isinstance(exc, Ratelimited):
        from apps.core.logging import SecurityLogger

        SecurityLogger.log_rate_limit_exceeded(
            endpoint=request.path if request else 'unknown',
            ip_address=request.META.get('REMOTE_ADDR', 'unknown') if request else 'unknown',
            tenant_id=str(request.tenant.id) if getattr(request, 'tenant', None) else None,
            limit='Rate limit exceeded'
        )
        response = Response(
            _error_payload(
                'RATE_LIMIT_EXCEEDED',
                'Rate limit exceeded. Please try again later.',
                request_id=request_id,
            ),
            status=status.HTTP_429_TOO_MANY_REQUESTS
        )
        response['Retry-After'] = str(LOGIN_RETRY_AFTER)
        return response

    if isinstance(exc, PlatformException):
        logger.info(
            f"API error: {exc.__class__.__name__}: {exc.message}",
            extra={
                'request_id': request_id,
                'code': exc.code,
                'path': request.path if request else None,
                'method': request.method if request else None,
            }
        )
        return Response(
            _error_payload(exc.code, exc.message, exc.details, request_id),
            status=exc.status_code
        )

    response = exception_handler(exc, context)

    if response is None:
        logger.error(
            f"Unhandled API exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
        return Response(
            _error_payload(
                'INTERNAL_ERROR',
                'An unexpected error occurred',
                request_id=request_id,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    logger.warning(
        f"API exception: {exc.__class__.__name__}",
        extra={
            'exception': str(exc),
            'request_id': request_id,
            'path': request.path if request else None,
            'status_code': response.status_code,
        }
    )

    if request_id and isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response
