"""
Core middleware for request processing.
"""
import logging
import threading
import uuid

from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)


class RequestIDMiddleware(MiddlewareMixin):
    """
    Inject a unique request_id into each request for tracing.

    The id is echoed in the X-Request-ID response header, copied into
    audit entries and attached to log records by LoggingFilter.
    """

    def process_request(self, request):
        request_id = request.META.get('HTTP_X_REQUEST_ID') or str(uuid.uuid4())
        request.request_id = request_id[:64]

        thread = threading.current_thread()
        thread.request_id = request.request_id
        thread.tenant_id = None

    def process_response(self, request, response):
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id
        return response


class LoggingFilter(logging.Filter):
    """
    Add request_id and tenant_id to log records from thread-local storage.
    """

    def filter(self, record):
        thread = threading.current_thread()
        if not hasattr(record, 'request_id'):
            record.request_id = getattr(thread, 'request_id', None)
        if not hasattr(record, 'tenant_id'):
            record.tenant_id = getattr(thread, 'tenant_id', None)
        return True
