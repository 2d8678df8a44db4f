"""
Structured logging helpers: PII masking, JSON formatter, security events.
"""
import json
import logging
import re
import traceback
from datetime import datetime, timezone as dt_timezone
from django.utils import timezone
import sentry_sdk


class PIIMasker:
    """
    Mask personal data and credentials before they reach log sinks.
    """

    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    SECRET_PATTERN = re.compile(
        r'(api[_-]?key|token|secret|password|authorization)["\']?\s*[:=]\s*["\']?([^"\'\s,}]+)',
        re.IGNORECASE
    )
    BEARER_PATTERN = re.compile(r'Bearer\s+[A-Za-z0-9\-_.]+')

    SENSITIVE_FIELDS = {
        'password', 'password_hash',
        'token', 'access_token', 'refresh_token', 'invitation_token',
        'secret', 'secret_key', 'jwt',
        'authorization',
    }

    @classmethod
    def mask_email(cls, text):
        if not isinstance(text, str):
            return text

        def mask_match(match):
            username, _, domain = match.group(0).partition('@')
            if len(username) > 1:
                username = username[0] + '*' * (len(username) - 1)
            return f"{username}@{domain}"

        return cls.EMAIL_PATTERN.sub(mask_match, text)

    @classmethod
    def mask_secrets(cls, text):
        if not isinstance(text, str):
            return text
        text = cls.BEARER_PATTERN.sub('Bearer ********', text)
        return cls.SECRET_PATTERN.sub(r'\1: ********', text)

    @classmethod
    def mask_text(cls, text):
        """Apply all masking patterns to text."""
        if not isinstance(text, str):
            return text
        return cls.mask_secrets(cls.mask_email(text))

    @classmethod
    def mask_dict(cls, data):
        """Recursively mask sensitive values in a dict."""
        if not isinstance(data, dict):
            return data

        masked = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELDS and value and not isinstance(value, (dict, list)):
                masked[key] = '********'
            elif isinstance(value, dict):
                masked[key] = cls.mask_dict(value)
            elif isinstance(value, list):
                masked[key] = [
                    cls.mask_dict(item) if isinstance(item, dict) else cls.mask_text(item)
                    for item in value
                ]
            else:
                masked[key] = cls.mask_text(value)
        return masked


# LogRecord attributes that are not user supplied context
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
    'pathname', 'process', 'processName', 'relativeCreated',
    'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'request_id', 'tenant_id',
])


class JSONFormatter(logging.Formatter):
    """
    Format log records as one JSON object per line.

    request_id and tenant_id are promoted to top-level keys; any other
    ``extra`` context is included after masking.
    """

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(dt_timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': PIIMasker.mask_text(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if hasattr(record, 'request_id'):
            log_data['request_id'] = record.request_id

        if hasattr(record, 'tenant_id'):
            log_data['tenant_id'] = str(record.tenant_id)

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': PIIMasker.mask_text(str(record.exc_info[1])),
                'traceback': [
                    PIIMasker.mask_text(line)
                    for line in traceback.format_exception(*record.exc_info)
                ],
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            if isinstance(value, dict):
                value = PIIMasker.mask_dict(value)
            elif isinstance(value, str):
                value = PIIMasker.mask_text(value)
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = PIIMasker.mask_text(str(value))
            log_data[key] = value

        return json.dumps(log_data)


class SecurityLogger:
    """
    Security event logging on the ``security`` logger.

    Critical events are also sent to Sentry for alerting.
    """

    CRITICAL_EVENTS = {
        'cross_tenant_access',
        'unknown_permission',
    }

    @staticmethod
    def log_event(event_type: str, level: str = 'warning', **context):
        """
        Log a security event with structured data.

        Args:
            event_type: Type of security event (e.g., 'permission_denied')
            level: Log level ('info', 'warning', 'error', 'critical')
            **context: Additional context (ip_address, user_id, tenant_id, ...)
        """
        logger = logging.getLogger('security')

        log_data = {
            'event_type': event_type,
            'timestamp': timezone.now().isoformat(),
        }
        log_data.update(context)
        log_data = PIIMasker.mask_dict(log_data)

        log_method = getattr(logger, level, logger.warning)
        log_method(f"Security event: {event_type}", extra={'security': log_data})

        if event_type in SecurityLogger.CRITICAL_EVENTS:
            sentry_sdk.capture_message(
                f"Critical security event: {event_type}",
                level='error',
            )

    @staticmethod
    def log_failed_login(email: str, ip_address: str, reason: str = None):
        SecurityLogger.log_event(
            'failed_login',
            email=email,
            ip_address=ip_address,
            reason=reason
        )

    @staticmethod
    def log_permission_denied(user_id, tenant_id, module: str, action: str, path: str = None):
        """Log a denied (module, action) check."""
        SecurityLogger.log_event(
            'permission_denied',
            user_id=str(user_id) if user_id else None,
            tenant_id=str(tenant_id) if tenant_id else None,
            module=module,
            action=action,
            path=path
        )

    @staticmethod
    def log_cross_tenant_access(user_id, tenant_id, ip_address: str = None):
        """
        Log a principal asking for a tenant it has no active membership in.
        """
        SecurityLogger.log_event(
            'cross_tenant_access',
            level='error',
            user_id=str(user_id) if user_id else None,
            tenant_id=str(tenant_id) if tenant_id else None,
            ip_address=ip_address
        )

    @staticmethod
    def log_unknown_permission(module, action, user_id=None):
        """A caller asked about a module/action outside the catalog."""
        SecurityLogger.log_event(
            'unknown_permission',
            level='error',
            module=str(module),
            action=str(action),
            user_id=str(user_id) if user_id else None
        )

    @staticmethod
    def log_rate_limit_exceeded(endpoint: str, ip_address: str, tenant_id: str = None, limit: str = None):
        SecurityLogger.log_event(
            'rate_limit_exceeded',
            endpoint=endpoint,
            ip_address=ip_address,
            tenant_id=tenant_id,
            limit=limit
        )
