"""
Structured logging for the role engine.
Provides request-scoped logging with request_id propagation.
"""
import json
import logging
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Optional, Any, Dict, Tuple, Type

from rolecore.core.config import settings

# Context variable for request-scoped data
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)


def get_request_id() -> Optional[str]:
    """Get current request ID from context."""
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    """Set request ID in context."""
    request_id_var.set(request_id)


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid.uuid4())[:8]


class StructuredLogger:
    """
    Structured JSON logger with request context support.
    Logs in JSON format for production, human-readable for development.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name
        self._is_json = settings.APP_ENV == 'production'

    def _build_log_record(
        self,
        level: str,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> Dict[str, Any]:
        record = {
            'timestamp': time.strftime('%Y-%m-%dT%H:%M:%S%z'),
            'level': level,
            'logger': self.name,
            'message': message,
            'env': settings.APP_ENV,
        }

        request_id = get_request_id()
        if request_id:
            record['request_id'] = request_id

        if extra:
            record['context'] = extra

        if error:
            record['error'] = {
                'type': type(error).__name__,
                'message': str(error),
            }

        return record

    def _format_message(self, record: Dict[str, Any]) -> str:
        if self._is_json:
            return json.dumps(record, default=str)

        parts = [
            f"[{record.get('request_id', '-')}]",
            f"[{record['env']}]",
            record['message'],
        ]

        if 'context' in record:
            parts.append(f"| {record['context']}")

        if 'error' in record:
            parts.append(f"| error={record['error']['type']}: {record['error']['message']}")

        return ' '.join(parts)

    def debug(self, message: str, **extra):
        record = self._build_log_record('DEBUG', message, extra if extra else None)
        self.logger.debug(self._format_message(record))

    def info(self, message: str, **extra):
        record = self._build_log_record('INFO', message, extra if extra else None)
        self.logger.info(self._format_message(record))

    def warning(self, message: str, **extra):
        record = self._build_log_record('WARNING', message, extra if extra else None)
        self.logger.warning(self._format_message(record))

    def error(self, message: str, error: Optional[Exception] = None, **extra):
        record = self._build_log_record('ERROR', message, extra if extra else None, error)
        self.logger.error(self._format_message(record))


def get_logger(name: str = settings.APP_NAME) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


roles_logger = get_logger('rolecore.roles')
automation_logger = get_logger('rolecore.automation')
api_logger = get_logger('rolecore.api')


def log_operation(
    operation: str,
    logger: Optional[StructuredLogger] = None,
    expected: Tuple[Type[Exception], ...] = (),
):
    """
    Decorator for logging coroutine entry/exit with timing.

    Exceptions of the `expected` types are caller-facing outcomes and are
    logged as warnings; anything else is logged as an error.

    Usage:
        @log_operation("delete_role", roles_logger, expected=(PermissionsError,))
        async def delete_role(...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            log = logger or roles_logger
            start = time.time()
            log.debug(f"{operation} started")
            try:
                result = await func(*args, **kwargs)
            except expected as e:
                duration = round((time.time() - start) * 1000, 2)
                log.warning(
                    f"{operation} rejected: {e}",
                    error_code=getattr(e, 'code', type(e).__name__),
                    duration_ms=duration,
                )
                raise
            except Exception as e:
                duration = round((time.time() - start) * 1000, 2)
                log.error(f"{operation} failed", error=e, duration_ms=duration)
                raise
            duration = round((time.time() - start) * 1000, 2)
            log.info(f"{operation} completed", duration_ms=duration)
            return result

        return wrapper

    return decorator
