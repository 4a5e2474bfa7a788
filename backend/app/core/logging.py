"""
Structured Logging Module

Every record carries the request id and, once an access check has run, the
tenant (company) the request acts on. Production output is one JSON object
per line; other environments get a compact human-readable line.
"""
import inspect
import json
import logging
import time
import uuid
from contextvars import ContextVar
from functools import wraps
from typing import Any, Dict, Optional

from app.core.config import settings

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
request_start_var: ContextVar[Optional[float]] = ContextVar('request_start', default=None)
company_id_var: ContextVar[Optional[str]] = ContextVar('company_id', default=None)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


def bind_company(company_id: Optional[str]) -> None:
    """Attach the tenant to every record logged for the rest of the request."""
    company_id_var.set(company_id)


def elapsed_ms(start: Optional[float]) -> Optional[float]:
    if not start:
        return None
    return round((time.perf_counter() - start) * 1000, 2)


class StructuredLogger:
    """Thin wrapper over `logging.Logger` that adds request and tenant context."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    @property
    def _as_json(self) -> bool:
        return settings.APP_ENV == 'production'

    def _record(self, level: str, message: str, error: Optional[BaseException], extra: Dict[str, Any]) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'ts': time.strftime('%Y-%m-%dT%H:%M:%S%z'),
            'level': level,
            'logger': self.name,
            'msg': message,
        }
        for key, var in (('request_id', request_id_var), ('company_id', company_id_var)):
            value = var.get()
            if value:
                record[key] = value
        if extra:
            record['ctx'] = extra
        if error is not None:
            record['error'] = f"{type(error).__name__}: {error}"
        return record

    def _render(self, record: Dict[str, Any]) -> str:
        if self._as_json:
            return json.dumps(record, default=str)

        head = f"[{record.get('request_id', '-')}]"
        if 'company_id' in record:
            head += f"[{record['company_id']}]"
        line = f"{head} {record['msg']}"
        if 'ctx' in record:
            line += ' ' + ' '.join(f"{k}={v}" for k, v in record['ctx'].items())
        if 'error' in record:
            line += f" | {record['error']}"
        return line

    def _log(self, level: int, message: str, error: Optional[BaseException] = None, exc_info: bool = False, **extra):
        if not self.logger.isEnabledFor(level):
            return
        record = self._record(logging.getLevelName(level), message, error, extra)
        self.logger.log(level, self._render(record), exc_info=exc_info)

    def debug(self, message: str, **extra):
        self._log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra):
        self._log(logging.INFO, message, **extra)

    def warning(self, message: str, error: Optional[BaseException] = None, **extra):
        self._log(logging.WARNING, message, error, **extra)

    def error(self, message: str, error: Optional[BaseException] = None, **extra):
        self._log(logging.ERROR, message, error, **extra)

    def exception(self, message: str, **extra):
        self._log(logging.ERROR, message, exc_info=True, **extra)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


api_logger = get_logger(f'{settings.APP_NAME}.api')
forms_logger = get_logger(f'{settings.APP_NAME}.forms')
identity_logger = get_logger(f'{settings.APP_NAME}.identity')
db_logger = get_logger(f'{settings.APP_NAME}.database')


def log_operation(operation: str, logger: Optional[StructuredLogger] = None):
    """
    Log start, completion and failure of an async service operation.

    Failures the caller caused (anything exposing a `status_code` below 500)
    are logged as warnings; everything else is an error.

    Usage:
        @log_operation("create_form", forms_logger)
        async def create_form(...):
            ...
    """
    log = logger or api_logger

    def decorator(func):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"log_operation expects a coroutine function, got {func!r}")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            log.debug(f"{operation} started")
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                status = getattr(e, 'status_code', 500)
                report = log.warning if status < 500 else log.error
                report(f"{operation} failed", error=e, status=status, duration_ms=elapsed_ms(start))
                raise
            log.info(f"{operation} completed", duration_ms=elapsed_ms(start))
            return result

        return wrapper

    return decorator
