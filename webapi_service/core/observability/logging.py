"""JSON structured logging with mandatory fields and secret redaction."""
import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

from webapi_service.core.config import settings

_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_RESERVED = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and credential redaction."""

    def __init__(self):
        super().__init__()
        # Credential patterns
        self.bearer_pattern = re.compile(r'(?i)\b(bearer)\s+([A-Za-z0-9\-._~+/]+=*)')
        self.jwt_pattern = re.compile(r'\b(eyJ[A-Za-z0-9_-]+)\.([A-Za-z0-9_-]+)\.([A-Za-z0-9_-]*)')
        self.secret_pattern = re.compile(
            r'(?i)\b(api_?secret|client_?secret|secret|password)(\s*[=:]\s*)([^\s,;]+)'
        )

    def _redact(self, text: str) -> str:
        """Redact credentials from text."""
        if not isinstance(text, str):
            return text

        text = self.bearer_pattern.sub(self._mask_bearer, text)
        text = self.jwt_pattern.sub(self._mask_jwt, text)
        text = self.secret_pattern.sub(self._mask_secret, text)
        return text

    def _mask_bearer(self, match) -> str:
        """Mask bearer credential entirely, keep the scheme."""
        return f"{match.group(1)} ***"

    def _mask_jwt(self, match) -> str:
        """Mask JWT: keep the first 6 chars of the header segment."""
        return match.group(1)[:6] + "***"

    def _mask_secret(self, match) -> str:
        return f"{match.group(1)}{match.group(2)}***"

    def format(self, record):
        """Format log record as JSON with mandatory fields and redaction."""
        message = self._redact(record.getMessage())

        log_entry = {
            'trace_id': _trace_id.get() or 'unknown',
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': message,
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

        request_id = _request_id.get()
        if request_id:
            log_entry['request_id'] = request_id

        if record.exc_info:
            log_entry['exc_info'] = self._redact(self.formatException(record.exc_info))

        for key, value in record.__dict__.items():
            if key in _RESERVED or key in log_entry:
                continue
            if isinstance(value, str):
                value = self._redact(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]):
    """Set trace ID for the current context; returns a reset token."""
    return _trace_id.set(trace_id)


def set_request_id(request_id: Optional[str]):
    """Set request ID for the current context; returns a reset token."""
    return _request_id.set(request_id)


def reset_request_id(token) -> None:
    _request_id.reset(token)


def reset_trace_id(token) -> None:
    _trace_id.reset(token)


def init_logging(level: Optional[str] = None) -> None:
    """Initialize JSON logging on the root logger."""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for handler in logger.handlers[:]:
        if getattr(handler, "_webapi_json", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler._webapi_json = True  # type: ignore[attr-defined]
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger("webapi_service")
