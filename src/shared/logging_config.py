"""
Logging configuration for the marketing site API.

Provides structured logging with correlation IDs, centralized configuration,
and multiple output formats for different environments.
"""

import logging
import logging.config
import json
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from uuid import uuid4
import traceback
from contextvars import ContextVar
from pathlib import Path

from .config import Settings, get_settings


# Context variables for correlation tracking
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_RECORD_KEYS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


class CorrelationFilter(logging.Filter):
    """Add correlation IDs and context to log records."""

    def filter(self, record):
        """Add correlation context to log record."""
        record.correlation_id = correlation_id.get() or 'unknown'
        record.request_id = request_id.get() or 'no-request'
        record.component = getattr(record, 'component', 'unknown')
        record.operation = getattr(record, 'operation', 'unknown')
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, include_extra=True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
            'request_id': getattr(record, 'request_id', 'no-request'),
            'component': getattr(record, 'component', 'unknown'),
            'operation': getattr(record, 'operation', 'unknown'),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in log_entry or key in _RESERVED_RECORD_KEYS or key.startswith('_'):
                    continue
                try:
                    json.dumps(value)
                    log_entry[key] = value
                except (TypeError, ValueError):
                    log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        """Format log record with colors."""
        color = self.COLORS.get(record.levelname, '')
        formatted = super().format(record)
        correlation_info = f"[{getattr(record, 'correlation_id', 'unknown')[:8]}]"
        operation_info = f"[{getattr(record, 'operation', 'unknown')}]"
        return f"{color}{formatted}{self.RESET} {correlation_info} {operation_info}"


class SiteLogger:
    """Logger wrapper with component tagging and structured keyword fields."""

    def __init__(self, name: str, component: str = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.split('.')[-1]

    def _log(self, log_level: int, message: str, operation: str = None, **kwargs):
        """Internal logging method with context."""
        extra = {
            'component': self.component,
            'operation': operation or 'unknown',
            **kwargs
        }
        self.logger.log(log_level, message, extra=extra)

    def debug(self, message: str, operation: str = None, **kwargs):
        """Log debug message."""
        self._log(logging.DEBUG, message, operation, **kwargs)

    def info(self, message: str, operation: str = None, **kwargs):
        """Log info message."""
        self._log(logging.INFO, message, operation, **kwargs)

    def warning(self, message: str, operation: str = None, **kwargs):
        """Log warning message."""
        self._log(logging.WARNING, message, operation, **kwargs)

    def error(self, message: str, operation: str = None, **kwargs):
        """Log error message."""
        self._log(logging.ERROR, message, operation, **kwargs)

    def critical(self, message: str, operation: str = None, **kwargs):
        """Log critical message."""
        self._log(logging.CRITICAL, message, operation, **kwargs)

    def exception(self, message: str, operation: str = None, **kwargs):
        """Log exception with traceback."""
        extra = {
            'component': self.component,
            'operation': operation or 'exception',
            **kwargs
        }
        self.logger.exception(message, extra=extra)


class LoggingConfig:
    """Centralized logging configuration."""

    DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    COMPONENT_LOGGERS = ['src.shared', 'src.lead_api']

    # Framework loggers that would otherwise drown the security events
    THIRD_PARTY_LOGGERS = {
        'uvicorn': logging.WARNING,
        'uvicorn.access': logging.WARNING,
        'fastapi': logging.WARNING,
        'httpx': logging.WARNING,
    }

    @classmethod
    def setup_logging(
        cls,
        level: str = 'INFO',
        format_type: str = 'colored',
        log_file: Optional[str] = None
    ):
        """
        Install the configuration built by ``get_config_dict``.

        Args:
            level: Logging level name
            format_type: 'json', 'colored', or 'standard'
            log_file: Optional log file path; files always get JSON lines
        """
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.config.dictConfig(cls.get_config_dict(level, format_type, log_file))

        SiteLogger(__name__, 'logging_config').info(
            "Logging system initialized",
            operation="setup_logging",
            log_level=level,
            format_type=format_type,
            log_file=log_file
        )

    @classmethod
    def get_config_dict(
        cls,
        level: str = 'INFO',
        format_type: str = 'json',
        log_file: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Get logging configuration as dictionary for dictConfig.

        The same dictionary is handed to uvicorn by ``run_server``.
        """
        config = {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'correlation': {
                    '()': CorrelationFilter,
                }
            },
            'formatters': {
                'json': {
                    '()': JSONFormatter,
                    'include_extra': True
                },
                'colored': {
                    '()': ColoredFormatter,
                    'fmt': cls.DEFAULT_FORMAT
                },
                'standard': {
                    'format': cls.DEFAULT_FORMAT
                }
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'level': level,
                    'formatter': format_type,
                    'filters': ['correlation'],
                    'stream': 'ext://sys.stdout'
                }
            },
            'loggers': {
                **{name: {'level': 'INFO'} for name in cls.COMPONENT_LOGGERS},
                **{
                    name: {'level': logging.getLevelName(lvl)}
                    for name, lvl in cls.THIRD_PARTY_LOGGERS.items()
                },
            },
            'root': {
                'level': level,
                'handlers': ['console']
            }
        }

        if log_file:
            config['handlers']['file'] = {
                'class': 'logging.FileHandler',
                'level': level,
                'formatter': 'json',
                'filters': ['correlation'],
                'filename': log_file
            }
            config['root']['handlers'].append('file')

        return config


class CorrelationContext:
    """Binds a correlation id, and optionally a request id, for the enclosed block."""

    def __init__(self, correlation_id_value: str = None, request_id_value: str = None):
        self.correlation_id_value = correlation_id_value or str(uuid4())
        self.request_id_value = request_id_value
        self.correlation_token = None
        self.request_token = None

    def __enter__(self):
        self.correlation_token = correlation_id.set(self.correlation_id_value)
        if self.request_id_value:
            self.request_token = request_id.set(self.request_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.correlation_token:
            correlation_id.reset(self.correlation_token)
        if self.request_token:
            request_id.reset(self.request_token)


def get_logger(name: str, component: str = None) -> SiteLogger:
    """Get a structured logger instance."""
    return SiteLogger(name, component)


def initialize_logging(settings: Optional[Settings] = None):
    """Configure logging from the monitoring settings. Production always logs JSON."""
    settings = settings or get_settings()
    monitoring = settings.monitoring

    LoggingConfig.setup_logging(
        level=monitoring.log_level.value,
        format_type='json' if settings.is_production() else monitoring.log_format,
        log_file=monitoring.log_file or None
    )


# Auto-initialize if not in test environment
if not os.getenv('TESTING'):
    initialize_logging()
