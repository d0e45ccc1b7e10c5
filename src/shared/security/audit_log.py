"""
Security audit trail and event reporting.

The audit log is a bounded ring buffer per rate limiter: once full, the
oldest entries are evicted. Security events are not stored; they are emitted
as structured log records for whatever monitoring ingests the logs.
"""

import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from ..logging_config import get_logger


DEFAULT_AUDIT_LOG_SIZE = 1000


class SecurityEventType(str, Enum):
    """Types of security events."""
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CSRF_TOKEN_INVALID = "csrf_token_invalid"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
    BLOCKED_IP = "blocked_ip"
    SECURITY_HEADERS_MISSING = "security_headers_missing"
    REQUEST_VALIDATION_FAILED = "request_validation_failed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityAuditLogEntry:
    """Immutable record of a security decision."""
    timestamp: int
    ip: str
    user_agent: str
    endpoint: str
    action: str
    reason: str
    blocked: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['time'] = datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc).isoformat()
        return data


@dataclass
class SecurityEvent:
    """A security-relevant occurrence reported to monitoring."""
    type: SecurityEventType
    timestamp: int
    ip: str
    details: Dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.MEDIUM


class AuditLog:
    """Append-only ring buffer of audit entries."""

    def __init__(self, max_entries: int = DEFAULT_AUDIT_LOG_SIZE):
        self.max_entries = max_entries
        self._entries: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def append(self, entry: SecurityAuditLogEntry):
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[SecurityAuditLogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_event_logger = get_logger(__name__, 'security_events')


def log_security_event(event: SecurityEvent):
    """Emit a security event as a structured warning."""
    _event_logger.warning(
        f"Security event [{event.severity.value.upper()}]: {event.type.value}",
        operation="security_event",
        event_type=event.type.value,
        severity=event.severity.value,
        client_ip=event.ip,
        event_time=datetime.fromtimestamp(event.timestamp / 1000, tz=timezone.utc).isoformat(),
        details=event.details
    )
