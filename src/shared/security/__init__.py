"""
Security module for the marketing site API.

Provides per-policy rate limiting with abuse escalation, CSRF protection,
security response headers, structural request validation and the
SecurityGateway that composes them.
"""

from .rate_limit_store import RateLimitEntry, RateLimitStore

from .ip_block_list import BlockEntry, IPBlockList

from .audit_log import (
    AuditLog,
    SecurityAuditLogEntry,
    SecurityEvent,
    SecurityEventType,
    Severity,
    log_security_event
)

from .policies import (
    RateLimitPolicy,
    SecurityDecision,
    build_default_policies
)

from .abuse_detector import (
    AbuseAction,
    AbuseDetector,
    AbuseRule,
    AbuseVerdict
)

from .rate_limiter import (
    RateLimiter,
    get_client_ip,
    start_rate_limiter_cleanup_task
)

from .csrf import CSRFGuard, derive_session_id

from .security_headers import SecurityHeaderPolicy

from .request_validator import RequestValidator, ValidationResult

from .gateway import (
    ProtectionResult,
    SecurityGateway,
    create_security_gateway
)

__all__ = [
    # Storage
    'RateLimitEntry',
    'RateLimitStore',
    'BlockEntry',
    'IPBlockList',

    # Audit
    'AuditLog',
    'SecurityAuditLogEntry',
    'SecurityEvent',
    'SecurityEventType',
    'Severity',
    'log_security_event',

    # Rate Limiting
    'RateLimitPolicy',
    'SecurityDecision',
    'build_default_policies',
    'AbuseAction',
    'AbuseDetector',
    'AbuseRule',
    'AbuseVerdict',
    'RateLimiter',
    'get_client_ip',
    'start_rate_limiter_cleanup_task',

    # Request protection
    'CSRFGuard',
    'derive_session_id',
    'SecurityHeaderPolicy',
    'RequestValidator',
    'ValidationResult',

    # Gateway
    'ProtectionResult',
    'SecurityGateway',
    'create_security_gateway'
]
