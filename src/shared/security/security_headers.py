"""
Hardening headers stamped onto every outgoing response.
"""

import time
from typing import Dict, List, MutableMapping

from starlette.responses import Response

from ..config import HeaderSettings
from .audit_log import SecurityEvent, SecurityEventType, Severity


GOOGLE_ANALYTICS = [
    "https://www.google-analytics.com",
    "https://ssl.google-analytics.com",
]

CSP_DIRECTIVES: Dict[str, List[str]] = {
    "default-src": ["'self'"],
    "script-src": [
        "'self'",
        "'unsafe-inline'",
        "'unsafe-eval'",
        "https://www.googletagmanager.com",
        *GOOGLE_ANALYTICS,
        "https://tagmanager.google.com",
    ],
    "style-src": ["'self'", "'unsafe-inline'", "https://fonts.googleapis.com"],
    "font-src": ["'self'", "https://fonts.gstatic.com", "data:"],
    "img-src": ["'self'", "data:", "https:", *GOOGLE_ANALYTICS],
    "connect-src": [
        "'self'",
        "https://api.resend.com",
        *GOOGLE_ANALYTICS,
        "https://analytics.google.com",
    ],
    "frame-src": ["'none'"],
    "object-src": ["'none'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
    "upgrade-insecure-requests": [],
}

# Hot reload and the local dev server
DEVELOPMENT_CSP_ADDITIONS: Dict[str, List[str]] = {
    "connect-src": ["ws:", "wss:"],
    "script-src": ["http://localhost:*"],
}

PERMISSIONS_POLICY = ", ".join([
    "camera=()",
    "microphone=()",
    "geolocation=()",
    "payment=()",
    "usb=()",
    "magnetometer=()",
    "accelerometer=()",
    "gyroscope=()",
])

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

REQUIRED_HEADERS = (
    "Content-Security-Policy",
    "X-Content-Type-Options",
    "X-Frame-Options",
    "X-XSS-Protection",
)


def build_csp(is_development: bool = False) -> str:
    directives = {name: list(sources) for name, sources in CSP_DIRECTIVES.items()}
    if is_development:
        for name, sources in DEVELOPMENT_CSP_ADDITIONS.items():
            directives[name].extend(sources)

    return "; ".join(
        f"{name} {' '.join(sources)}" if sources else name
        for name, sources in directives.items()
    )


class SecurityHeaderPolicy:
    """Builds the response header set. Stateless apart from its toggles."""

    def __init__(self, settings: HeaderSettings = None):
        self.settings = settings or HeaderSettings()

    def get_security_headers(self, is_development: bool = False) -> Dict[str, str]:
        headers: Dict[str, str] = {}

        if self.settings.content_security_policy:
            headers["Content-Security-Policy"] = build_csp(is_development)

        if self.settings.hsts and not is_development:
            headers["Strict-Transport-Security"] = HSTS_VALUE

        if self.settings.no_sniff:
            headers["X-Content-Type-Options"] = "nosniff"

        if self.settings.frame_options:
            headers["X-Frame-Options"] = "DENY"

        if self.settings.xss_protection:
            headers["X-XSS-Protection"] = "1; mode=block"

        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        headers["Permissions-Policy"] = PERMISSIONS_POLICY
        return headers

    def apply_security_headers(self, headers: MutableMapping[str, str], is_development: bool = False):
        """Set every policy header on ``headers``, overwriting existing values."""
        for name, value in self.get_security_headers(is_development).items():
            if value:
                headers[name] = value

    def validate_security_headers(self, response: Response) -> List[SecurityEvent]:
        """One SECURITY_HEADERS_MISSING event per required header absent from ``response``."""
        now = int(time.time() * 1000)
        return [
            SecurityEvent(
                type=SecurityEventType.SECURITY_HEADERS_MISSING,
                timestamp=now,
                ip="unknown",
                details={"missing_header": name},
                severity=Severity.MEDIUM,
            )
            for name in REQUIRED_HEADERS
            if name not in response.headers
        ]
