"""
Structural request checks run before rate limiting.

These are cheap filters, not a bot defence. Each check is independent; the
gateway combines them through ``validate_request``.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional
from urllib.parse import urlsplit

from starlette.requests import Request

from ..config import RequestValidationSettings


MUTATING_METHODS = {"POST", "PUT", "PATCH"}

SUSPICIOUS_USER_AGENTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"bot", r"crawler", r"scraper", r"curl", r"wget", r"python", r"scanner")
]

LEGITIMATE_BOTS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"googlebot",
        r"bingbot",
        r"slackbot",
        r"facebookexternalhit",
        r"twitterbot",
        r"linkedinbot",
    )
]


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class PayloadResult:
    valid: bool
    data: Any = None
    error: Optional[str] = None


def _origin_of(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def _origin_allowed(origin: str, allowed_origins: Iterable[str]) -> bool:
    host = urlsplit(origin).hostname or ""
    for allowed in allowed_origins:
        if allowed == "*" or allowed == origin:
            return True
        # ".example.com" matches example.com and any subdomain
        if allowed.startswith(".") and (host == allowed[1:] or host.endswith(allowed)):
            return True
    return False


class RequestValidator:
    """Stateless request shape checks."""

    def __init__(self, settings: RequestValidationSettings = None):
        self.settings = settings or RequestValidationSettings()

    @staticmethod
    def validate_origin(request: Request, allowed_origins: Iterable[str]) -> bool:
        origin = request.headers.get("origin")
        if not origin:
            referer = request.headers.get("referer")
            origin = _origin_of(referer) if referer else None
        if not origin:
            # Direct navigation and same-origin requests carry neither header
            return True
        return _origin_allowed(origin, allowed_origins)

    @staticmethod
    def validate_user_agent(request: Request) -> bool:
        user_agent = request.headers.get("user-agent", "").strip()
        if not user_agent:
            return False

        if any(pattern.search(user_agent) for pattern in LEGITIMATE_BOTS):
            return True

        return not any(pattern.search(user_agent) for pattern in SUSPICIOUS_USER_AGENTS)

    @staticmethod
    def validate_content_type(request: Request, allowed_types: Iterable[str]) -> bool:
        content_type = request.headers.get("content-type")
        if not content_type:
            return False
        content_type = content_type.lower()
        return any(allowed.lower() in content_type for allowed in allowed_types)

    @staticmethod
    def validate_request_size(request: Request, max_bytes: int) -> bool:
        content_length = request.headers.get("content-length")
        if content_length is None:
            return True
        try:
            size = int(content_length.strip())
        except ValueError:
            return False
        return 0 <= size <= max_bytes

    @staticmethod
    async def validate_json_payload(request: Request) -> PayloadResult:
        """Parse the body as JSON. An empty body is valid with ``data=None``."""
        body = await request.body()
        if not body.strip():
            return PayloadResult(valid=True, data=None)
        try:
            return PayloadResult(valid=True, data=json.loads(body))
        except (ValueError, UnicodeDecodeError) as e:
            return PayloadResult(valid=False, error=str(e) or "Invalid JSON")

    def validate_request(self, request: Request, allowed_origins: Optional[Iterable[str]] = None) -> ValidationResult:
        """Run every applicable check and collect the failures."""
        errors = []
        origins = list(allowed_origins) if allowed_origins is not None else self.settings.allowed_origins

        if not self.validate_origin(request, origins):
            errors.append("Invalid origin")

        if not self.validate_user_agent(request):
            errors.append("Suspicious user agent detected")

        if request.method.upper() in MUTATING_METHODS:
            if not self.validate_content_type(request, self.settings.allowed_content_types):
                errors.append("Invalid content type")

        if not self.validate_request_size(request, self.settings.max_request_bytes):
            errors.append("Request too large")

        return ValidationResult(valid=not errors, errors=errors)
