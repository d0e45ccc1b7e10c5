"""
Security gateway - the single entry point route handlers use.

Orchestrates request validation, per-policy rate limiting, CSRF checks and the
response header policy. Construct one per process with ``create_security_gateway``
(or ``SecurityGateway(settings)``) and pass it to whatever serves requests.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import status
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..config import Settings, get_settings
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .audit_log import SecurityEvent, SecurityEventType, Severity, log_security_event
from .csrf import CSRFGuard, derive_session_id
from .ip_block_list import BlockEntry
from .policies import SecurityDecision, build_default_policies
from .rate_limiter import RateLimiter, get_client_ip, now_ms
from .request_validator import RequestValidator, ValidationResult
from .security_headers import SecurityHeaderPolicy


@dataclass
class ProtectionResult:
    """Outcome of ``protect_route``. ``response`` is set whenever ``success`` is False."""
    success: bool
    response: Optional[Response] = None
    error: Optional[str] = None
    decision: Optional[SecurityDecision] = None


def format_reset_time(reset_time: int) -> str:
    """Epoch milliseconds as an ISO-8601 UTC timestamp."""
    moment = datetime.fromtimestamp(reset_time / 1000, tz=timezone.utc)
    return moment.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class SecurityGateway:
    """Owns one RateLimiter per named policy, a CSRFGuard and the header policy."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Callable[[], int]] = None):
        self.settings = settings or get_settings()
        self.clock = clock or now_ms
        self.logger = get_logger(__name__, 'security_gateway')
        self.metrics = get_metrics_collector()

        self.policies = build_default_policies(self.settings.rate_limit)
        self.rate_limiters: Dict[str, RateLimiter] = {
            name: RateLimiter(policy, self.settings.rate_limit, clock=self.clock)
            for name, policy in self.policies.items()
        }
        self.csrf = CSRFGuard(
            self.settings.csrf,
            secure_cookie=not self.settings.is_development(),
            clock=self.clock,
        )
        self.header_policy = SecurityHeaderPolicy(self.settings.headers)
        self.validator = RequestValidator(self.settings.request_validation)

        self.logger.info(
            "Security gateway initialized",
            operation="init",
            environment=self.settings.environment.value,
            policies=list(self.policies)
        )

    @property
    def is_development(self) -> bool:
        return self.settings.is_development()

    def get_rate_limiter(self, policy_name: str) -> RateLimiter:
        try:
            return self.rate_limiters[policy_name]
        except KeyError:
            raise KeyError(f"Rate limiter '{policy_name}' not found") from None

    # Individual checks

    def validate_request(self, request: Request) -> ValidationResult:
        return self.validator.validate_request(request, self.settings.get_allowed_origins())

    async def check_rate_limit(self, request: Request, policy_name: str = "global") -> SecurityDecision:
        return await self.get_rate_limiter(policy_name).check_limit(request)

    def generate_csrf_token(self, session_id: str) -> str:
        return self.csrf.generate_token(session_id)

    def validate_csrf_token(self, session_id: Optional[str], token: Optional[str]) -> bool:
        if not self.settings.csrf.enabled:
            return True
        return self.csrf.validate_token(session_id, token)

    def get_csrf_token_from_request(self, request: Request) -> Optional[str]:
        return self.csrf.get_token_from_request(request)

    def create_csrf_cookie(self, token: str) -> str:
        return self.csrf.create_cookie(token)

    def client_ip(self, request: Request) -> str:
        return get_client_ip(request, self.settings.rate_limit.trusted_proxies)

    def session_id_for(self, request: Request) -> str:
        return derive_session_id(request, self.settings.rate_limit.trusted_proxies)

    def rate_limit_headers(self, policy_name: str, decision: SecurityDecision,
                           now: Optional[int] = None) -> Dict[str, str]:
        """X-RateLimit-* headers for a decision; Retry-After only on denial."""
        now = self.clock() if now is None else now
        headers = {
            "X-RateLimit-Limit": str(self.policies[policy_name].max_requests),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": format_reset_time(decision.reset_time),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after_seconds(now))
        return headers

    # Route protection

    async def protect_route(self, request: Request, policy_name: str = "global",
                            require_csrf: bool = False,
                            session_id: Optional[str] = None) -> ProtectionResult:
        """
        Run validation, rate limiting and (optionally) CSRF for a request.

        Any unexpected failure is answered with a 500 rather than letting the
        request through.
        """
        start_time = time.time()
        try:
            return await self._protect(request, policy_name, require_csrf, session_id)
        except Exception as e:
            self.logger.exception(
                f"Security protection error: {e}",
                operation="protect_route",
                policy=policy_name,
                path=request.url.path
            )
            return ProtectionResult(
                success=False,
                response=self.create_secure_response(
                    {"error": "Internal security error"},
                    status=status.HTTP_500_INTERNAL_SERVER_ERROR
                ),
                error=str(e) or e.__class__.__name__,
            )
        finally:
            self.metrics.observe_gateway_duration(time.time() - start_time)

    async def _protect(self, request: Request, policy_name: str, require_csrf: bool,
                       session_id: Optional[str]) -> ProtectionResult:
        # Unknown policies fail here, inside the error boundary
        limiter = self.get_rate_limiter(policy_name)

        validation = self.validate_request(request)
        if not validation.valid:
            self.metrics.record_validation_failure(policy_name)
            log_security_event(SecurityEvent(
                type=SecurityEventType.REQUEST_VALIDATION_FAILED,
                timestamp=self.clock(),
                ip=self.client_ip(request),
                details={'policy': policy_name, 'errors': validation.errors, 'path': request.url.path},
                severity=Severity.LOW,
            ))
            return ProtectionResult(
                success=False,
                response=self.create_secure_response(
                    {"error": "Request validation failed", "details": validation.errors},
                    status=status.HTTP_400_BAD_REQUEST
                ),
                error=", ".join(validation.errors),
            )

        decision = None
        if self.settings.rate_limit.enabled:
            decision = await limiter.check_limit(request)
            if not decision.allowed:
                return ProtectionResult(
                    success=False,
                    response=self.create_secure_response(
                        {"error": decision.error or "Rate limit exceeded"},
                        status=status.HTTP_429_TOO_MANY_REQUESTS,
                        headers=self.rate_limit_headers(policy_name, decision)
                    ),
                    error=decision.error,
                    decision=decision,
                )

        if require_csrf and self.settings.csrf.enabled:
            token = self.get_csrf_token_from_request(request)
            if not session_id or not token or not self.validate_csrf_token(session_id, token):
                self.metrics.record_csrf_failure(policy_name)
                log_security_event(SecurityEvent(
                    type=SecurityEventType.CSRF_TOKEN_INVALID,
                    timestamp=self.clock(),
                    ip=self.client_ip(request),
                    details={
                        'policy': policy_name,
                        'path': request.url.path,
                        'token_present': bool(token),
                        'session_present': bool(session_id),
                    },
                    severity=Severity.MEDIUM,
                ))
                return ProtectionResult(
                    success=False,
                    response=self.create_secure_response(
                        {"error": "Invalid or missing CSRF token"},
                        status=status.HTTP_403_FORBIDDEN
                    ),
                    error="CSRF validation failed",
                    decision=decision,
                )

        return ProtectionResult(success=True, decision=decision)

    # Responses

    def apply_security_headers(self, response: Response):
        self.header_policy.apply_security_headers(response.headers, self.is_development)

    def create_secure_response(self, body: Any, status: int = 200,
                               headers: Optional[Dict[str, str]] = None,
                               set_csrf_cookie: bool = False,
                               session_id: Optional[str] = None) -> JSONResponse:
        """JSON response carrying the security headers and optionally a fresh CSRF cookie."""
        response = JSONResponse(content=body, status_code=status, headers=headers)
        self.apply_security_headers(response)

        if set_csrf_cookie and session_id:
            token = self.generate_csrf_token(session_id)
            response.headers.append("Set-Cookie", self.create_csrf_cookie(token))

        return response

    # Administration

    def get_audit_logs(self) -> List[Dict[str, Any]]:
        """Audit entries grouped by policy: ``[{type, logs}]``."""
        return [
            {"type": name, "logs": limiter.get_audit_logs()}
            for name, limiter in self.rate_limiters.items()
        ]

    def get_blocked_ips(self) -> Dict[str, Dict[str, BlockEntry]]:
        return {name: limiter.get_blocked_ips() for name, limiter in self.rate_limiters.items()}

    def clear_blocked_ips(self) -> int:
        cleared = sum(limiter.clear_blocked_ips() for limiter in self.rate_limiters.values())
        self.logger.warning(f"Cleared {cleared} IP blocks", operation="clear_blocked_ips")
        return cleared

    def clear_rate_limits(self) -> int:
        cleared = sum(limiter.clear_counters() for limiter in self.rate_limiters.values())
        self.logger.warning(f"Cleared {cleared} rate limit windows", operation="clear_rate_limits")
        return cleared

    def clear_audit_logs(self):
        for limiter in self.rate_limiters.values():
            limiter.clear_audit_logs()
        self.logger.info("Cleared security audit logs", operation="clear_audit_logs")

    def cleanup(self) -> Dict[str, Any]:
        """Sweep expired windows, blocks and CSRF tokens across all policies."""
        now = self.clock()
        removed = {name: limiter.cleanup(now) for name, limiter in self.rate_limiters.items()}
        removed["csrf_tokens"] = self.csrf.cleanup(now)

        for name, limiter in self.rate_limiters.items():
            self.metrics.get_gauge('security_active_windows', 'Open rate limit windows').set(
                len(limiter.store), policy=name
            )
            self.metrics.get_gauge('security_blocked_ips', 'Currently blocked IPs').set(
                len(limiter.block_list), policy=name
            )
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "policies": {name: limiter.get_stats() for name, limiter in self.rate_limiters.items()},
            "csrf_tokens": len(self.csrf),
            "metrics": self.metrics.get_metrics_summary(),
        }

    def health(self) -> Dict[str, Any]:
        blocked = sum(len(limiter.block_list) for limiter in self.rate_limiters.values())
        return {
            "status": "healthy",
            "environment": self.settings.environment.value,
            "rate_limiting": self.settings.rate_limit.enabled,
            "csrf_protection": self.settings.csrf.enabled,
            "policies": {
                name: {"window_ms": policy.window_ms, "max_requests": policy.max_requests}
                for name, policy in self.policies.items()
            },
            "active_windows": sum(len(limiter.store) for limiter in self.rate_limiters.values()),
            "blocked_ips": blocked,
            "timestamp": format_reset_time(self.clock()),
        }


def create_security_gateway(settings: Optional[Settings] = None,
                            clock: Optional[Callable[[], int]] = None) -> SecurityGateway:
    """Build the process-wide gateway."""
    return SecurityGateway(settings=settings, clock=clock)
