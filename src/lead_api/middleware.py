"""
Lead API - Middleware Components

Runs every request through the SecurityGateway and logs requests with a
request ID.
"""
import time
import uuid
import logging
from typing import Callable, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..shared.logging_config import CorrelationContext
from ..shared.security import SecurityGateway

logger = logging.getLogger(__name__)

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def is_static_asset(path: str) -> bool:
    """Framework assets, favicons and anything that looks like a file."""
    if path.startswith("/_next/") or path.startswith("/favicon"):
        return True
    return "." in path.rsplit("/", 1)[-1]


def resolve_policy(path: str, method: str) -> Tuple[str, bool]:
    """
    Map a request to ``(policy_name, require_csrf)``.

    Only API routes get the stricter policies; lead forms additionally need a
    CSRF token on submission.
    """
    if not path.startswith("/api/"):
        return "global", False

    if "/auth/" in path or "/login" in path or path.startswith("/api/security/"):
        return "auth", False

    if "/request-demo" in path or "/contact" in path:
        return "contact", method.upper() in MUTATING_METHODS

    return "api", False


class SecurityGatewayMiddleware(BaseHTTPMiddleware):
    """
    Applies route protection before the request reaches a handler.

    Denials are returned as built by the gateway. Allowed responses get the
    security headers plus the rate limit headers of the decision that let the
    request through.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        gateway: SecurityGateway = request.app.state.security_gateway
        path = request.url.path

        if request.method == "OPTIONS" or is_static_asset(path):
            response = await call_next(request)
            gateway.apply_security_headers(response)
            return response

        policy_name, require_csrf = resolve_policy(path, request.method)
        session_id = gateway.session_id_for(request)

        protection = await gateway.protect_route(
            request,
            policy_name,
            require_csrf=require_csrf,
            session_id=session_id
        )
        if not protection.success:
            return protection.response

        request.state.security_policy = policy_name
        request.state.session_id = session_id

        response = await call_next(request)

        gateway.apply_security_headers(response)
        if protection.decision is not None:
            for name, value in gateway.rate_limit_headers(policy_name, protection.decision).items():
                response.headers[name] = value

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Logging middleware for request/response logging.
    Provides structured logging with request IDs and timings.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        gateway: SecurityGateway = request.app.state.security_gateway
        start_time = time.time()

        with CorrelationContext(request_id_value=request_id):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "Request failed",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "client_ip": gateway.client_ip(request),
                        "duration_ms": round((time.time() - start_time) * 1000, 2),
                        "error": str(e)
                    },
                    exc_info=True
                )
                raise

            logger.info(
                "Request completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": gateway.client_ip(request),
                    "status_code": response.status_code,
                    "duration_ms": round((time.time() - start_time) * 1000, 2)
                }
            )

        response.headers["X-Request-ID"] = request_id
        return response
