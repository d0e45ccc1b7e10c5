"""
Lead API - Dependencies

Dependency providers for route handlers. The SecurityGateway lives on
``app.state`` so that each app instance owns exactly one.
"""
from fastapi import Depends, Request

from ..shared.security import SecurityGateway


def get_security_gateway(request: Request) -> SecurityGateway:
    """The gateway created by the app factory."""
    return request.app.state.security_gateway


def get_session_id(request: Request, gateway: SecurityGateway = Depends(get_security_gateway)) -> str:
    """
    Session identifier for CSRF binding.

    Reuses the value derived by the security middleware when available.
    """
    session_id = getattr(request.state, "session_id", None)
    return session_id or gateway.session_id_for(request)
