"""
Lead API - Marketing Site Server

FastAPI application serving the marketing site's lead capture forms and the
security administration endpoints. Every request is protected by the
SecurityGateway from ``shared.security``.
"""

from .app import app, create_app, run_server

__all__ = [
    'app',
    'create_app',
    'run_server'
]
