"""
Lead API - Debug Router

Development-only helpers for resetting the security layer while testing forms
locally. Every endpoint answers 403 outside development.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..dependencies import get_security_gateway
from ...shared.schemas import BlockedIPInfo
from ...shared.security import SecurityGateway
from ...shared.security.gateway import format_reset_time

logger = logging.getLogger(__name__)

router = APIRouter()


def _development_only(gateway: SecurityGateway) -> Optional[JSONResponse]:
    if gateway.settings.is_development():
        return None
    return gateway.create_secure_response(
        {"error": "This endpoint is only available in development mode"},
        status=status.HTTP_403_FORBIDDEN
    )


@router.get("/clear-blocks")
async def list_blocked_ips(gateway: SecurityGateway = Depends(get_security_gateway)):
    """Currently blocked IPs, per policy."""
    denied = _development_only(gateway)
    if denied is not None:
        return denied

    now = gateway.clock()
    blocked_ips = {
        policy: [
            BlockedIPInfo(
                ip=ip,
                unblock_time=format_reset_time(entry.unblock_time),
                remaining_ms=entry.remaining_ms(now),
                reason=entry.reason or None,
            ).model_dump()
            for ip, entry in blocks.items()
            if entry.unblock_time > now
        ]
        for policy, blocks in gateway.get_blocked_ips().items()
    }
    return gateway.create_secure_response({
        "blocked_ips": blocked_ips,
        "timestamp": datetime.now(timezone.utc).isoformat()
    })


@router.post("/clear-blocks")
async def clear_blocked_ips(gateway: SecurityGateway = Depends(get_security_gateway)):
    """Lift every IP block in every policy."""
    denied = _development_only(gateway)
    if denied is not None:
        return denied

    cleared = gateway.clear_blocked_ips()
    return gateway.create_secure_response({
        "success": True,
        "message": "All blocked IPs have been cleared",
        "cleared": cleared,
        "timestamp": datetime.now(timezone.utc).isoformat()
    })


@router.post("/clear-rate-limits")
async def clear_rate_limits(gateway: SecurityGateway = Depends(get_security_gateway)):
    """Reset every rate limit window in every policy."""
    denied = _development_only(gateway)
    if denied is not None:
        return denied

    cleared = gateway.clear_rate_limits()
    return gateway.create_secure_response({
        "success": True,
        "message": "Rate limits cleared (development only)",
        "cleared": cleared,
        "timestamp": datetime.now(timezone.utc).isoformat()
    })
