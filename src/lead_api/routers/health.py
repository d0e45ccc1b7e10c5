"""
Lead API - Health Check Router
"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status

from ..dependencies import get_security_gateway
from ...shared.schemas import HealthCheckResponse
from ...shared.security import SecurityGateway

logger = logging.getLogger(__name__)

router = APIRouter()

_started_at = time.time()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(gateway: SecurityGateway = Depends(get_security_gateway)):
    """
    Basic liveness check.

    Returns:
        Service status and uptime
    """
    try:
        security = gateway.health()
        health = HealthCheckResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version=gateway.settings.app_version,
            environment=gateway.settings.environment.value,
            services={
                "api": "operational",
                "security": security["status"],
            },
            uptime_seconds=round(time.time() - _started_at, 3),
        )
        return gateway.create_secure_response(health.model_dump(mode="json"))

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return gateway.create_secure_response(
            {
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": str(e)
            },
            status=status.HTTP_503_SERVICE_UNAVAILABLE
        )
