"""
Lead API - Security Admin Router

Read-only views of the security layer plus maintenance actions. Requests to
this router fall under the strict ``auth`` rate limit policy.
"""
import logging

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import ValidationError

from ..dependencies import get_security_gateway
from ...shared.schemas import AdminAction, AdminActionRequest, AdminQuery, AuditLogGroup
from ...shared.security import SecurityGateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/admin")
async def security_admin_query(
    action: str = Query(None, description="audit-logs, health or stats"),
    gateway: SecurityGateway = Depends(get_security_gateway)
):
    """Inspect audit logs, health or statistics of the security layer."""
    if action == AdminQuery.AUDIT_LOGS.value:
        groups = [
            AuditLogGroup(type=group["type"], logs=[entry.to_dict() for entry in group["logs"]])
            for group in gateway.get_audit_logs()
        ]
        return gateway.create_secure_response([group.model_dump() for group in groups])

    if action == AdminQuery.HEALTH.value:
        health = gateway.health()
        health["security_features"] = {
            "rate_limiting": "enabled" if gateway.settings.rate_limit.enabled else "disabled",
            "csrf_protection": "enabled" if gateway.settings.csrf.enabled else "disabled",
            "security_headers": "enabled",
            "request_validation": "enabled",
        }
        return gateway.create_secure_response(health)

    if action == AdminQuery.STATS.value:
        return gateway.create_secure_response(gateway.get_stats())

    return gateway.create_secure_response(
        {"error": "Invalid action parameter"},
        status=status.HTTP_400_BAD_REQUEST
    )


@router.post("/admin")
async def security_admin_action(request: Request, gateway: SecurityGateway = Depends(get_security_gateway)):
    """Run a maintenance action: ``cleanup`` or ``clear-logs``."""
    payload = await gateway.validator.validate_json_payload(request)
    try:
        body = AdminActionRequest.model_validate(payload.data if payload.valid else None)
    except ValidationError:
        return gateway.create_secure_response(
            {"error": "Invalid action"},
            status=status.HTTP_400_BAD_REQUEST
        )

    if body.action == AdminAction.CLEANUP.value:
        removed = gateway.cleanup()
        logger.info("Security data cleanup requested", extra={"removed": removed})
        return gateway.create_secure_response({
            "message": "Security data cleanup completed",
            "removed": removed
        })

    if body.action == AdminAction.CLEAR_LOGS.value:
        gateway.clear_audit_logs()
        return gateway.create_secure_response({"message": "Audit logs cleared"})

    return gateway.create_secure_response(
        {"error": "Invalid action"},
        status=status.HTTP_400_BAD_REQUEST
    )
