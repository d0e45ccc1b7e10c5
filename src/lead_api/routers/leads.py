"""
Lead API - Lead Capture Router

CSRF token issuance and the demo-request / contact forms. Submissions are
validated and acknowledged; delivery to CRM or email happens elsewhere.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError

from ..dependencies import get_security_gateway, get_session_id
from ...shared.schemas import CSRFTokenResponse, LeadAcknowledgement, LeadSubmission
from ...shared.security import SecurityGateway

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/csrf-token", response_model=CSRFTokenResponse)
async def issue_csrf_token(
    gateway: SecurityGateway = Depends(get_security_gateway),
    session_id: str = Depends(get_session_id)
):
    """Issue a CSRF token for this visitor, in the body and as a cookie."""
    token = gateway.generate_csrf_token(session_id)
    body = CSRFTokenResponse(
        csrf_token=token,
        header_name=gateway.settings.csrf.header_name,
        expires_in=gateway.settings.csrf.token_ttl_seconds,
    )
    response = gateway.create_secure_response(body.model_dump(mode="json"))
    response.headers.append("Set-Cookie", gateway.create_csrf_cookie(token))
    return response


async def _accept_lead(request: Request, gateway: SecurityGateway, source: str):
    payload = await gateway.validator.validate_json_payload(request)
    if not payload.valid or not isinstance(payload.data, dict):
        return gateway.create_secure_response(
            {"ok": False, "error": "Invalid JSON payload"},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        lead = LeadSubmission.model_validate(payload.data)
    except ValidationError as e:
        details = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
        return gateway.create_secure_response(
            {"ok": False, "error": "Name and a valid email are required", "details": details},
            status=status.HTTP_400_BAD_REQUEST
        )

    logger.info(
        "Lead submission accepted",
        extra={
            "source": source,
            "has_org": bool(lead.org),
            "wants_demo": lead.wants_demo
        }
    )

    ack = LeadAcknowledgement(received_at=datetime.now(timezone.utc), wants_demo=lead.wants_demo)
    return gateway.create_secure_response(ack.model_dump(mode="json"))


@router.post("/request-demo", response_model=LeadAcknowledgement)
async def request_demo(request: Request, gateway: SecurityGateway = Depends(get_security_gateway)):
    """Demo request form."""
    return await _accept_lead(request, gateway, "request_demo")


@router.post("/contact", response_model=LeadAcknowledgement)
async def contact(request: Request, gateway: SecurityGateway = Depends(get_security_gateway)):
    """Contact form."""
    return await _accept_lead(request, gateway, "contact")
