"""
Shared Schemas - Pydantic Models for Validation and Serialization
Request and response models for the marketing site API.

These schemas provide:
- Lead form validation
- Security admin request/response shapes
- API documentation via OpenAPI
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True, str_strip_whitespace=True)


# Lead schemas
class LeadSubmission(BaseSchema):
    """Demo request / contact form submission."""
    name: str = Field(..., min_length=1, max_length=200, description="Full name")
    email: EmailStr = Field(..., description="Contact email")
    org: Optional[str] = Field(None, max_length=200, description="Organization")
    whatsapp: Optional[str] = Field(None, max_length=40, description="WhatsApp number")
    message: Optional[str] = Field(None, max_length=5000, description="Free-form message")
    wants_demo: bool = Field(False, alias="wantsDemo", description="Wants a product demo")

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    @field_validator("whatsapp")
    @classmethod
    def validate_whatsapp(cls, v):
        if v and not all(c.isdigit() or c in "+-() " for c in v):
            raise ValueError("Phone number may only contain digits, spaces and +-()")
        return v or None


class LeadAcknowledgement(BaseSchema):
    """Response to an accepted lead submission."""
    ok: bool = True
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    wants_demo: bool = False


class CSRFTokenResponse(BaseSchema):
    """Freshly issued CSRF token."""
    csrf_token: str
    header_name: str
    expires_in: int = Field(..., description="Token lifetime in seconds")


# Security admin schemas
class AdminAction(str, Enum):
    """POST actions on the security admin endpoint."""
    CLEANUP = "cleanup"
    CLEAR_LOGS = "clear-logs"


class AdminQuery(str, Enum):
    """GET actions on the security admin endpoint."""
    AUDIT_LOGS = "audit-logs"
    HEALTH = "health"
    STATS = "stats"


class AdminActionRequest(BaseSchema):
    action: str = Field(..., description="Admin action to perform")


class AuditLogGroup(BaseSchema):
    """Audit entries of one rate limit policy."""
    type: str
    logs: List[Dict[str, Any]] = Field(default_factory=list)


class BlockedIPInfo(BaseSchema):
    ip: str
    unblock_time: str
    remaining_ms: int = Field(..., ge=0)
    reason: Optional[str] = None


# Health schemas
class HealthCheckResponse(BaseSchema):
    """Health check response."""
    status: str = Field(..., description="Overall system status")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = Field(..., description="API version")
    environment: str = Field(..., description="Deployment environment")
    services: Dict[str, str] = Field(default_factory=dict, description="Service status")
    uptime_seconds: float = Field(..., ge=0)
