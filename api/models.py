"""
Pydantic request/response schemas for the Verification API
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


# ============================================
# REQUESTS
# ============================================

class TokenRequest(BaseModel):
    """Webhook body: the signed SDK result."""
    token: str = Field(
        ...,
        min_length=1,
        description="Signed enrollment payload (compact JWS)"
    )

    @field_validator('token')
    @classmethod
    def strip_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("JWS token is required")
        return v


class EnrollmentRequest(BaseModel):
    """Direct enrollment: a signed token, or already-decoded data."""
    token: Optional[str] = Field(default=None, description="Signed enrollment payload")
    data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Decoded enrollment data (accepted only when unsigned enrollment is enabled)"
    )


class AnalysisRequest(BaseModel):
    """A bare verification object to classify without persisting."""
    verification: Dict[str, Any] = Field(..., description="SDK verification object")


class QrGenerateRequest(BaseModel):
    customer_id: Optional[str] = Field(default=None, max_length=100)
    customer_name: Optional[str] = Field(default=None, max_length=200)
    journey_id: Optional[str] = Field(default=None, max_length=100)
    reference_id: Optional[str] = Field(default=None, max_length=200)
    expiry_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        le=1440,
        description="Token lifetime; defaults to qr_sessions.token_expiry_minutes"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QrInitRequest(BaseModel):
    token: str = Field(..., min_length=1, description="One-time token from the QR code")
    device_info: Optional[Dict[str, Any]] = Field(default=None)


class QrCompleteRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    status: Optional[str] = Field(default=None, description="'success' marks the session completed")
    verification_result: Optional[Dict[str, Any]] = Field(default=None)


# ============================================
# ENROLLMENT RESPONSE
# ============================================

class VerificationSummary(BaseModel):
    status: str = Field(..., description="approved, manual_review or rejected")
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    passed_checks: bool
    nfc_verified: bool = False
    passive_authentication: bool = False
    trace_summary: Optional[Dict[str, Any]] = None


class BackgroundCheckSummary(BaseModel):
    match: bool = False
    case_created: bool = False
    alert_created: bool = False
    case_data: Optional[Dict[str, Any]] = None


class AccountSummary(BaseModel):
    """Account outcome plus the identity fields read from the document."""
    account_id: Optional[str] = None
    account_created: bool = False
    aml_status: str = "pending"

    model_config = {"extra": "allow"}


class SourceSummary(BaseModel):
    sdk_type: Optional[str] = None
    sdk_version: Optional[str] = None
    device_model: Optional[str] = None
    device_platform: Optional[str] = None
    source_ip: Optional[str] = None


class EnrollmentData(BaseModel):
    verification: VerificationSummary
    background_check: BackgroundCheckSummary = Field(..., alias="backgroundCheck")
    account: AccountSummary
    source: SourceSummary

    model_config = {"populate_by_name": True}


class EnrollmentResponse(BaseModel):
    success: bool = True
    data: EnrollmentData
    message: str


# ============================================
# SUPPORTING RESPONSES
# ============================================

class DataResponse(BaseModel):
    """Generic success envelope."""
    success: bool = True
    data: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(..., description="connected, disconnected or unknown")
    version: str = Field(..., description="API version")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = Field(default=None)


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    success: bool = False
    error: ErrorDetail
