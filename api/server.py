"""
FastAPI Verification API Server

Receives SDK verification results (webhook and direct enrollment), runs the
decisioning pipeline, and serves QR verification sessions.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import hmac
import os
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request, Security
from fastapi.security import APIKeyHeader

from api.models import (
    TokenRequest,
    EnrollmentRequest,
    AnalysisRequest,
    QrGenerateRequest,
    QrInitRequest,
    QrCompleteRequest,
    EnrollmentResponse,
    DataResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import DatabaseSessionProvider, init_db
from database.repositories import SqlQrSessionStore, SqlVerificationStore
from security_logger import get_security_logger
from verification.exceptions import MissingPayloadDataError
from verification.pipeline import VerificationPipeline
from verification.provider_client import ProviderClient
from verification.qr_sessions import QrSessionService

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_pipeline: Optional[VerificationPipeline] = None
_qr_service: Optional[QrSessionService] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ENROLLMENT_ERRORS = {
    400: {"model": ErrorResponse, "description": "Malformed token, missing data or refused signature"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if not hmac.compare_digest(api_key.encode("utf-8"), API_KEY.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_pipeline() -> VerificationPipeline:
    """Dependency to get the pipeline instance."""
    if _pipeline is None:
        raise HTTPException(
            status_code=503, detail="Pipeline not initialized. Service is starting up."
        )
    return _pipeline


def get_qr_service() -> QrSessionService:
    if _qr_service is None:
        raise HTTPException(
            status_code=503, detail="QR sessions not initialized. Service is starting up."
        )
    return _qr_service


def get_tenant_id(
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None),
    config: ConfigManager = Depends(get_config_instance),
) -> str:
    """Tenant from the X-Tenant-ID header, else the configured default."""
    tenant_id = x_tenant_id or config.api.default_tenant_id
    try:
        tenant_id = str(uuid.UUID(tenant_id))
    except ValueError:
        raise HTTPException(status_code=400, detail="X-Tenant-ID must be a UUID")

    get_security_logger().set_request_context(
        request_id=getattr(request.state, "request_id", None),
        tenant_id=tenant_id,
        source_ip=request.client.host if request.client else "",
    )
    return tenant_id


# Create FastAPI application
app = FastAPI(
    title="Verification Decisioning API",
    description="Decisions identity verification results from the SDK and opens review work items",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
def startup():
    """Load configuration, connect storage and wire the pipeline."""
    global _pipeline, _qr_service, _db_provider, _config, _startup_time

    try:
        _config = get_config(CONFIG_PATH)
        logging.basicConfig(level=_config.logging.level, format=_config.logging.format)
        logger.info(f"Configuration loaded from {_config.config_path}")

        security_logger = get_security_logger(
            log_dir=_config.logging.security_log_dir,
            enable_console=_config.logging.security_log_console,
        )
        _db_provider = init_db()
        provider = ProviderClient(_config.provider)

        _pipeline = VerificationPipeline.from_config(
            _config,
            SqlVerificationStore(_db_provider),
            provider=provider,
            security_logger=security_logger,
        )
        _qr_service = QrSessionService(
            SqlQrSessionStore(_db_provider),
            provider=provider,
            config=_config.qr_sessions,
            security_logger=security_logger,
        )
        _startup_time = datetime.now(timezone.utc)

        if _config.security.require_signature_verification and not _config.security.signing_key:
            logger.warning("Signature verification required but SDK_SIGNING_KEY is not set; "
                           "all tokens will be refused")
        logger.info("Verification API ready")

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise


@app.on_event("shutdown")
def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Verification API...")
    if _db_provider is not None:
        _db_provider.close()


# ============================================
# SDK VERIFICATION
# ============================================

@app.post(
    "/api/sdk-verification/enrollment-jws",
    response_model=EnrollmentResponse,
    responses=ENROLLMENT_ERRORS,
    summary="Process a signed SDK result",
    description="Webhook for SDK enrollment results. Business rejection is still a 200.",
)
def enrollment_jws(
    request: TokenRequest,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    result = pipeline.process_token(request.token, tenant_id)
    return pipeline.build_response(result)


app.add_api_route(
    "/api/sdk-verification/jws",
    enrollment_jws,
    methods=["POST"],
    response_model=EnrollmentResponse,
    responses=ENROLLMENT_ERRORS,
    summary="Process a signed SDK result (alias)",
)


@app.post(
    "/api/sdk-verification/enrollment",
    response_model=EnrollmentResponse,
    responses=ENROLLMENT_ERRORS,
    summary="Direct enrollment",
    description="Accepts {token} like the webhook, or {data} when unsigned enrollment is enabled",
)
def enrollment(
    request: EnrollmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: VerificationPipeline = Depends(get_pipeline),
):
    if request.token:
        result = pipeline.process_token(request.token, tenant_id)
    elif request.data is not None:
        result = pipeline.process_data(request.data, tenant_id)
    else:
        raise MissingPayloadDataError(
            "Missing enrollment data or token",
            field="token",
            suggestion="Send {\"token\": <signed payload>}"
        )
    return pipeline.build_response(result)


@app.get(
    "/api/sdk-verification/thresholds",
    response_model=DataResponse,
    summary="Active decision thresholds",
)
def thresholds(config: ConfigManager = Depends(get_config_instance)):
    return DataResponse(data=config.thresholds.to_dict())


@app.post(
    "/api/sdk-verification/test-analysis",
    response_model=DataResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
    },
    summary="Classify a verification object without persisting",
)
def test_analysis(
    request: AnalysisRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    api_key: str = Depends(verify_api_key),
):
    return DataResponse(data=pipeline.analyze_verification(request.verification))


# ============================================
# QR VERIFICATION SESSIONS
# ============================================

@app.post("/api/qr-verification/generate", response_model=DataResponse)
def qr_generate(
    request: QrGenerateRequest,
    service: QrSessionService = Depends(get_qr_service),
):
    return DataResponse(data=service.generate(
        customer_id=request.customer_id,
        customer_name=request.customer_name,
        journey_id=request.journey_id,
        reference_id=request.reference_id,
        expiry_minutes=request.expiry_minutes,
        metadata=request.metadata,
    ))


@app.post(
    "/api/qr-verification/init",
    response_model=DataResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown, expired or used token"},
        502: {"model": ErrorResponse, "description": "Provider token exchange failed"},
    },
)
def qr_init(
    request: QrInitRequest,
    service: QrSessionService = Depends(get_qr_service),
):
    return DataResponse(data=service.init(request.token, request.device_info))


@app.get(
    "/api/qr-verification/status/{session_id}",
    response_model=DataResponse,
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
)
def qr_status(
    session_id: str,
    service: QrSessionService = Depends(get_qr_service),
):
    return DataResponse(data=service.status(session_id))


@app.post(
    "/api/qr-verification/complete",
    response_model=DataResponse,
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
)
def qr_complete(
    request: QrCompleteRequest,
    service: QrSessionService = Depends(get_qr_service),
):
    status = service.complete(request.session_id, request.status, request.verification_result)
    return DataResponse(data={'session_id': request.session_id, 'status': status},
                        message="Session status updated")


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service and database status. Always returns HTTP 200.",
)
def health_check():
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    if _db_provider is None:
        return HealthResponse(status="starting", database="unknown",
                              version=API_VERSION, uptime_seconds=uptime_seconds)
    try:
        connected = _db_provider.health_check()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return HealthResponse(status="degraded", database="disconnected", version=API_VERSION,
                              uptime_seconds=uptime_seconds, error_message="Database unreachable")

    return HealthResponse(
        status="healthy" if connected else "degraded",
        database="connected" if connected else "disconnected",
        version=API_VERSION,
        uptime_seconds=uptime_seconds,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
