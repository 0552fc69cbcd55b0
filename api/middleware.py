"""
FastAPI Middleware for the Verification API

Provides CORS configuration, request logging, and error handling that maps
every failure onto the {"success": false, "error": {...}} body.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from security_logger import sanitize_for_logging
from verification.exceptions import VerificationError

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8000",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> tuple:
    """Split origins into a regex for wildcard subdomains and exact matches.

    Args:
        allowed_origins: Origins, optionally with a leading wildcard host
            label such as https://*.example.com

    Returns:
        Tuple of (combined_regex_pattern or None, exact_origins list)
    """
    regex_patterns = []
    exact_origins = []

    for origin in allowed_origins:
        if "://*." in origin:
            scheme, host = origin.split("://*.", 1)
            regex_patterns.append(rf"{re.escape(scheme)}://[\w-]+\.{re.escape(host)}")
        else:
            exact_origins.append(origin)

    if not regex_patterns:
        return None, exact_origins

    combined_regex = "|".join(f"({p})" for p in regex_patterns)
    if exact_origins:
        exact_escaped = "|".join(re.escape(o) for o in exact_origins)
        combined_regex = f"({combined_regex})|({exact_escaped})"

    return combined_regex, exact_origins


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins default to localhost and can be overridden via the CORS_ORIGINS
    environment variable (comma-separated, wildcard subdomains allowed).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    combined_regex, exact_origins = _build_cors_regex_pattern(allowed_origins)
    options = dict(
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    if combined_regex:
        app.add_middleware(CORSMiddleware, allow_origin_regex=combined_regex, **options)
    else:
        app.add_middleware(CORSMiddleware, allow_origins=exact_origins, **options)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request and response with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = sanitize_for_logging(
            request.headers.get("X-Request-ID", str(time.time_ns()))
        )[:64]

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    suggestion: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"success": False, "error": error_detail})


async def verification_exception_handler(request: Request, exc: VerificationError) -> JSONResponse:
    """Maps pipeline errors to their HTTP status; 5xx messages stay generic."""
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = exc.http_status

    if status_code >= 500:
        logger.error(
            "Verification error: type=%s code=%s message=%s request_id=%s",
            type(exc).__name__,
            exc.code,
            sanitize_for_logging(str(exc)),
            request_id,
        )
        message = ("Verification provider is unavailable. Please try again later."
                   if status_code == 502
                   else "An unexpected error occurred. Please try again later.")
        return create_error_response(code=exc.code, message=message, status_code=status_code)

    logger.warning(
        "Request refused: code=%s message=%s request_id=%s",
        exc.code,
        sanitize_for_logging(str(exc)),
        request_id,
    )
    return create_error_response(
        code=exc.code,
        message=str(exc),
        status_code=status_code,
        field=exc.field,
        suggestion=exc.suggestion,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request schema violations are malformed input: 400."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    field = ".".join(location) or None
    message = first.get("msg", "Invalid request")

    logger.warning(
        "Validation error: field=%s message=%s",
        sanitize_for_logging(field or ""),
        sanitize_for_logging(message),
    )
    return create_error_response(
        code="VALIDATION_ERROR",
        message=message,
        status_code=400,
        field=field,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handler for HTTP exceptions (auth failures, unknown routes)."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(VerificationError, verification_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
