"""
FastAPI Middleware for the Sanctions Corpus API

Provides CORS configuration, request logging, and global error handling.
Every error leaves the API as ``{"error": {code, message, timestamp}}``.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from errors import (
    FetchError,
    NotFoundError,
    ParseError,
    SanctionsCorpusError,
    StorageError,
    ValidationError,
)
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",  # Next.js dev port
    "http://localhost:5173",  # Vite dev port
    "http://localhost:8000",  # FastAPI default port
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8000",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS"]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> Optional[str]:
    """Build one regex from origins that may contain ``*`` subdomain wildcards.

    Args:
        allowed_origins: Origins such as ``https://*.example.org``

    Returns:
        Combined regex pattern, or None when no origin has a wildcard
    """
    if not any("*" in origin for origin in allowed_origins):
        return None

    patterns = []
    for origin in allowed_origins:
        escaped = re.escape(origin).replace(r"\*", r"[\w-]+")
        patterns.append(f"({escaped})")
    return "|".join(patterns)


def setup_cors(app: FastAPI) -> None:
    """Configure CORS middleware for the application.

    Origins default to localhost and can be customized via the CORS_ORIGINS
    environment variable (comma-separated, ``*`` allowed as a subdomain
    wildcard). The API is read-only, so only GET and OPTIONS are allowed.
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
    else:
        allowed_origins = DEFAULT_CORS_ORIGINS

    origin_regex = _build_cors_regex_pattern(allowed_origins)
    if origin_regex:
        app.add_middleware(
            CORSMiddleware,
            allow_origin_regex=origin_regex,
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=EXPOSED_HEADERS,
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=EXPOSED_HEADERS,
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        logger.debug(f"Query params: {sanitize_for_logging(str(dict(request.query_params)))}")

        # Store request ID for later use
        request.state.request_id = request_id
        request.state.start_time = start_time

        # Log incoming request (sanitize path to prevent log injection)
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)

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

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field

    return JSONResponse(status_code=status_code, content={"error": error_detail})


async def corpus_exception_handler(request: Request, exc: SanctionsCorpusError) -> JSONResponse:
    """Map corpus errors to HTTP responses.

    Not-found and validation messages are safe to return; storage and parse
    messages may contain file system paths, so those are replaced.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "Corpus error: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    if isinstance(exc, NotFoundError):
        return create_error_response(code=exc.code, message=str(exc), status_code=404)

    if isinstance(exc, ValidationError):
        return create_error_response(code=exc.code, message=str(exc), status_code=400, field=exc.field)

    if isinstance(exc, (StorageError, ParseError)):
        return create_error_response(
            code=exc.code,
            message="Sanctions data could not be read. Please try again later.",
            status_code=500,
        )

    if isinstance(exc, FetchError):
        return create_error_response(
            code=exc.code,
            message="An upstream sanctions source is unavailable.",
            status_code=502,
        )

    return create_error_response(
        code=exc.code,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.

    Args:
        request: FastAPI request object
        exc: Exception that was raised

    Returns:
        Standardized error response
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

    # Generic error - sanitize message to prevent info leakage
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handler for HTTP exceptions, including router 404/405 responses.

    Args:
        request: FastAPI request object
        exc: HTTPException that was raised

    Returns:
        Standardized error response
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    response = create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(SanctionsCorpusError, corpus_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
