"""
API middleware stack.

- Request ID injection (X-Request-ID header)
- Structured request/response logging
- Exception handlers producing the stable {success, error, message} body
- CORS configuration
"""
from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.config import Environment, Settings
from shared.utils.logging import get_logger, log_context

from api.errors import APIError

logger = get_logger(__name__)

_HTTP_ERROR_CODES = {
    404: ("not_found", "Resource not found"),
    405: ("method_not_allowed", "Method not allowed"),
}


def error_body(error: str, message: str, request: Request | None = None) -> dict:
    body = {"success": False, "error": error, "message": message}
    request_id = getattr(request.state, "request_id", None) if request is not None else None
    if request_id:
        body["request_id"] = request_id
    return body


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        with log_context(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in ("/health", "/metrics"):
            return await call_next(request)

        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=path,
            status=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            request_id=getattr(request.state, "request_id", "unknown"),
        )
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        logger.info("request_rejected", path=request.url.path, error=exc.error, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.error, exc.message, request))

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        message = f"Invalid parameter(s): {', '.join(fields)}" if fields else "Invalid request"
        return JSONResponse(status_code=400, content=error_body("invalid_request", message, request))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error, default_message = _HTTP_ERROR_CODES.get(exc.status_code, ("http_error", "Request failed"))
        message = exc.detail if isinstance(exc.detail, str) and exc.status_code not in _HTTP_ERROR_CODES else default_message
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(error, message, request),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error=str(exc),
            request_id=getattr(request.state, "request_id", "unknown"),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content=error_body("internal_server_error", "An unexpected error occurred", request),
        )


def setup_cors(app: FastAPI, settings: Settings) -> None:
    origins = settings.cors_origins
    if settings.environment == Environment.PRODUCTION and origins == ["*"]:
        logger.warning("cors_wildcard_in_production")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Apply all middleware to the FastAPI app in the correct order."""
    setup_cors(app, settings)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    setup_exception_handlers(app)
