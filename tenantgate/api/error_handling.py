from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantgate.logging import get_logger, sanitize_error_message
from tenantgate.service.auth_errors import AuthErrorCode, AuthFlowError
from tenantgate.service.errors import ServiceError

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    retry_after: Optional[int] = None,
) -> JSONResponse:
    """Render the ``{"error": ...}`` body every failing route returns."""
    content: Dict[str, Any] = {"error": sanitize_error_message(message)}
    if code:
        content["code"] = code
    if extra:
        content.update(extra)
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def auth_error_payload(exc: AuthFlowError) -> Dict[str, Any]:
    details = exc.details.to_dict()
    details.pop("code", None)
    details.pop("message", None)
    warning = exc.details.context.get("warning")
    if warning:
        details["warning"] = warning
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping auth and service errors onto JSON responses."""

    @app.exception_handler(AuthFlowError)
    async def handle_auth_flow_error(request: Request, exc: AuthFlowError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "auth_flow_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code.value,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            code=exc.code.value,
            extra=auth_error_payload(exc),
            retry_after=exc.details.retry_after if exc.status_code in (423, 429) else None,
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())[1:]) or None,
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[err["field"] for err in errors],
        )
        return _error_response(
            422,
            "Invalid request",
            code=AuthErrorCode.VALIDATION_ERROR.value,
            extra={"details": errors},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        # Never echo exception text: it may carry upstream URLs or tokens
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
