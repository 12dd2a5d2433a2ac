from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from recipeshare.api.schemas import Envelope, ErrorBody
from recipeshare.logging import get_logger
from recipeshare.service.errors import ServiceError
from recipeshare.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes for plain HTTP statuses
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

# Request bodies on these paths carry credentials or codes; never echo their input
_SENSITIVE_PATH_PREFIXES = ("/v1/auth/",)


def _code_for(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    data: dict | None = None,
) -> JSONResponse:
    """Render an error envelope; ``code`` defaults from the HTTP status."""
    error_code = code or _code_for(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", data=data, error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _sanitize_validation_errors(exc: RequestValidationError) -> list[dict]:
    errors: list[dict] = []
    for err in exc.errors():
        errors.append(
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": str(err.get("msg", "invalid value")),
                "type": err.get("type"),
            }
        )
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        response = _error_response(
            exc.status_code, exc.message, exc.detail or None, code=error_code
        )
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _sanitize_validation_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[item["field"] for item in details],
        )
        if request.url.path.startswith(_SENSITIVE_PATH_PREFIXES):
            # Keep field names and messages, drop anything derived from the input
            details = [{"field": item["field"], "message": item["message"]} for item in details]
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail
        body = detail.get("error") if isinstance(detail, dict) else None
        if isinstance(body, dict):
            # raised by routes._http_error with the envelope already shaped
            code, message = body.get("code"), body.get("message", "request failed")
            details, data = body.get("details"), detail.get("data")
        else:
            # starlette's own 404/405 and any bare HTTPException
            code, details, data = None, None, None
            message = detail.lower() if isinstance(detail, str) else "request failed"
        if exc.status_code >= 400:
            log = logger.error if exc.status_code >= 500 else logger.info
            log(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
            )
        response = _error_response(exc.status_code, message, details, code=code, data=data)
        response.headers.update(exc.headers or {})
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
