from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kokoru.api.schemas import Envelope, ErrorBody
from kokoru.logging import get_correlation_id, get_logger
from kokoru.service.errors import ERROR_STATUS, ErrorKind, ServiceError

logger = get_logger(__name__)

_STATUS_TO_KIND = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    429: ErrorKind.RATE_LIMITED,
}


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _STATUS_TO_KIND.get(status_code, ErrorKind.SERVER).value
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=error_code, message=message, details=details),
    )
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope keyed by ``ErrorKind``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = ERROR_STATUS[exc.kind]
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(
            400, "Invalid request", {"errors": errors}, code=ErrorKind.VALIDATION.value
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
                message=message,
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
        return _error_response(500, "Internal server error", code=ErrorKind.SERVER.value)
