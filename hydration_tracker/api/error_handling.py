from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hydration_tracker.api.schemas import ERROR_CODES, Envelope
from hydration_tracker.logging import get_logger
from hydration_tracker.service.errors import ServiceError
from hydration_tracker.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "USER_ALREADY_EXISTS",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def _error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    data: dict | list | None = None,
) -> JSONResponse:
    error_code = code if code in ERROR_CODES else _error_code_for_status(status_code)
    envelope = Envelope(success=False, message=message, error=error_code, data=data)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(exclude_none=True)
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc), "message": err.get("msg", "invalid value")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return _error_response(409, exc.message, code="USER_ALREADY_EXISTS")

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
        return _error_response(
            exc.status_code, exc.message, code=exc.error_code, data=exc.detail or None
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(
            400, "request validation failed", code="VALIDATION_ERROR", data={"errors": details}
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Routes raise HTTPException(detail={"code": ..., "message": ...})
        if isinstance(exc.detail, dict):
            message = exc.detail.get("message", "http error")
            code = exc.detail.get("code")
        else:
            message = str(exc.detail) if exc.detail else "http error"
            code = None
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=code,
            message=message,
        )
        return _error_response(exc.status_code, message, code=code)

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
        return _error_response(500, "internal server error", code="INTERNAL_ERROR")
