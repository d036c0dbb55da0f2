from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vauth.api.schemas import Envelope, ErrorBody
from vauth.logging import get_logger, sanitize_error_message
from vauth.service.errors import ServiceError
from vauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_CODE_BY_STATUS = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
}


def error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    """Render an error envelope; unknown statuses fall back to ``server_error``."""
    body = ErrorBody(
        code=code or _CODE_BY_STATUS.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _log_rejection(request: Request, event: str, status_code: int, **context: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **context)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope with a stable code."""

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "invalid")}
            for err in exc.errors()
        ]
        _log_rejection(request, "request_validation_failed", 400, error_count=len(problems))
        return error_response(400, "validation failed", details=problems)

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        _log_rejection(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return error_response(
            exc.status_code, exc.message, code=exc.error_code, details=exc.detail or None
        )

    @app.exception_handler(ConstraintViolation)
    async def _constraint_violation(request: Request, exc: ConstraintViolation):
        _log_rejection(request, "constraint_violation", 409, detail=exc.detail)
        return error_response(409, exc.message)

    @app.exception_handler(StoreUnavailable)
    async def _store_unavailable(request: Request, exc: StoreUnavailable):
        _log_rejection(
            request, "store_unavailable", 500, error=sanitize_error_message(exc.message)
        )
        return error_response(500, "internal error")

    @app.exception_handler(HTTPException)
    async def _http_exception(request: Request, exc: HTTPException):
        # Routes raise HTTPException with an envelope-shaped detail
        error = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(error, dict):
            _log_rejection(request, "http_error", exc.status_code, error_code=error.get("code"))
            return error_response(
                exc.status_code,
                error.get("message", "http error"),
                code=error.get("code"),
                details=error.get("details"),
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return error_response(500, "internal server error")
