import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def _error_payload(code: str, message: str, details):
    return {"code": code, "message": message, "details": details}


class AppError(HTTPException):
    """Domain error rendered as ``{code, message, details}``."""

    http_status = 400
    code = "error"

    def __init__(self, message: str, details=None, headers: dict | None = None):
        self.message = message
        super().__init__(
            status_code=self.http_status,
            detail=_error_payload(self.code, message, details),
            headers=headers,
        )


class Unauthenticated(AppError):
    http_status = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Authentication required", details=None):
        super().__init__(message, details, headers={"WWW-Authenticate": "Bearer"})


class Unauthorized(AppError):
    http_status = 403
    code = "forbidden"


class NotFound(AppError):
    http_status = 404
    code = "not_found"


class InvalidState(AppError):
    http_status = 400
    code = "invalid_state"


class ValidationFailed(AppError):
    http_status = 400
    code = "invalid_request"


class Conflict(AppError):
    http_status = 409
    code = "conflict"


class StorageUnavailable(AppError):
    http_status = 503
    code = "storage_error"


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        # exc.errors() ctx may contain raw Exception objects (not JSON-serialisable).
        errors = [
            {k: str(v) if k == "ctx" else v for k, v in err.items()}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_error", "Validation error", errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )