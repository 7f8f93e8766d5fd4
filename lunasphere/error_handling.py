"""
Exception handlers turning errors into the JSON error body:

    {"success": false, "error": <message>, "code": <CODE>}

`details` is added only when running in development mode.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lunasphere.errors import LunaSphereError

logger = logging.getLogger("lunasphere.errors")

_STATUS_TO_CODE = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": message, "code": code}
    settings = request.app.state.settings
    if details and settings.is_development:
        body["details"] = jsonable_encoder(details)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers for domain errors, request validation and HTTP errors."""

    @app.exception_handler(LunaSphereError)
    async def handle_domain_error(request: Request, exc: LunaSphereError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "%s %s -> %d %s: %s",
            request.method, request.url.path, exc.status_code, exc.code, exc.message,
        )
        return error_response(request, exc.status_code, exc.message, exc.code, exc.details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "%s %s -> 400 VALIDATION_ERROR: %d field error(s)",
            request.method, request.url.path, len(exc.errors()),
        )
        return error_response(request, 400, "Validation failed", "VALIDATION_ERROR", exc.errors())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and request.url.path.startswith("/api"):
            message = "API endpoint not found"
        else:
            message = str(exc.detail)
        code = _STATUS_TO_CODE.get(exc.status_code, "HTTP_ERROR")
        return error_response(request, exc.status_code, message, code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("%s %s -> 500 INTERNAL_ERROR", request.method, request.url.path)
        settings = request.app.state.settings
        message = str(exc) if settings.is_development else "Internal server error"
        return error_response(request, 500, message, "INTERNAL_ERROR")
