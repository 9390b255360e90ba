"""
Response envelope and exception handlers.

Every API response is `{ok, data?, error?}`. Application errors keep their
status code and stable `code`; unexpected exceptions become an opaque 500
in production.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import is_production
from ..errors import AppError
from ..logging_config import log_app_error

logger = logging.getLogger('callqc.api')


def ok(data: Any = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"ok": True, "data": data}))


def error_response(status_code: int, code: str, message: str, details: Optional[Any] = None) -> JSONResponse:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"ok": False, "error": error}))


def paginated(items, page: int, limit: int, total: int, key: str = "items") -> dict:
    return {
        key: items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit if limit else 0,
        },
    }


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        log_app_error(logger, exc, f"{request.method} {request.url.path}")
        production = is_production(request.app.state.services.settings)
        message = exc.message if exc.is_operational or not production else "An unexpected error occurred"
        return error_response(
            exc.status_code,
            exc.code,
            message,
            exc.details if not production else None,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"{request.method} {request.url.path}: invalid request {exc.errors()}")
        return error_response(400, "VALIDATION_ERROR", "Invalid request", exc.errors())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return error_response(exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        production = is_production(request.app.state.services.settings)
        message = "An unexpected error occurred" if production else f"{type(exc).__name__}: {exc}"
        return error_response(500, "INTERNAL_ERROR", message)
