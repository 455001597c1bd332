"""
Global exception handlers for the FastAPI application.
"""

from typing import Union
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from loguru import logger

from request_defense.utils.exceptions import RequestDefenseException

ERROR_CODE_STATUS = {
    "VALIDATION_ERROR": 422,
    "NOT_FOUND": 404,
    "CONFIGURATION_ERROR": 500,
    "TRANSIENT_STORAGE_ERROR": 503,
    "NOTIFICATION_DELIVERY_ERROR": 502,
}


async def request_defense_exception_handler(
    request: Request, exc: RequestDefenseException
) -> JSONResponse:
    """Handle request defense exceptions."""
    logger.bind(
        error_code=exc.error_code,
        details=exc.details,
        url=str(request.url),
        method=request.method,
    ).error(f"Request defense exception: {exc.message}")

    status_code = ERROR_CODE_STATUS.get(exc.error_code, 500)

    return JSONResponse(
        status_code=status_code,
        content={
            "message": exc.message,
            "error_code": exc.error_code,
            "details": exc.details,
            "type": "request_defense_error",
        }
    )


async def http_exception_handler(
    request: Request, exc: Union[HTTPException, StarletteHTTPException]
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.bind(
        status_code=exc.status_code,
        url=str(request.url),
        method=request.method,
    ).warning(f"HTTP exception: {exc.detail}")

    detail = exc.detail
    if isinstance(detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "message": detail.get("message", str(exc.detail)),
                "error_code": detail.get("error_code"),
                "details": detail.get("details", {}),
                "type": "http_error",
            }
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "message": str(exc.detail),
            "error_code": f"HTTP_{exc.status_code}",
            "details": {},
            "type": "http_error",
        }
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation exceptions."""
    logger.bind(url=str(request.url), method=request.method).warning(
        f"Validation error: {exc.errors()}"
    )

    formatted_errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        formatted_errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return JSONResponse(
        status_code=422,
        content={
            "message": "Validation failed",
            "error_code": "VALIDATION_ERROR",
            "details": {"errors": formatted_errors},
            "type": "validation_error",
        }
    )


async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """Handle database exceptions."""
    logger.bind(
        exception_type=type(exc).__name__,
        url=str(request.url),
        method=request.method,
    ).error(f"Database error: {exc}")

    message = "Database operation failed"
    if isinstance(exc, IntegrityError):
        message = "Database integrity constraint violated"

    return JSONResponse(
        status_code=500,
        content={
            "message": message,
            "error_code": "DATABASE_ERROR",
            "details": {"exception_type": type(exc).__name__},
            "type": "database_error",
        }
    )


async def general_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle general exceptions."""
    logger.opt(exception=exc).bind(
        url=str(request.url),
        method=request.method,
    ).error(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "message": "Internal server error",
            "error_code": "INTERNAL_SERVER_ERROR",
            "details": {
                "exception_type": type(exc).__name__,
                "debug_message": str(exc) if request.app.debug else None,
            },
            "type": "internal_error",
        }
    )
