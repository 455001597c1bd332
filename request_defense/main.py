"""
Request Defense - Main FastAPI application entry point.
"""

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from request_defense.api.v1.router import api_router
from request_defense.core.config import Settings, settings as default_settings
from request_defense.core.logging import configure_logging
from request_defense.middleware.security_middleware import SecurityMiddleware
from request_defense.services.pipeline import DefensePipeline
from request_defense.utils.error_handlers import (
    database_exception_handler,
    general_exception_handler,
    http_exception_handler,
    request_defense_exception_handler,
    validation_exception_handler,
)
from request_defense.utils.exceptions import RequestDefenseException


def create_app(
    pipeline: Optional[DefensePipeline] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the application around a defense pipeline."""
    settings = settings or default_settings
    pipeline = pipeline or DefensePipeline.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        configure_logging(settings)
        logger.info(f"Starting {settings.PROJECT_NAME} application...")
        await pipeline.start()
        yield
        logger.info(f"Shutting down {settings.PROJECT_NAME} application...")
        await pipeline.stop()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Request defense pipeline: WAF, IP access control, rate limiting and alerting",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    app.state.defense_pipeline = pipeline

    # Add exception handlers
    app.add_exception_handler(RequestDefenseException, request_defense_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Add custom middleware
    app.add_middleware(SecurityMiddleware, pipeline=pipeline)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_hosts_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD", "PATCH"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_header(request: Request, call_next):
        """Add request ID header for tracing."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {"status": "healthy", "service": "request-defense"}

    @app.get("/api")
    async def api_root():
        """API root endpoint."""
        return {
            "message": f"{settings.PROJECT_NAME} API",
            "version": settings.VERSION,
            "docs": "/docs",
            "status": "operational",
        }

    return app


app = create_app()
