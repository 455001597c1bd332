"""
Main API router for version 1.
"""

from fastapi import APIRouter

from request_defense.api.v1.endpoints import health, security

api_router = APIRouter()

api_router.include_router(health.router, prefix="/health", tags=["Health"])
api_router.include_router(security.router, prefix="/security", tags=["Security"])
