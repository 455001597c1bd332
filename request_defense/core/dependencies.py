"""
FastAPI dependency functions.
"""

from fastapi import HTTPException, Request, status

from request_defense.services.pipeline import DefensePipeline


def get_pipeline(request: Request) -> DefensePipeline:
    """
    Dependency to get the application's defense pipeline.

    The pipeline is created by the app factory and stored on app state.
    """
    pipeline = getattr(request.app.state, "defense_pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Request defense pipeline not initialized",
        )
    return pipeline
