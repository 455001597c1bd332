"""
Logging setup.
"""

import sys

from loguru import logger

from request_defense.core.config import Settings, settings as default_settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

# Security event severity to loguru level
SEVERITY_LOG_LEVELS = {
    "low": "INFO",
    "medium": "WARNING",
    "high": "ERROR",
    "critical": "CRITICAL",
}


def configure_logging(settings: Settings = default_settings) -> None:
    """Replace loguru's default sink with one honouring LOG_LEVEL."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.LOG_LEVEL.upper(),
        format=LOG_FORMAT,
        serialize=settings.LOG_JSON,
        backtrace=settings.DEBUG,
        diagnose=settings.DEBUG,
    )
