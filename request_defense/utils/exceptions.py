"""
Custom exception classes for the request defense pipeline.
"""

from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class RequestDefenseException(Exception):
    """Base exception class for the request defense pipeline."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(RequestDefenseException):
    """Raised when a rule, pattern or setting is malformed at load time."""

    def __init__(self, message: str = "Invalid configuration", **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


class TransientStorageError(RequestDefenseException):
    """Raised when the security repository cannot be reached."""

    def __init__(
        self,
        message: str = "Security storage unavailable",
        operation: Optional[str] = None,
        **kwargs
    ):
        self.operation = operation
        super().__init__(message, error_code="TRANSIENT_STORAGE_ERROR", **kwargs)


class MatchTimeout(RequestDefenseException):
    """Raised when a rule pattern exceeds its execution budget."""

    def __init__(self, rule_id: str, timeout_ms: int, **kwargs):
        self.rule_id = rule_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Rule {rule_id} exceeded {timeout_ms}ms match budget",
            error_code="MATCH_TIMEOUT",
            **kwargs
        )


class NotificationDeliveryError(RequestDefenseException):
    """Raised when a single notification channel fails to deliver an alert."""

    def __init__(
        self,
        message: str = "Notification delivery failed",
        channel: Optional[str] = None,
        **kwargs
    ):
        self.channel = channel
        super().__init__(message, error_code="NOTIFICATION_DELIVERY_ERROR", **kwargs)


class ValidationError(RequestDefenseException):
    """Exception raised for validation errors."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        self.field = field
        super().__init__(message, error_code="VALIDATION_ERROR", **kwargs)


class NotFoundError(RequestDefenseException):
    """Exception raised when a resource is not found."""

    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, error_code="NOT_FOUND", **kwargs)


# HTTP Exception helpers
def create_http_exception(
    status_code: int,
    message: str,
    error_code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """Create an HTTP exception with structured response."""
    return HTTPException(
        status_code=status_code,
        detail={
            "message": message,
            "error_code": error_code,
            "details": details or {},
        },
    )


def create_not_found_exception(resource: str, identifier: str) -> HTTPException:
    """Create a not found HTTP exception."""
    return create_http_exception(
        status_code=status.HTTP_404_NOT_FOUND,
        message=f"{resource} not found",
        error_code="NOT_FOUND",
        details={"resource": resource, "identifier": identifier},
    )
