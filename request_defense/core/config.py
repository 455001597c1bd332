"""
Application configuration settings.
"""

import os
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings."""

    # Project settings
    PROJECT_NAME: str = "Request Defense"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"

    # Security settings
    ALLOWED_HOSTS: str = os.getenv("ALLOWED_HOSTS", "*")

    @property
    def allowed_hosts_list(self) -> List[str]:
        """Parse ALLOWED_HOSTS from comma-separated string to list."""
        return _split_csv(self.ALLOWED_HOSTS)

    # WAF settings
    WAF_ENABLED: bool = os.getenv("WAF_ENABLED", "true").lower() == "true"
    WAF_BLOCK_THRESHOLD: int = 10
    WAF_CHALLENGE_THRESHOLD: int = 5
    WAF_DECAY_WINDOW_MINUTES: int = 15
    WAF_WHITELIST: str = os.getenv("WAF_WHITELIST", "")
    WAF_BLACKLIST: str = os.getenv("WAF_BLACKLIST", "")
    WAF_CHALLENGE_RETRY_AFTER_SECONDS: int = 60
    # Count matches of log-only rules toward escalation
    WAF_ESCALATE_LOG_RULES: bool = True

    @property
    def waf_whitelist_list(self) -> List[str]:
        """Parse WAF_WHITELIST from comma-separated string to list."""
        return _split_csv(self.WAF_WHITELIST)

    @property
    def waf_blacklist_list(self) -> List[str]:
        """Parse WAF_BLACKLIST from comma-separated string to list."""
        return _split_csv(self.WAF_BLACKLIST)

    # Pattern matching limits
    MAX_BODY_BYTES: int = 10_000
    MAX_SURFACE_LENGTH: int = 10_000
    MATCH_TIMEOUT_MS: int = 50

    # IP access control. Fail open trades lockout risk for availability.
    IP_ACCESS_FAIL_OPEN: bool = os.getenv("IP_ACCESS_FAIL_OPEN", "true").lower() == "true"
    WHITELIST_REFRESH_SECONDS: int = 60

    # Rate limiting (per scope)
    RATE_LIMIT_API_REQUESTS: int = 100
    RATE_LIMIT_API_WINDOW_MS: int = 15 * 60 * 1000
    RATE_LIMIT_AUTH_REQUESTS: int = 5
    RATE_LIMIT_AUTH_WINDOW_MS: int = 15 * 60 * 1000
    RATE_LIMIT_ADMIN_REQUESTS: int = 200
    RATE_LIMIT_ADMIN_WINDOW_MS: int = 15 * 60 * 1000
    RATE_LIMIT_PUBLIC_REQUESTS: int = 200
    RATE_LIMIT_PUBLIC_WINDOW_MS: int = 15 * 60 * 1000
    RATE_LIMIT_SEARCH_REQUESTS: int = 30
    RATE_LIMIT_SEARCH_WINDOW_MS: int = 60 * 1000
    RATE_LIMIT_IDLE_EVICTION_SECONDS: int = 30 * 60

    @property
    def rate_limit_scopes(self) -> Dict[str, Dict[str, int]]:
        """Per-scope limiter configuration keyed by scope name."""
        return {
            "api": {"max_requests": self.RATE_LIMIT_API_REQUESTS, "window_ms": self.RATE_LIMIT_API_WINDOW_MS},
            "auth": {"max_requests": self.RATE_LIMIT_AUTH_REQUESTS, "window_ms": self.RATE_LIMIT_AUTH_WINDOW_MS},
            "admin": {"max_requests": self.RATE_LIMIT_ADMIN_REQUESTS, "window_ms": self.RATE_LIMIT_ADMIN_WINDOW_MS},
            "public": {"max_requests": self.RATE_LIMIT_PUBLIC_REQUESTS, "window_ms": self.RATE_LIMIT_PUBLIC_WINDOW_MS},
            "search": {"max_requests": self.RATE_LIMIT_SEARCH_REQUESTS, "window_ms": self.RATE_LIMIT_SEARCH_WINDOW_MS},
        }

    # Redis settings
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    USE_REDIS_RATE_LIMITER: bool = os.getenv("USE_REDIS_RATE_LIMITER", "false").lower() == "true"

    # Database settings. Empty means the in-memory repository.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")

    # Storage calls made while serving a request or flushing events
    STORAGE_TIMEOUT_SECONDS: float = 2.0

    # Security event store
    EVENT_BUFFER_SIZE: int = 100
    EVENT_FLUSH_INTERVAL_SECONDS: float = 30.0
    EVENT_BUFFER_HARD_CAP: int = 10_000
    EVENT_FLUSH_MAX_BACKOFF_SECONDS: float = 300.0

    # Threat detection
    THREAT_SCORE_THRESHOLD: float = 70.0

    # Notifications
    SECURITY_WEBHOOK_URL: Optional[str] = os.getenv("SECURITY_WEBHOOK_URL")
    SLACK_WEBHOOK_URL: Optional[str] = os.getenv("SLACK_WEBHOOK_URL")
    ADMIN_EMAIL: Optional[str] = os.getenv("ADMIN_EMAIL")
    SMTP_HOST: Optional[str] = os.getenv("SMTP_HOST")
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD: Optional[str] = os.getenv("SMTP_PASSWORD")
    SMTP_FROM: str = os.getenv("SMTP_FROM", "security@localhost")
    SMTP_USE_TLS: bool = True
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = os.getenv("LOG_JSON", "false").lower() == "true"

    # Development settings
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"


# Create global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
