"""
Service layer for the request defense pipeline.
"""

from .pattern_matcher import PatternMatcher
from .ip_access import IPAccessControl
from .rate_limiter import RateLimiterRegistry, SlidingWindowRateLimiter
from .violation_ledger import ViolationLedger
from .event_store import EventStore
from .alerting import AlertEngine
from .pipeline import DefensePipeline

__all__ = [
    "PatternMatcher",
    "IPAccessControl",
    "RateLimiterRegistry",
    "SlidingWindowRateLimiter",
    "ViolationLedger",
    "EventStore",
    "AlertEngine",
    "DefensePipeline",
]
