"""
API health check endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from request_defense.core.config import settings
from request_defense.core.dependencies import get_pipeline
from request_defense.services.pipeline import DefensePipeline

router = APIRouter()

HEALTHY = "healthy"
DEGRADED = "degraded"


@router.get("")
async def detailed_health(pipeline: DefensePipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    """Component health for the defense pipeline."""
    event_store = pipeline.event_store
    ip_access = pipeline.ip_access

    components = {
        "waf": {
            "status": HEALTHY if pipeline.settings.WAF_ENABLED else DEGRADED,
            "enabled": pipeline.settings.WAF_ENABLED,
            "rules": len(pipeline.pattern_matcher.rules),
            "match_timeouts": pipeline.pattern_matcher.timeouts,
        },
        "ip_access": {
            "status": DEGRADED if ip_access.degraded_count else HEALTHY,
            "fail_open": ip_access.fail_open,
            "degraded_refreshes": ip_access.degraded_count,
        },
        "event_store": {
            "status": DEGRADED if event_store.consecutive_failures else HEALTHY,
            "buffered_events": event_store.buffered_events,
            "dropped_events": event_store.dropped_events,
            "consecutive_failures": event_store.consecutive_failures,
        },
        "notifications": {
            "status": HEALTHY,
            **pipeline.dispatcher.get_statistics(),
        },
    }
    overall = DEGRADED if any(c["status"] != HEALTHY for c in components.values()) else HEALTHY

    return {
        "status": overall,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.VERSION,
        "components": components,
    }
