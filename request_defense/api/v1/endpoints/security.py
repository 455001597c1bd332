"""
Security API endpoints for operating the request defense pipeline.
Provides metrics, the event trail, WAF rule toggles, IP lists, threat
patterns, alert rules, behaviour reports and rate limit inspection.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from request_defense.core.dependencies import get_pipeline
from request_defense.models.security import (
    Alert, AlertRule, IPListEntry, IPPatternKind, Severity, ThreatPattern, WeightedCondition
)
from request_defense.services.ip_access import compile_entry
from request_defense.services.pipeline import DefensePipeline
from request_defense.utils.exceptions import ConfigurationError, create_not_found_exception

router = APIRouter()


# Pydantic models for request/response
class OperatorAction(BaseModel):
    """Acknowledge or resolve request body."""
    by: str = Field(..., min_length=1, description="Operator performing the action")


class IPListEntryCreate(BaseModel):
    """IP list entry creation model."""
    ip_or_pattern: str = Field(..., min_length=1, description="Exact IP, wildcard, CIDR or range")
    kind: Optional[IPPatternKind] = Field(None, description="Inferred from the pattern when omitted")
    priority: int = Field(0, description="Higher priority patterns are checked first")
    expires_at: Optional[datetime] = Field(None, description="Entry stops matching after this time")
    description: str = Field("", description="Why the entry exists")
    created_by: Optional[str] = Field(None, description="Operator adding the entry")


class ConditionModel(BaseModel):
    """Weighted condition model."""
    field: str = Field(..., description="Dot-path into event data")
    operator: str = Field(..., description="equals, contains, regex, greater_than, less_than, in_range")
    value: Any = None
    weight: float = Field(1.0, gt=0)


class ThreatPatternCreate(BaseModel):
    """Threat pattern creation model."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    conditions: List[ConditionModel] = Field(..., min_length=1)
    severity: Severity
    pattern_type: str = "behavioral"
    description: str = ""
    is_active: bool = True


class AlertRuleCreate(BaseModel):
    """Alert rule creation model."""
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    severity: Severity
    threshold: int = Field(..., gt=0)
    time_window_minutes: int = Field(..., gt=0)
    conditions: List[ConditionModel] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=lambda: ["webhook"])
    enabled: bool = True


class FailedLoginReport(BaseModel):
    """Failed login reported by an application doing its own authentication."""
    ip_address: str = Field(..., min_length=1)
    identifier: str = Field(..., min_length=1, description="Login name or email tried")
    user_id: Optional[str] = None


class ApiUsageReport(BaseModel):
    """Hourly API usage for one user."""
    ip_address: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    api_call_count: int = Field(..., ge=0)
    unique_endpoints: int = Field(..., ge=0)


class DataAccessReport(BaseModel):
    """Size and frequency of data reads from one endpoint."""
    ip_address: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    data_size: int = Field(..., ge=0, description="Response size in bytes")
    recent_request_count: int = Field(0, ge=0, description="Requests to the endpoint in the last hour")


class AlertTestRequest(BaseModel):
    """Channels to send a test alert through; all configured when omitted."""
    channels: Optional[List[str]] = None


def _conditions(models: List[ConditionModel]) -> List[WeightedCondition]:
    try:
        return [WeightedCondition.from_dict(m.model_dump()) for m in models]
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


def _entry(payload: IPListEntryCreate) -> IPListEntry:
    entry = IPListEntry(**payload.model_dump())
    try:
        compile_entry(entry)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    return entry


# Metrics and events

@router.get("/metrics")
async def get_security_metrics(
    hours: float = Query(24, gt=0, le=168),
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    """Aggregated event metrics and security score for the trailing window."""
    return await pipeline.event_store.get_metrics(window_hours=hours)


@router.get("/events")
async def get_security_events(
    limit: int = Query(50, ge=1, le=1000),
    hours: float = Query(24, gt=0, le=168),
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    """Recent security events, newest first."""
    events = await pipeline.event_store.recent_events(limit=limit, hours=hours)
    return {
        "events": [e.to_dict() for e in events],
        "count": len(events),
        "filters": {"limit": limit, "hours": hours},
    }


@router.post("/events/{event_id}/acknowledge")
async def acknowledge_event(
    event_id: str,
    action: OperatorAction,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    event = await pipeline.event_store.acknowledge(event_id, action.by)
    return event.to_dict()


@router.post("/events/{event_id}/resolve")
async def resolve_event(
    event_id: str,
    action: OperatorAction,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    event = await pipeline.event_store.resolve(event_id, action.by)
    return event.to_dict()


# WAF

@router.get("/waf/stats")
async def get_waf_stats(pipeline: DefensePipeline = Depends(get_pipeline)):
    """Escalation counts, verdict totals and per-rule statistics."""
    return pipeline.get_waf_statistics()


@router.get("/waf/rules")
async def list_waf_rules(pipeline: DefensePipeline = Depends(get_pipeline)):
    return {
        "rules": [
            {
                "id": rule.id,
                "name": rule.name,
                "category": rule.category,
                "severity": rule.severity.value,
                "action": rule.action.value,
                "enabled": rule.enabled,
                "description": rule.description,
            }
            for rule in pipeline.pattern_matcher.rules
        ]
    }


@router.post("/waf/rules/{rule_id}/enable")
async def enable_waf_rule(rule_id: str, pipeline: DefensePipeline = Depends(get_pipeline)):
    if not pipeline.pattern_matcher.enable_rule(rule_id):
        raise create_not_found_exception("WAF rule", rule_id)
    return {"rule_id": rule_id, "enabled": True}


@router.post("/waf/rules/{rule_id}/disable")
async def disable_waf_rule(rule_id: str, pipeline: DefensePipeline = Depends(get_pipeline)):
    if not pipeline.pattern_matcher.disable_rule(rule_id):
        raise create_not_found_exception("WAF rule", rule_id)
    return {"rule_id": rule_id, "enabled": False}


# IP access control

@router.get("/ip-access/whitelist")
async def get_whitelist(pipeline: DefensePipeline = Depends(get_pipeline)):
    entries = pipeline.ip_access.list_entries()["whitelist"]
    return {"entries": [e.to_dict() for e in entries]}


@router.post("/ip-access/whitelist", status_code=status.HTTP_201_CREATED)
async def add_whitelist_entry(
    payload: IPListEntryCreate,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    entry = await pipeline.ip_access.add_whitelist_entry(_entry(payload))
    return entry.to_dict()


@router.delete("/ip-access/whitelist/{ip_or_pattern:path}")
async def remove_whitelist_entry(
    ip_or_pattern: str,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    if not await pipeline.ip_access.remove_whitelist_entry(ip_or_pattern):
        raise create_not_found_exception("Whitelist entry", ip_or_pattern)
    return {"removed": ip_or_pattern}


@router.get("/ip-access/blacklist")
async def get_blacklist(pipeline: DefensePipeline = Depends(get_pipeline)):
    entries = pipeline.ip_access.list_entries()["blacklist"]
    return {"entries": [e.to_dict() for e in entries]}


@router.post("/ip-access/blacklist", status_code=status.HTTP_201_CREATED)
async def add_blacklist_entry(
    payload: IPListEntryCreate,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    entry = pipeline.ip_access.add_blacklist_entry(_entry(payload))
    return entry.to_dict()


@router.delete("/ip-access/blacklist/{ip_or_pattern:path}")
async def remove_blacklist_entry(
    ip_or_pattern: str,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    if not pipeline.ip_access.remove_blacklist_entry(ip_or_pattern):
        raise create_not_found_exception("Blacklist entry", ip_or_pattern)
    return {"removed": ip_or_pattern}


# Threat patterns and alerting

@router.get("/threat-patterns")
async def list_threat_patterns(pipeline: DefensePipeline = Depends(get_pipeline)):
    return {
        "threshold": pipeline.threat_detector.threshold,
        "patterns": [p.to_dict() for p in pipeline.threat_detector.patterns],
    }


@router.post("/threat-patterns", status_code=status.HTTP_201_CREATED)
async def create_threat_pattern(
    payload: ThreatPatternCreate,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    pattern = ThreatPattern(
        id=payload.id,
        name=payload.name,
        conditions=_conditions(payload.conditions),
        severity=payload.severity,
        pattern_type=payload.pattern_type,
        description=payload.description,
        is_active=payload.is_active,
    )
    await pipeline.threat_detector.add_pattern(pattern)
    return pattern.to_dict()


@router.get("/alert-rules")
async def list_alert_rules(pipeline: DefensePipeline = Depends(get_pipeline)):
    return {"rules": [rule.to_dict() for rule in pipeline.alert_engine.rules.values()]}


@router.post("/alert-rules", status_code=status.HTTP_201_CREATED)
async def create_alert_rule(
    payload: AlertRuleCreate,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    rule = AlertRule(
        id=payload.id,
        name=payload.name,
        event_type=payload.event_type,
        severity=payload.severity,
        threshold=payload.threshold,
        time_window_minutes=payload.time_window_minutes,
        conditions=_conditions(payload.conditions),
        channels=payload.channels,
        enabled=payload.enabled,
    )
    await pipeline.alert_engine.save_rule(rule)
    return rule.to_dict()


@router.post("/alert-rules/{rule_id}/enable")
async def enable_alert_rule(rule_id: str, pipeline: DefensePipeline = Depends(get_pipeline)):
    return pipeline.alert_engine.set_rule_enabled(rule_id, True).to_dict()


@router.post("/alert-rules/{rule_id}/disable")
async def disable_alert_rule(rule_id: str, pipeline: DefensePipeline = Depends(get_pipeline)):
    return pipeline.alert_engine.set_rule_enabled(rule_id, False).to_dict()


@router.get("/alerts")
async def get_alert_summary(pipeline: DefensePipeline = Depends(get_pipeline)):
    summary: Dict[str, Any] = pipeline.alert_engine.get_alert_summary()
    summary["notifications"] = pipeline.dispatcher.get_statistics()
    return summary


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    action: OperatorAction,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    return pipeline.alert_engine.acknowledge_alert(alert_id, action.by).to_dict()


@router.post("/alerts/test")
async def send_test_alert(
    payload: Optional[AlertTestRequest] = None,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    """Deliver a test alert and report the outcome per channel."""
    channels = list(pipeline.dispatcher.channels)
    if payload is not None and payload.channels is not None:
        channels = payload.channels
    alert = Alert(
        rule_id="test_alert",
        rule_name="Test alert",
        event_type="test",
        severity=Severity.LOW,
        count=1,
        ip="system",
    )
    results = await pipeline.dispatcher.deliver(alert, channels)
    return {"alert_id": alert.alert_id, "results": results}


# Behaviour reports

def _threats_response(threats) -> Dict[str, Any]:
    return {"threats": [t.to_dict() for t in threats], "count": len(threats)}


@router.post("/reports/failed-login")
async def report_failed_login(
    report: FailedLoginReport,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    threats = await pipeline.report_failed_login(report.ip_address, report.identifier, report.user_id)
    return _threats_response(threats)


@router.post("/reports/api-usage")
async def report_api_usage(
    report: ApiUsageReport,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    threats = await pipeline.report_api_usage(
        report.ip_address, report.user_id, report.api_call_count, report.unique_endpoints
    )
    return _threats_response(threats)


@router.post("/reports/data-access")
async def report_data_access(
    report: DataAccessReport,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    threats = await pipeline.report_data_access(
        report.ip_address, report.user_id, report.endpoint,
        report.data_size, report.recent_request_count,
    )
    return _threats_response(threats)


# Rate limits

@router.get("/rate-limits")
async def get_rate_limit_scopes(pipeline: DefensePipeline = Depends(get_pipeline)):
    return {
        "default_scope": pipeline.rate_limits.default_scope,
        "scopes": {
            name: {"max_requests": config.max_requests, "window_ms": config.window_ms}
            for name, config in pipeline.rate_limits.scopes.items()
        },
    }


@router.get("/rate-limits/{scope}/{identifier}")
async def get_rate_limit_status(
    scope: str,
    identifier: str,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    """Current window for a key without consuming a slot."""
    try:
        result = await pipeline.rate_limits.status(scope, identifier)
    except KeyError:
        raise create_not_found_exception("Rate limit scope", scope)
    return {"scope": scope, "identifier": identifier, **result.to_dict()}


@router.delete("/rate-limits/{scope}/{identifier}")
async def reset_rate_limit(
    scope: str,
    identifier: str,
    pipeline: DefensePipeline = Depends(get_pipeline),
):
    try:
        await pipeline.rate_limits.reset(scope, identifier)
    except KeyError:
        raise create_not_found_exception("Rate limit scope", scope)
    return {"scope": scope, "identifier": identifier, "reset": True}
