"""
Domain models for the request defense pipeline.

Rules, list entries, conditions and alert rules are configuration; security
events and alerts are the audit trail; verdicts are the per-request output.
"""

import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    """Severity levels shared by rules, events and alerts."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class RuleAction(str, Enum):
    """What a WAF rule asks for when it matches."""
    BLOCK = "block"
    LOG = "log"
    CHALLENGE = "challenge"


class VerdictAction(str, Enum):
    """Final decision for a request."""
    ALLOW = "ALLOW"
    CHALLENGE = "CHALLENGE"
    BLOCK = "BLOCK"


class EscalationState(str, Enum):
    """Per-IP escalation state derived from the violation count."""
    MONITORING = "monitoring"
    CHALLENGED = "challenged"
    BLOCKED = "blocked"


class IPPatternKind(str, Enum):
    """Supported IP list entry formats."""
    EXACT = "exact"
    WILDCARD = "wildcard"
    CIDR = "cidr"
    RANGE = "range"


class IPDecision(str, Enum):
    """Outcome of IP access classification."""
    ALLOW = "ALLOW"
    DENY = "DENY"
    PATTERN = "PATTERN"
    UNLISTED = "UNLISTED"


class ConditionOperator(str, Enum):
    """Operators available to weighted conditions."""
    EQUALS = "equals"
    CONTAINS = "contains"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN_RANGE = "in_range"


class EventType(str, Enum):
    """Known security event types."""
    WAF_VIOLATION = "waf_violation"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    XSS_ATTEMPT = "xss_attempt"
    WAF_BLOCK = "waf_block"
    WAF_CHALLENGE = "waf_challenge"
    IP_BLOCKED = "ip_blocked"
    IP_ACCESS_DEGRADED = "ip_access_degraded"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTHENTICATION_FAILED = "authentication_failed"
    SUSPICIOUS_API_USAGE = "suspicious_api_usage"
    THREAT_DETECTED = "threat_detected"
    BRUTE_FORCE = "brute_force"
    DATA_EXFILTRATION = "data_exfiltration"


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class WAFRule:
    """Pattern rule applied to every inspectable request surface."""
    id: str
    name: str
    pattern: str
    severity: Severity
    action: RuleAction
    description: str = ""
    category: str = "generic"
    enabled: bool = True


@dataclass
class Violation:
    """A single rule match on one request surface."""
    rule_id: str
    rule_name: str
    category: str
    severity: Severity
    action: RuleAction
    match: str
    location: str

    @property
    def counts_toward_escalation(self) -> bool:
        return self.action != RuleAction.LOG

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["action"] = self.action.value
        return data


@dataclass
class IPListEntry:
    """Whitelist or blacklist entry; kind is inferred when not given."""
    ip_or_pattern: str
    kind: Optional[IPPatternKind] = None
    priority: int = 0
    is_active: bool = True
    expires_at: Optional[datetime] = None
    description: str = ""
    created_by: Optional[str] = None

    def __post_init__(self):
        self.ip_or_pattern = self.ip_or_pattern.strip()
        if self.kind is None:
            self.kind = infer_pattern_kind(self.ip_or_pattern)
        elif not isinstance(self.kind, IPPatternKind):
            self.kind = IPPatternKind(self.kind)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_or_pattern": self.ip_or_pattern,
            "kind": self.kind.value,
            "priority": self.priority,
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "description": self.description,
            "created_by": self.created_by,
        }


def infer_pattern_kind(pattern: str) -> IPPatternKind:
    """Guess the entry kind from its text."""
    if "/" in pattern:
        return IPPatternKind.CIDR
    if "*" in pattern:
        return IPPatternKind.WILDCARD
    if "-" in pattern:
        return IPPatternKind.RANGE
    return IPPatternKind.EXACT


@dataclass
class ViolationRecord:
    """Live per-IP violation state. Never persisted."""
    count: int
    last_violation_at: float


@dataclass
class RateLimitResult:
    """Sliding window check result. Times are epoch milliseconds."""
    allowed: bool
    remaining: int
    reset_time: int
    total_hits: int
    limit: int
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WeightedCondition:
    """One scored predicate over a dot-path field of event data."""
    field: str
    operator: ConditionOperator
    value: Any
    weight: float = 1.0

    def __post_init__(self):
        if not isinstance(self.operator, ConditionOperator):
            self.operator = ConditionOperator(self.operator)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeightedCondition":
        return cls(
            field=data["field"],
            operator=ConditionOperator(data["operator"]),
            value=data.get("value"),
            weight=float(data.get("weight", 1.0)),
        )


@dataclass
class ThreatPattern:
    """Weighted-condition rule assigning a threat score to behavioural data."""
    id: str
    name: str
    conditions: List[WeightedCondition]
    severity: Severity
    pattern_type: str = "behavioral"
    description: str = ""
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "conditions": [c.to_dict() for c in self.conditions],
            "severity": self.severity.value,
            "pattern_type": self.pattern_type,
            "description": self.description,
            "is_active": self.is_active,
        }


@dataclass
class AlertRule:
    """Count-threshold rule over security events of one type."""
    id: str
    name: str
    event_type: str
    severity: Severity
    threshold: int
    time_window_minutes: int
    conditions: List[WeightedCondition] = field(default_factory=list)
    channels: List[str] = field(default_factory=lambda: ["webhook"])
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "threshold": self.threshold,
            "time_window_minutes": self.time_window_minutes,
            "conditions": [c.to_dict() for c in self.conditions],
            "channels": list(self.channels),
            "enabled": self.enabled,
        }


# Event details, tagged by ``kind``

@dataclass
class EventDetails:
    """Base for typed event details. ``extra`` holds unformalized fields."""
    kind: ClassVar[str] = "generic"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {k: _enum_value(v) for k, v in asdict(self).items()}
        data["kind"] = self.kind
        return data


@dataclass
class GenericDetails(EventDetails):
    kind: ClassVar[str] = "generic"


@dataclass
class WAFViolationDetails(EventDetails):
    kind: ClassVar[str] = "waf_violation"
    rule_id: str = ""
    rule_name: str = ""
    match: str = ""
    location: str = ""
    url: str = ""
    method: str = ""
    user_agent: str = ""


@dataclass
class AccessControlDetails(EventDetails):
    kind: ClassVar[str] = "access_control"
    decision: str = ""
    reason: str = ""
    url: str = ""
    violation_count: int = 0


@dataclass
class RateLimitDetails(EventDetails):
    kind: ClassVar[str] = "rate_limit"
    scope: str = ""
    key: str = ""
    limit: int = 0
    total_hits: int = 0
    reset_time: int = 0


@dataclass
class ThreatDetails(EventDetails):
    kind: ClassVar[str] = "threat"
    pattern_id: str = ""
    pattern_name: str = ""
    threat_score: float = 0.0
    matched_conditions: int = 0


@dataclass
class DegradedModeDetails(EventDetails):
    kind: ClassVar[str] = "degraded_mode"
    component: str = ""
    fail_open: bool = True
    error: str = ""


DETAILS_TYPES: Dict[str, Type[EventDetails]] = {
    cls.kind: cls
    for cls in (
        GenericDetails,
        WAFViolationDetails,
        AccessControlDetails,
        RateLimitDetails,
        ThreatDetails,
        DegradedModeDetails,
    )
}


def details_from_dict(data: Optional[Dict[str, Any]]) -> EventDetails:
    """Rebuild typed details; unknown keys go to ``extra``."""
    data = dict(data or {})
    cls = DETAILS_TYPES.get(data.pop("kind", "generic"), GenericDetails)
    known = {f.name for f in fields(cls)}
    extra = dict(data.pop("extra", None) or {})
    kwargs = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = value
        else:
            extra[key] = value
    return cls(extra=extra, **kwargs)


@dataclass
class SecurityEvent:
    """One detection in the audit trail.

    Only the acknowledgement and resolution fields change after creation,
    through ``acknowledge`` and ``resolve``.
    """
    event_type: str
    severity: Severity
    title: str
    description: str
    ip_address: str
    details: EventDetails = field(default_factory=GenericDetails)
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None

    def __post_init__(self):
        self.event_type = _enum_value(self.event_type)
        if not isinstance(self.severity, Severity):
            self.severity = Severity(self.severity)

    def acknowledge(self, by: str, at: Optional[datetime] = None) -> None:
        self.acknowledged = True
        self.acknowledged_by = by
        self.acknowledged_at = at or utcnow()

    def resolve(self, by: str, at: Optional[datetime] = None) -> None:
        if not self.acknowledged:
            self.acknowledge(by, at)
        self.resolved = True
        self.resolved_by = by
        self.resolved_at = at or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "details": self.details.to_dict(),
            "ip_address": self.ip_address,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "acknowledged": self.acknowledged,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
        }


@dataclass
class Alert:
    """Raised when an alert rule's threshold is crossed."""
    rule_id: str
    rule_name: str
    event_type: str
    severity: Severity
    count: int
    ip: str
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "count": self.count,
            "ip": self.ip,
            "user_id": self.user_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
        }


@dataclass
class RequestDescriptor:
    """Transport-neutral view of an inbound request."""
    method: str
    url: str
    path: str = "/"
    query_params: List[tuple] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    body: Optional[bytes] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def forwarded_for(self) -> List[str]:
        chain = self.headers.get("x-forwarded-for", "")
        return [hop.strip() for hop in chain.split(",") if hop.strip()]


@dataclass
class Verdict:
    """Pipeline decision plus the response metadata to apply."""
    action: VerdictAction
    http_status: int
    client_ip: str
    reason: str = "allowed"
    waf_status: str = "ALLOWED"
    escalation_state: EscalationState = EscalationState.MONITORING
    rate_limit: Optional[RateLimitResult] = None
    violations: List[Violation] = field(default_factory=list)
    response_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.action == VerdictAction.ALLOW
