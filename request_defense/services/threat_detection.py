"""
Behavioural threat detection over weighted threat patterns.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from request_defense.models.security import (
    ConditionOperator, EventType, SecurityEvent, Severity, ThreatDetails,
    ThreatPattern, WeightedCondition
)
from request_defense.services.condition_evaluator import (
    THREAT_PATTERN_THRESHOLD, mean_matched_score, pattern_triggers
)

BRUTE_FORCE_ATTEMPTS = 10
BRUTE_FORCE_WINDOW_MINUTES = 15
EXCESSIVE_API_CALLS_PER_HOUR = 1000
ENUMERATION_ENDPOINTS_PER_HOUR = 50
LARGE_DATA_BYTES = 1_000_000
BULK_REQUESTS_PER_HOUR = 100

THREAT_EVENT_TYPES = (
    EventType.THREAT_DETECTED.value,
    EventType.BRUTE_FORCE.value,
    EventType.SUSPICIOUS_API_USAGE.value,
    EventType.DATA_EXFILTRATION.value,
)

DEFAULT_THREAT_PATTERNS = [
    ThreatPattern(
        id="scanner_user_agent",
        name="Automated scanner user agent",
        pattern_type="network",
        severity=Severity.HIGH,
        description="Request sent by a known vulnerability scanner",
        conditions=[
            WeightedCondition(
                "user_agent", ConditionOperator.REGEX,
                r"(sqlmap|nikto|nmap|masscan|acunetix|nessus|dirbuster|gobuster|wpscan|zgrab)",
                100,
            ),
        ],
    ),
    ThreatPattern(
        id="critical_payload",
        name="Critical attack payload",
        pattern_type="application",
        severity=Severity.CRITICAL,
        description="Request carried a payload matching a critical WAF rule",
        conditions=[
            WeightedCondition("max_violation_severity", ConditionOperator.EQUALS, "critical", 80),
            WeightedCondition("violation_count", ConditionOperator.GREATER_THAN, 2, 20),
        ],
    ),
    ThreatPattern(
        id="brute_force_attack",
        name="Brute force login",
        pattern_type="behavioral",
        severity=Severity.HIGH,
        description="Repeated failed authentication for one identifier",
        conditions=[
            WeightedCondition("event_type", ConditionOperator.EQUALS, "brute_force_attack", 60),
            WeightedCondition("attempt_count", ConditionOperator.GREATER_THAN, BRUTE_FORCE_ATTEMPTS - 1, 40),
        ],
    ),
    ThreatPattern(
        id="excessive_api_usage",
        name="Excessive API usage",
        pattern_type="behavioral",
        severity=Severity.MEDIUM,
        conditions=[
            WeightedCondition("event_type", ConditionOperator.EQUALS, "excessive_api_usage", 50),
            WeightedCondition("api_call_count", ConditionOperator.GREATER_THAN, EXCESSIVE_API_CALLS_PER_HOUR, 50),
        ],
    ),
    ThreatPattern(
        id="endpoint_enumeration",
        name="Endpoint enumeration",
        pattern_type="behavioral",
        severity=Severity.MEDIUM,
        conditions=[
            WeightedCondition("event_type", ConditionOperator.EQUALS, "endpoint_enumeration", 50),
            WeightedCondition("unique_endpoints", ConditionOperator.GREATER_THAN, ENUMERATION_ENDPOINTS_PER_HOUR, 50),
        ],
    ),
    ThreatPattern(
        id="data_exfiltration",
        name="Data exfiltration",
        pattern_type="data",
        severity=Severity.HIGH,
        conditions=[
            WeightedCondition("event_type", ConditionOperator.REGEX, r"^(large|bulk)_data_request$", 100),
        ],
    ),
]


class ThreatDetector:
    """Scores behavioural event data against active threat patterns.

    Stored patterns are merged over the defaults by id and refreshed
    periodically; a failed refresh keeps the previous table.
    """

    def __init__(
        self,
        repository=None,
        patterns: Optional[List[ThreatPattern]] = None,
        threshold: float = THREAT_PATTERN_THRESHOLD,
        refresh_seconds: float = 60.0,
        storage_timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.threshold = threshold
        self.refresh_seconds = refresh_seconds
        self.storage_timeout_seconds = storage_timeout_seconds
        self._clock = clock
        self._defaults = list(DEFAULT_THREAT_PATTERNS if patterns is None else patterns)
        self._patterns: Dict[str, ThreatPattern] = {p.id: p for p in self._defaults}
        self._last_refresh: Optional[float] = None

    @property
    def patterns(self) -> List[ThreatPattern]:
        return [p for p in self._patterns.values() if p.is_active]

    async def refresh_patterns(self) -> None:
        self._last_refresh = self._clock()
        if self.repository is None:
            return
        try:
            stored = await asyncio.wait_for(
                self.repository.get_active_patterns(), timeout=self.storage_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Threat pattern refresh timed out after {self.storage_timeout_seconds}s, "
                f"keeping {len(self._patterns)} patterns"
            )
            return
        except Exception as e:
            logger.error(f"Threat pattern refresh failed, keeping {len(self._patterns)} patterns: {e}")
            return
        merged = {p.id: p for p in self._defaults}
        merged.update({p.id: p for p in stored})
        self._patterns = merged

    async def add_pattern(self, pattern: ThreatPattern) -> ThreatPattern:
        """Persist a pattern and make it active immediately."""
        if self.repository is not None:
            await self.repository.save_threat_pattern(pattern)
        self._patterns[pattern.id] = pattern
        logger.info(f"Saved threat pattern {pattern.id}")
        return pattern

    async def _refresh_if_due(self) -> None:
        if self._last_refresh is None or self._clock() - self._last_refresh >= self.refresh_seconds:
            await self.refresh_patterns()

    async def detect(
        self,
        event_type: str,
        ip_address: str,
        user_id: Optional[str] = None,
        event_data: Optional[Dict[str, Any]] = None,
        emit_as: str = EventType.THREAT_DETECTED.value,
    ) -> List[SecurityEvent]:
        """Return one event per pattern whose score exceeds the threshold."""
        await self._refresh_if_due()

        data = {
            "event_type": event_type,
            "ip_address": ip_address,
            "user_id": user_id,
            **(event_data or {}),
        }
        threats = []
        for pattern in self.patterns:
            score = mean_matched_score(pattern.conditions, data)
            if not pattern_triggers(score, self.threshold):
                continue
            threats.append(SecurityEvent(
                event_type=emit_as,
                severity=pattern.severity,
                title=f"Threat detected: {pattern.name}",
                description=pattern.description or f"Pattern {pattern.id} matched",
                ip_address=ip_address,
                user_id=user_id,
                details=ThreatDetails(
                    pattern_id=pattern.id,
                    pattern_name=pattern.name,
                    threat_score=round(score.score, 2),
                    matched_conditions=score.matched,
                    extra={"source_event_type": event_type},
                ),
            ))

        for threat in threats:
            logger.warning(
                f"Threat pattern {threat.details.pattern_id} matched for {ip_address} "
                f"(score {threat.details.threat_score})"
            )
        return threats

    async def detect_brute_force(
        self, ip_address: str, identifier: str, attempt_count: int
    ) -> List[SecurityEvent]:
        """Failed logins for ``identifier`` within the last 15 minutes."""
        if attempt_count < BRUTE_FORCE_ATTEMPTS:
            return []
        return await self.detect(
            "brute_force_attack", ip_address,
            event_data={
                "attempt_count": attempt_count,
                "identifier": identifier,
                "time_window": f"{BRUTE_FORCE_WINDOW_MINUTES}_minutes",
            },
            emit_as=EventType.BRUTE_FORCE.value,
        )

    async def detect_suspicious_api_usage(
        self, ip_address: str, user_id: str, api_call_count: int, unique_endpoints: int
    ) -> List[SecurityEvent]:
        """Hourly call volume and endpoint spread for one user."""
        threats = []
        if api_call_count > EXCESSIVE_API_CALLS_PER_HOUR:
            threats.extend(await self.detect(
                "excessive_api_usage", ip_address, user_id,
                {"api_call_count": api_call_count, "unique_endpoints": unique_endpoints,
                 "time_window": "1_hour"},
                emit_as=EventType.SUSPICIOUS_API_USAGE.value,
            ))
        if unique_endpoints > ENUMERATION_ENDPOINTS_PER_HOUR:
            threats.extend(await self.detect(
                "endpoint_enumeration", ip_address, user_id,
                {"unique_endpoints": unique_endpoints, "time_window": "1_hour"},
                emit_as=EventType.SUSPICIOUS_API_USAGE.value,
            ))
        return threats

    async def detect_data_exfiltration(
        self,
        ip_address: str,
        user_id: str,
        endpoint: str,
        data_size: int,
        recent_request_count: int = 0,
    ) -> List[SecurityEvent]:
        """Single oversized response, else bulk reads of one endpoint."""
        if data_size > LARGE_DATA_BYTES:
            return await self.detect(
                "large_data_request", ip_address, user_id,
                {"data_size": data_size, "endpoint": endpoint, "threshold": LARGE_DATA_BYTES},
                emit_as=EventType.DATA_EXFILTRATION.value,
            )
        if recent_request_count > BULK_REQUESTS_PER_HOUR:
            return await self.detect(
                "bulk_data_request", ip_address, user_id,
                {"request_count": recent_request_count, "endpoint": endpoint, "time_window": "1_hour"},
                emit_as=EventType.DATA_EXFILTRATION.value,
            )
        return []
