"""
Alert rule engine.

For each qualifying security event, every enabled rule with the same event
type counts matching events for the IP (and user) inside the rule's time
window. Crossing the threshold raises one alert per (rule, IP) and latches
until the window expires, so a sustained attack does not produce an alert
storm.
"""

import time
from collections import Counter, deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from loguru import logger

from request_defense.models.security import Alert, AlertRule, SecurityEvent, Severity
from request_defense.services.condition_evaluator import alert_conditions_met, sum_matched_score
from request_defense.services.event_store import EventStore
from request_defense.services.notifications import AlertDispatcher
from request_defense.utils.exceptions import NotFoundError

ALL_CHANNELS = ["webhook", "email", "slack"]

DEFAULT_ALERT_RULES = [
    AlertRule(
        id="multiple_failed_logins",
        name="Multiple Failed Login Attempts",
        event_type="authentication_failed",
        severity=Severity.HIGH,
        threshold=5,
        time_window_minutes=15,
        channels=["webhook", "email"],
    ),
    AlertRule(
        id="rate_limit_exceeded",
        name="Rate Limit Exceeded",
        event_type="rate_limit_exceeded",
        severity=Severity.MEDIUM,
        threshold=3,
        time_window_minutes=5,
        channels=["webhook"],
    ),
    AlertRule(
        id="suspicious_api_usage",
        name="Suspicious API Usage",
        event_type="suspicious_api_usage",
        severity=Severity.HIGH,
        threshold=1,
        time_window_minutes=10,
        channels=ALL_CHANNELS,
    ),
    AlertRule(
        id="sql_injection_attempt",
        name="SQL Injection Attempt",
        event_type="sql_injection_attempt",
        severity=Severity.CRITICAL,
        threshold=1,
        time_window_minutes=1,
        channels=ALL_CHANNELS,
    ),
    AlertRule(
        id="xss_attempt",
        name="XSS Attempt",
        event_type="xss_attempt",
        severity=Severity.CRITICAL,
        threshold=1,
        time_window_minutes=1,
        channels=ALL_CHANNELS,
    ),
    AlertRule(
        id="waf_block",
        name="Client Blocked by WAF",
        event_type="waf_block",
        severity=Severity.HIGH,
        threshold=1,
        time_window_minutes=5,
        channels=["webhook", "slack"],
    ),
    AlertRule(
        id="ip_access_degraded",
        name="IP Access Control Degraded",
        event_type="ip_access_degraded",
        severity=Severity.HIGH,
        threshold=1,
        time_window_minutes=5,
        channels=["webhook", "slack"],
    ),
]


class AlertEngine:
    """Threshold alerting over the security event store."""

    def __init__(
        self,
        event_store: EventStore,
        dispatcher: Optional[AlertDispatcher] = None,
        rules: Optional[List[AlertRule]] = None,
        repository=None,
        clock: Callable[[], float] = time.time,
        history_size: int = 500,
    ):
        self.event_store = event_store
        self.dispatcher = dispatcher
        self.repository = repository
        self._clock = clock
        self._defaults = [replace(rule) for rule in (DEFAULT_ALERT_RULES if rules is None else rules)]
        self.rules: Dict[str, AlertRule] = {rule.id: rule for rule in self._defaults}
        self._latches: Dict[Tuple[str, str], float] = {}
        self.history: Deque[Alert] = deque(maxlen=history_size)

    async def load_rules(self) -> None:
        """Merge stored alert rules over the defaults."""
        if self.repository is None:
            return
        try:
            stored = await self.repository.get_active_alert_rules()
        except Exception as e:
            logger.error(f"Could not load alert rules, using {len(self.rules)} current rules: {e}")
            return
        merged = {rule.id: rule for rule in self._defaults}
        merged.update({rule.id: rule for rule in stored})
        self.rules = merged
        logger.info(f"Loaded {len(stored)} stored alert rules")

    async def save_rule(self, rule: AlertRule) -> AlertRule:
        if self.repository is not None:
            await self.repository.save_alert_rule(rule)
        self.rules[rule.id] = rule
        logger.info(f"Saved alert rule {rule.id}")
        return rule

    def _latched(self, key: Tuple[str, str], now: float) -> bool:
        expires_at = self._latches.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._latches[key]
            return False
        return True

    async def process(self, event: SecurityEvent) -> List[Alert]:
        """Check every matching rule for the event; returns alerts raised."""
        alerts = []
        for rule in list(self.rules.values()):
            if not rule.enabled or rule.event_type != event.event_type:
                continue

            if rule.conditions:
                score = sum_matched_score(rule.conditions, event.to_dict())
                if not alert_conditions_met(score):
                    continue

            key = (rule.id, event.ip_address)
            if self._latched(key, self._clock()):
                continue

            count = await self.event_store.count_events(
                rule.event_type, rule.time_window_minutes, event.ip_address, event.user_id
            )
            if count < rule.threshold:
                continue

            now = self._clock()
            # Another event may have latched the rule while counting
            if self._latched(key, now):
                continue
            self._latches[key] = now + rule.time_window_minutes * 60

            alert = self._raise(rule, event, count)
            alerts.append(alert)
        return alerts

    def _raise(self, rule: AlertRule, event: SecurityEvent, count: int) -> Alert:
        alert = Alert(
            rule_id=rule.id,
            rule_name=rule.name,
            event_type=event.event_type,
            severity=rule.severity,
            count=count,
            ip=event.ip_address,
            user_id=event.user_id,
            metadata={"event_id": event.event_id, "details": event.details.to_dict()},
        )
        self.history.append(alert)
        logger.warning(f"SECURITY ALERT: {rule.name} - {count} events from {event.ip_address}")
        if self.dispatcher is not None:
            self.dispatcher.dispatch(alert, rule.channels)
        return alert

    def evict_expired_latches(self) -> int:
        now = self._clock()
        expired = [key for key, expires_at in self._latches.items() if expires_at <= now]
        for key in expired:
            del self._latches[key]
        return len(expired)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> AlertRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        rule.enabled = enabled
        return rule

    def acknowledge_alert(self, alert_id: str, by: str) -> Alert:
        for alert in self.history:
            if alert.alert_id == alert_id:
                alert.acknowledged = True
                alert.acknowledged_by = by
                return alert
        raise NotFoundError(f"Alert {alert_id} not found")

    def get_alert_summary(self) -> Dict[str, Any]:
        alerts = list(self.history)
        return {
            "total_alerts": len(alerts),
            "unacknowledged": sum(1 for a in alerts if not a.acknowledged),
            "by_severity": dict(Counter(a.severity.value for a in alerts)),
            "by_type": dict(Counter(a.event_type for a in alerts)),
            "recent_alerts": [a.to_dict() for a in reversed(alerts[-10:])],
        }
