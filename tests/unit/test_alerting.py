"""
Unit tests for the alert rule engine.
"""

import asyncio

import pytest

from request_defense.models.security import AlertRule, ConditionOperator, Severity, WeightedCondition
from request_defense.services.alerting import DEFAULT_ALERT_RULES, AlertEngine
from request_defense.utils.exceptions import NotFoundError


async def log_and_process(engine: AlertEngine, event):
    engine.event_store.log_event(event)
    return await engine.process(event)


@pytest.mark.unit
class TestAlertEngine:
    """Test suite for threshold alerting and latching."""

    @pytest.fixture
    def engine(self, event_store, dispatcher, clock, sample_alert_rule):
        return AlertEngine(event_store, dispatcher=dispatcher, rules=[sample_alert_rule], clock=clock)

    async def test_alert_raised_at_threshold(self, engine, event_factory, webhook_channel):
        results = [await log_and_process(engine, event_factory(ip="1.1.1.1")) for _ in range(3)]

        assert [len(r) for r in results] == [0, 0, 1]
        alert = results[2][0]
        assert alert.rule_id == "test_failed_logins"
        assert alert.count == 3
        assert alert.severity == Severity.HIGH
        assert alert.ip == "1.1.1.1"

        await asyncio.sleep(0.05)
        assert [a.alert_id for a in webhook_channel.sent] == [alert.alert_id]

    async def test_latched_until_window_expires(self, engine, event_factory, clock):
        raised = []
        for _ in range(10):
            raised.extend(await log_and_process(engine, event_factory(ip="1.1.1.1")))
        assert len(raised) == 1

        clock.advance(5 * 60)
        raised.extend(await log_and_process(engine, event_factory(ip="1.1.1.1")))
        assert len(raised) == 2

    async def test_latch_is_per_ip(self, engine, event_factory):
        raised = []
        for ip in ("1.1.1.1", "2.2.2.2"):
            for _ in range(3):
                raised.extend(await log_and_process(engine, event_factory(ip=ip)))
        assert {a.ip for a in raised} == {"1.1.1.1", "2.2.2.2"}

    async def test_concurrent_events_raise_one_alert(self, engine, event_factory):
        events = [event_factory(ip="1.1.1.1") for _ in range(10)]
        for event in events:
            engine.event_store.log_event(event)

        results = await asyncio.gather(*(engine.process(e) for e in events))
        assert sum(len(r) for r in results) == 1

    async def test_other_event_types_ignored(self, engine, event_factory):
        for _ in range(5):
            assert await log_and_process(engine, event_factory("rate_limit_exceeded")) == []

    async def test_disabled_rule_is_skipped(self, engine, event_factory):
        engine.set_rule_enabled("test_failed_logins", False)
        for _ in range(5):
            assert await log_and_process(engine, event_factory()) == []

    async def test_rule_conditions_gate_alerts(self, event_store, dispatcher, clock, event_factory):
        rule = AlertRule(
            id="critical_only",
            name="Critical XSS",
            event_type="xss_attempt",
            severity=Severity.CRITICAL,
            threshold=1,
            time_window_minutes=1,
            conditions=[WeightedCondition("severity", ConditionOperator.EQUALS, "critical", 50)],
        )
        engine = AlertEngine(event_store, dispatcher=dispatcher, rules=[rule], clock=clock)

        low = event_factory("xss_attempt", severity=Severity.LOW)
        assert await log_and_process(engine, low) == []

        critical = event_factory("xss_attempt", severity=Severity.CRITICAL)
        assert len(await log_and_process(engine, critical)) == 1

    async def test_load_rules_merges_stored(self, event_store, repository, clock):
        stored = AlertRule(
            id="rate_limit_exceeded",
            name="Rate Limit Exceeded (tuned)",
            event_type="rate_limit_exceeded",
            severity=Severity.HIGH,
            threshold=10,
            time_window_minutes=5,
        )
        await repository.save_alert_rule(stored)
        engine = AlertEngine(event_store, repository=repository, clock=clock)
        await engine.load_rules()

        assert len(engine.rules) == len(DEFAULT_ALERT_RULES)
        assert engine.rules["rate_limit_exceeded"].threshold == 10

    async def test_save_rule_persists(self, event_store, repository, clock, sample_alert_rule):
        engine = AlertEngine(event_store, repository=repository, clock=clock)
        await engine.save_rule(sample_alert_rule)
        assert "test_failed_logins" in repository.alert_rules
        assert "test_failed_logins" in engine.rules

    async def test_expired_latches_evicted(self, engine, event_factory, clock):
        for _ in range(3):
            await log_and_process(engine, event_factory(ip="1.1.1.1"))
        assert engine.evict_expired_latches() == 0
        clock.advance(5 * 60)
        assert engine.evict_expired_latches() == 1

    async def test_acknowledge_alert_and_summary(self, engine, event_factory):
        for _ in range(3):
            alerts = await log_and_process(engine, event_factory(ip="1.1.1.1"))
        alert = alerts[0]

        summary = engine.get_alert_summary()
        assert summary["total_alerts"] == 1
        assert summary["unacknowledged"] == 1
        assert summary["by_severity"] == {"high": 1}

        engine.acknowledge_alert(alert.alert_id, "oncall")
        assert engine.get_alert_summary()["unacknowledged"] == 0

        with pytest.raises(NotFoundError):
            engine.acknowledge_alert("missing", "oncall")
