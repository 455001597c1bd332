"""
Unit tests for the SQLAlchemy security repository on in-memory SQLite.
"""

from datetime import timedelta

import pytest

from request_defense.db.sql_repository import SqlSecurityRepository
from request_defense.models.security import (
    AlertRule, ConditionOperator, IPListEntry, IPPatternKind, Severity,
    ThreatPattern, WAFViolationDetails, WeightedCondition, utcnow
)
from request_defense.utils.exceptions import TransientStorageError


@pytest.fixture
def sql_repository() -> SqlSecurityRepository:
    return SqlSecurityRepository.from_url("sqlite:///:memory:")


@pytest.mark.unit
class TestSqlSecurityRepository:
    """Test suite for persistence of events and security configuration."""

    async def test_save_is_idempotent(self, sql_repository, event_factory):
        event = event_factory()
        await sql_repository.save_events([event])
        await sql_repository.save_events([event])

        events = await sql_repository.list_events()
        assert [e.event_id for e in events] == [event.event_id]

    async def test_count_events(self, sql_repository, event_factory):
        old = event_factory(ip="1.1.1.1")
        old.timestamp = utcnow() - timedelta(minutes=30)
        await sql_repository.save_events([
            event_factory(ip="1.1.1.1", user_id="alice"),
            event_factory(ip="1.1.1.1"),
            event_factory(ip="2.2.2.2"),
            event_factory("xss_attempt", ip="1.1.1.1"),
            old,
        ])

        assert await sql_repository.count_events("authentication_failed", 15, "1.1.1.1") == 2
        assert await sql_repository.count_events("authentication_failed", 15, "1.1.1.1", "alice") == 1
        assert await sql_repository.count_events("authentication_failed", 60, "1.1.1.1") == 3

    async def test_list_events_newest_first_with_limit(self, sql_repository, event_factory):
        first, second = event_factory(), event_factory()
        second.timestamp = first.timestamp + timedelta(seconds=5)
        await sql_repository.save_events([first, second])

        events = await sql_repository.list_events(limit=1)
        assert [e.event_id for e in events] == [second.event_id]
        assert events[0].timestamp.tzinfo is not None

    async def test_details_round_trip(self, sql_repository, event_factory):
        event = event_factory("xss_attempt", severity=Severity.CRITICAL)
        event.details = WAFViolationDetails(
            rule_id="xss_1", rule_name="XSS - Script Tags", match="<script>",
            location="Query Parameter: q", url="/search?q=x", method="GET",
        )
        await sql_repository.save_events([event])

        loaded = await sql_repository.get_event(event.event_id)
        assert isinstance(loaded.details, WAFViolationDetails)
        assert loaded.details.rule_id == "xss_1"
        assert loaded.severity == Severity.CRITICAL

    async def test_update_event(self, sql_repository, event_factory):
        event = event_factory()
        await sql_repository.save_events([event])

        event.resolve("oncall")
        await sql_repository.update_event(event)

        loaded = await sql_repository.get_event(event.event_id)
        assert loaded.resolved is True
        assert loaded.resolved_by == "oncall"
        assert await sql_repository.get_event("missing") is None

    async def test_whitelist_entries(self, sql_repository, sample_whitelist_entry):
        expired = IPListEntry("203.0.113.1", expires_at=utcnow() - timedelta(hours=1))
        inactive = IPListEntry("203.0.113.2", is_active=False)
        for entry in (sample_whitelist_entry, expired, inactive):
            await sql_repository.save_whitelist_entry(entry)

        active = await sql_repository.get_active_whitelist()
        assert [e.ip_or_pattern for e in active] == ["172.16.0.0/12"]
        assert active[0].kind == IPPatternKind.CIDR
        assert active[0].priority == 10

        assert await sql_repository.delete_whitelist_entry("172.16.0.0/12") is True
        assert await sql_repository.delete_whitelist_entry("172.16.0.0/12") is False
        assert await sql_repository.get_active_whitelist() == []

    async def test_threat_patterns(self, sql_repository):
        conditions = [WeightedCondition("user_agent", ConditionOperator.CONTAINS, "curl", 60)]
        await sql_repository.save_threat_pattern(
            ThreatPattern(id="curl", name="curl client", conditions=conditions, severity=Severity.LOW)
        )
        await sql_repository.save_threat_pattern(ThreatPattern(
            id="off", name="Disabled", conditions=conditions, severity=Severity.LOW, is_active=False
        ))

        patterns = await sql_repository.get_active_patterns()
        assert [p.id for p in patterns] == ["curl"]
        assert patterns[0].conditions[0].operator == ConditionOperator.CONTAINS
        assert patterns[0].conditions[0].weight == 60

    async def test_alert_rules(self, sql_repository, sample_alert_rule):
        await sql_repository.save_alert_rule(sample_alert_rule)
        await sql_repository.save_alert_rule(AlertRule(
            id="off", name="Disabled", event_type="xss_attempt", severity=Severity.LOW,
            threshold=1, time_window_minutes=1, enabled=False,
        ))

        rules = await sql_repository.get_active_alert_rules()
        assert [r.id for r in rules] == ["test_failed_logins"]
        assert rules[0].channels == ["webhook"]
        assert rules[0].threshold == 3

    async def test_database_errors_become_transient(self, event_factory):
        repository = SqlSecurityRepository.from_url("sqlite:///:memory:", create_tables=False)
        with pytest.raises(TransientStorageError) as exc_info:
            await repository.save_events([event_factory()])
        assert exc_info.value.operation == "save_events"
