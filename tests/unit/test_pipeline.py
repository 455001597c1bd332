"""
Unit tests for the request defense pipeline.
"""

import asyncio

import pytest

from request_defense.models.security import EscalationState, VerdictAction
from request_defense.services.pipeline import DefensePipeline

XSS_QUERY = "q=<script>alert(1)</script>"


def pending_types(pipeline: DefensePipeline):
    return [e.event_type for e in pipeline.event_store.pending()]


@pytest.mark.unit
class TestDefensePipeline:
    """Test suite for per-request verdicts."""

    async def test_clean_request_allowed_with_rate_limit_headers(self, pipeline, descriptor_factory):
        verdict = await pipeline.inspect(descriptor_factory(query="page=2"))

        assert verdict.action == VerdictAction.ALLOW
        assert verdict.http_status == 200
        assert verdict.client_ip == "198.51.100.7"
        assert verdict.response_headers["X-WAF-Status"] == "ALLOWED"
        assert verdict.response_headers["X-RateLimit-Limit"] == "100"
        assert verdict.response_headers["X-RateLimit-Remaining"] == "99"
        assert "X-RateLimit-Reset" in verdict.response_headers
        assert "Retry-After" not in verdict.response_headers
        assert pending_types(pipeline) == []

    async def test_forwarded_client_ip_is_used(self, pipeline, descriptor_factory):
        descriptor = descriptor_factory(headers={"X-Forwarded-For": "192.0.2.66, 10.0.0.1"})
        verdict = await pipeline.inspect(descriptor)
        assert verdict.client_ip == "192.0.2.66"
        assert verdict.action == VerdictAction.BLOCK

    async def test_whitelisted_ip_skips_matching_and_rate_limits(self, pipeline, descriptor_factory):
        verdict = await pipeline.inspect(descriptor_factory(query=XSS_QUERY, ip="10.1.1.1"))

        assert verdict.action == VerdictAction.ALLOW
        assert verdict.reason == "whitelisted"
        assert verdict.violations == []
        assert verdict.rate_limit is None
        assert verdict.response_headers == {"X-WAF-Status": "ALLOWED"}

    async def test_blacklisted_ip_blocked(self, pipeline, descriptor_factory):
        verdict = await pipeline.inspect(descriptor_factory(ip="192.0.2.66"))

        assert verdict.action == VerdictAction.BLOCK
        assert verdict.http_status == 403
        assert verdict.reason == "blacklisted"
        assert verdict.response_headers["X-WAF-Status"] == "BLOCKED"
        assert "ip_blocked" in pending_types(pipeline)

    async def test_script_payload_logs_xss_event(self, pipeline, descriptor_factory):
        verdict = await pipeline.inspect(descriptor_factory(query=XSS_QUERY))

        assert verdict.action == VerdictAction.ALLOW
        assert [v.rule_id for v in verdict.violations] == ["xss_1"]

        events = pipeline.event_store.pending()
        xss = [e for e in events if e.event_type == "xss_attempt"]
        assert len(xss) == 1
        assert xss[0].severity.value == "critical"
        assert xss[0].details.rule_id == "xss_1"
        assert xss[0].details.location == "Query Parameter: q"
        assert "threat_detected" in pending_types(pipeline)

    async def test_repeated_violations_escalate(self, pipeline, descriptor_factory):
        verdicts = [await pipeline.inspect(descriptor_factory(query=XSS_QUERY)) for _ in range(10)]

        assert [v.action for v in verdicts[:4]] == [VerdictAction.ALLOW] * 4

        challenged = verdicts[4]
        assert challenged.action == VerdictAction.CHALLENGE
        assert challenged.http_status == 429
        assert challenged.escalation_state == EscalationState.CHALLENGED
        assert challenged.response_headers["X-WAF-Status"] == "CHALLENGE"
        assert int(challenged.response_headers["Retry-After"]) >= 60

        blocked = verdicts[9]
        assert blocked.action == VerdictAction.BLOCK
        assert blocked.http_status == 403
        assert blocked.response_headers["X-WAF-Status"] == "BLOCKED"
        assert blocked.rate_limit is None

        types = pending_types(pipeline)
        assert "waf_challenge" in types
        assert "waf_block" in types

    async def test_blocked_ip_stays_blocked_until_decay(self, pipeline, descriptor_factory, clock):
        for _ in range(10):
            await pipeline.inspect(descriptor_factory(query=XSS_QUERY))

        assert (await pipeline.inspect(descriptor_factory())).action == VerdictAction.BLOCK

        clock.advance(16 * 60)
        assert (await pipeline.inspect(descriptor_factory())).action == VerdictAction.ALLOW

    async def test_auth_scope_rate_limited(self, pipeline, descriptor_factory):
        descriptor = descriptor_factory(path="/api/v1/auth/login", method="POST")
        verdicts = [await pipeline.inspect(descriptor) for _ in range(6)]

        assert [v.action for v in verdicts[:5]] == [VerdictAction.ALLOW] * 5
        limited = verdicts[5]
        assert limited.action == VerdictAction.CHALLENGE
        assert limited.reason == "rate limited"
        assert limited.http_status == 429
        assert limited.response_headers["X-RateLimit-Remaining"] == "0"
        assert int(limited.response_headers["Retry-After"]) > 0
        assert "rate_limit_exceeded" in pending_types(pipeline)

    async def test_rate_limit_keyed_by_user(self, pipeline, descriptor_factory):
        for _ in range(5):
            await pipeline.inspect(descriptor_factory(path="/api/v1/auth/login", user_id="alice"))
        verdict = await pipeline.inspect(descriptor_factory(path="/api/v1/auth/login", user_id="bob"))
        assert verdict.action == VerdictAction.ALLOW

    async def test_degraded_fail_closed_blocks(
        self, test_settings, repository, dispatcher, clock, descriptor_factory
    ):
        settings = test_settings.model_copy(update={"IP_ACCESS_FAIL_OPEN": False})
        repository.fail_reads = True
        pipeline = DefensePipeline(settings=settings, repository=repository, dispatcher=dispatcher, clock=clock)

        verdict = await pipeline.inspect(descriptor_factory())

        assert verdict.action == VerdictAction.BLOCK
        assert verdict.http_status == 403
        assert verdict.response_headers["X-WAF-Status"] == "DEGRADED"
        assert "ip_access_degraded" in pending_types(pipeline)

    async def test_degraded_fail_open_still_inspects(self, pipeline, repository, descriptor_factory):
        repository.fail_reads = True

        clean = await pipeline.inspect(descriptor_factory())
        assert clean.action == VerdictAction.ALLOW
        assert clean.response_headers["X-WAF-Status"] == "DEGRADED"

        hostile = await pipeline.inspect(descriptor_factory(query=XSS_QUERY))
        assert [v.rule_id for v in hostile.violations] == ["xss_1"]

    async def test_waf_disabled(self, test_settings, repository, dispatcher, clock, descriptor_factory):
        settings = test_settings.model_copy(update={"WAF_ENABLED": False})
        pipeline = DefensePipeline(settings=settings, repository=repository, dispatcher=dispatcher, clock=clock)

        verdict = await pipeline.inspect(descriptor_factory(query=XSS_QUERY, ip="192.0.2.66"))

        assert verdict.action == VerdictAction.ALLOW
        assert verdict.response_headers["X-WAF-Status"] == "DISABLED"
        assert verdict.rate_limit is not None
        assert verdict.violations == []

    async def test_event_failures_do_not_change_verdict(self, pipeline, descriptor_factory, monkeypatch):
        async def broken(event):
            raise RuntimeError("alerting down")

        monkeypatch.setattr(pipeline.alert_engine, "process", broken)
        verdict = await pipeline.inspect(descriptor_factory(ip="192.0.2.66"))
        assert verdict.action == VerdictAction.BLOCK

    async def test_record_event(self, pipeline, event_factory):
        event = event_factory()
        pipeline.record_event(event)
        await asyncio.sleep(0.01)
        assert pipeline.event_store.pending()[0].event_id == event.event_id

    async def test_maintenance_evicts_idle_state(self, pipeline, descriptor_factory, clock):
        await pipeline.inspect(descriptor_factory(query=XSS_QUERY))
        assert pipeline.maintenance()["ledger"] == 0

        clock.advance(60 * 60)
        evicted = pipeline.maintenance()
        assert evicted["ledger"] == 1
        assert evicted["rate_limit"] >= 1

    async def test_waf_statistics(self, pipeline, descriptor_factory):
        for _ in range(5):
            await pipeline.inspect(descriptor_factory(query=XSS_QUERY))

        stats = pipeline.get_waf_statistics()
        assert stats["tracked_ips"] == 1
        assert stats["challenged_ips"] == 1
        assert stats["blocked_ips"] == 0
        assert stats["top_violating_ips"] == [{"ip": "198.51.100.7", "count": 5}]
        assert stats["verdicts"] == {"ALLOW": 4, "CHALLENGE": 1}

    async def test_start_and_stop_flush_events(self, pipeline, repository, descriptor_factory):
        await pipeline.start()
        await pipeline.inspect(descriptor_factory(ip="192.0.2.66"))
        await pipeline.stop()

        assert "ip_blocked" in {e.event_type for e in repository.events.values()}


@pytest.mark.unit
class TestStorageTimeouts:
    """Test suite for verdicts while storage hangs."""

    @pytest.fixture
    def slow_storage_pipeline(self, test_settings, repository, dispatcher, clock):
        settings = test_settings.model_copy(update={"STORAGE_TIMEOUT_SECONDS": 0.05})
        return DefensePipeline(settings=settings, repository=repository, dispatcher=dispatcher, clock=clock)

    async def test_hung_event_count_does_not_delay_verdict(
        self, slow_storage_pipeline, repository, descriptor_factory
    ):
        repository.hang_counts = True
        verdict = await asyncio.wait_for(
            slow_storage_pipeline.inspect(descriptor_factory(query=XSS_QUERY)), timeout=1
        )
        assert [v.rule_id for v in verdict.violations] == ["xss_1"]

        await asyncio.sleep(0.3)
        assert "xss_attempt" in {a.rule_id for a in slow_storage_pipeline.alert_engine.history}

    async def test_hung_whitelist_refresh_fails_open(
        self, slow_storage_pipeline, repository, descriptor_factory
    ):
        repository.hang_reads = True
        verdict = await asyncio.wait_for(slow_storage_pipeline.inspect(descriptor_factory()), timeout=1)

        assert verdict.action == VerdictAction.ALLOW
        assert verdict.response_headers["X-WAF-Status"] == "DEGRADED"
        assert "ip_access_degraded" in pending_types(slow_storage_pipeline)

    async def test_hung_whitelist_refresh_fails_closed(
        self, test_settings, repository, dispatcher, clock, descriptor_factory
    ):
        settings = test_settings.model_copy(
            update={"STORAGE_TIMEOUT_SECONDS": 0.05, "IP_ACCESS_FAIL_OPEN": False}
        )
        pipeline = DefensePipeline(settings=settings, repository=repository, dispatcher=dispatcher, clock=clock)
        repository.hang_reads = True

        verdict = await asyncio.wait_for(pipeline.inspect(descriptor_factory()), timeout=1)
        assert verdict.action == VerdictAction.BLOCK
        assert verdict.response_headers["X-WAF-Status"] == "DEGRADED"


@pytest.mark.unit
class TestBehaviourReports:
    """Test suite for behaviour detection reported by the host application."""

    async def test_failed_logins_become_brute_force(self, pipeline):
        for _ in range(9):
            assert await pipeline.report_failed_login("203.0.113.5", "alice@example.com") == []

        threats = await pipeline.report_failed_login("203.0.113.5", "alice@example.com")
        assert [t.event_type for t in threats] == ["brute_force"]

        types = pending_types(pipeline)
        assert types.count("authentication_failed") == 10
        assert "brute_force" in types

    async def test_failed_logins_counted_per_address(self, pipeline):
        for i in range(10):
            threats = await pipeline.report_failed_login(f"203.0.113.{i}", "alice@example.com")
            assert threats == []

    async def test_api_usage_report(self, pipeline):
        threats = await pipeline.report_api_usage("203.0.113.5", "u1", 1001, 10)
        assert [t.details.pattern_id for t in threats] == ["excessive_api_usage"]
        assert pending_types(pipeline) == ["suspicious_api_usage"]

        assert await pipeline.report_api_usage("203.0.113.5", "u1", 10, 10) == []

    async def test_data_access_report(self, pipeline):
        threats = await pipeline.report_data_access("203.0.113.5", "u1", "/api/v1/orders", 2_000_000)
        assert [t.event_type for t in threats] == ["data_exfiltration"]
        assert pending_types(pipeline) == ["data_exfiltration"]
