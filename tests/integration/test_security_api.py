"""
Integration tests for the defended application and its security API.
"""

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from request_defense.services.pipeline import DefensePipeline

SECURITY = "/api/v1/security"
BLACKLISTED = {"X-Forwarded-For": "192.0.2.66"}


@pytest.fixture
def login_client(test_settings, repository, dispatcher):
    """Application with a login route that always rejects credentials."""
    from request_defense.main import create_app

    settings = test_settings.model_copy(update={"RATE_LIMIT_AUTH_REQUESTS": 20})
    pipeline = DefensePipeline(settings=settings, repository=repository, dispatcher=dispatcher)
    app = create_app(pipeline=pipeline, settings=settings)

    @app.post("/api/v1/auth/login")
    async def login():
        raise HTTPException(status_code=401, detail="Invalid credentials")

    @app.get("/api/v1/account")
    async def account():
        raise HTTPException(status_code=401, detail="Not authenticated")

    with TestClient(app) as client:
        yield client


@pytest.mark.integration
class TestDefendedRequests:
    """Test suite for the middleware in front of the application."""

    def test_basic_health_bypasses_pipeline(self, test_client):
        response = test_client.get("/health", headers=BLACKLISTED)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_allowed_request_gets_security_headers(self, test_client):
        response = test_client.get("/api")

        assert response.status_code == 200
        assert response.headers["X-WAF-Status"] == "ALLOWED"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-RateLimit-Limit" in response.headers
        assert "X-Request-ID" in response.headers

    def test_blacklisted_client_blocked(self, test_client):
        response = test_client.get("/api", headers=BLACKLISTED)

        assert response.status_code == 403
        assert response.json()["code"] == "WAF_BLOCKED"
        assert response.headers["X-WAF-Status"] == "BLOCKED"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_block_response_hides_rule_details(self, test_client):
        response = test_client.get("/api", headers=BLACKLISTED)
        body = response.text
        assert "192.0.2.66" not in body
        assert "blacklisted" not in body

    def test_script_payload_recorded(self, test_client):
        response = test_client.get("/api", params={"q": "<script>alert(1)</script>"})
        assert response.status_code == 200

        events = test_client.get(f"{SECURITY}/events").json()["events"]
        assert "xss_attempt" in {e["event_type"] for e in events}

    def test_failed_logins_detected_as_brute_force(self, login_client):
        for _ in range(10):
            assert login_client.post("/api/v1/auth/login").status_code == 401

        events = login_client.get(f"{SECURITY}/events", params={"limit": 100}).json()["events"]
        types = [e["event_type"] for e in events]
        assert types.count("authentication_failed") == 10
        assert "brute_force" in types

    def test_401_outside_auth_routes_is_not_a_failed_login(self, login_client):
        assert login_client.get("/api/v1/account").status_code == 401

        events = login_client.get(f"{SECURITY}/events").json()["events"]
        assert "authentication_failed" not in {e["event_type"] for e in events}


@pytest.mark.integration
class TestSecurityAPI:
    """Test suite for the operator endpoints."""

    def test_component_health(self, test_client):
        response = test_client.get("/api/v1/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["components"]) == {"waf", "ip_access", "event_store", "notifications"}

    def test_metrics(self, test_client):
        test_client.get("/api", headers=BLACKLISTED)

        response = test_client.get(f"{SECURITY}/metrics", params={"hours": 1})
        assert response.status_code == 200
        metrics = response.json()
        assert metrics["total_events"] >= 1
        assert metrics["by_type"]["ip_blocked"] >= 1
        assert 0 <= metrics["security_score"] <= 100

    def test_metrics_window_validated(self, test_client):
        assert test_client.get(f"{SECURITY}/metrics", params={"hours": 0}).status_code == 422

    def test_acknowledge_and_resolve_event(self, test_client):
        test_client.get("/api", headers=BLACKLISTED)
        events = test_client.get(f"{SECURITY}/events").json()["events"]
        event_id = next(e["event_id"] for e in events if e["event_type"] == "ip_blocked")

        acked = test_client.post(f"{SECURITY}/events/{event_id}/acknowledge", json={"by": "oncall"})
        assert acked.status_code == 200
        assert acked.json()["acknowledged_by"] == "oncall"

        resolved = test_client.post(f"{SECURITY}/events/{event_id}/resolve", json={"by": "oncall"})
        assert resolved.json()["resolved"] is True

    def test_acknowledge_unknown_event(self, test_client):
        response = test_client.post(f"{SECURITY}/events/missing/acknowledge", json={"by": "oncall"})
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_waf_rules_toggle(self, test_client):
        rules = test_client.get(f"{SECURITY}/waf/rules").json()["rules"]
        assert "xss_1" in {r["id"] for r in rules}

        response = test_client.post(f"{SECURITY}/waf/rules/xss_1/disable")
        assert response.status_code == 200
        assert response.json() == {"rule_id": "xss_1", "enabled": False}

        rules = test_client.get(f"{SECURITY}/waf/rules").json()["rules"]
        assert next(r for r in rules if r["id"] == "xss_1")["enabled"] is False

        assert test_client.post(f"{SECURITY}/waf/rules/xss_1/enable").json()["enabled"] is True

    def test_unknown_waf_rule(self, test_client):
        response = test_client.post(f"{SECURITY}/waf/rules/nope/disable")
        assert response.status_code == 404

    def test_waf_stats(self, test_client):
        data = test_client.get(f"{SECURITY}/waf/stats").json()
        assert data["enabled"] is True
        assert data["block_threshold"] == 10
        assert data["challenge_threshold"] == 5

    def test_whitelist_add_and_remove(self, test_client, repository):
        response = test_client.post(
            f"{SECURITY}/ip-access/whitelist",
            json={"ip_or_pattern": "172.16.0.0/12", "priority": 10},
        )
        assert response.status_code == 201
        assert response.json()["kind"] == "cidr"
        assert "172.16.0.0/12" in repository.whitelist

        entries = test_client.get(f"{SECURITY}/ip-access/whitelist").json()["entries"]
        assert "172.16.0.0/12" in {e["ip_or_pattern"] for e in entries}

        response = test_client.delete(f"{SECURITY}/ip-access/whitelist/172.16.0.0/12")
        assert response.status_code == 200
        assert "172.16.0.0/12" not in repository.whitelist

        response = test_client.delete(f"{SECURITY}/ip-access/whitelist/172.16.0.0/12")
        assert response.status_code == 404

    def test_malformed_whitelist_pattern_rejected(self, test_client):
        response = test_client.post(
            f"{SECURITY}/ip-access/whitelist", json={"ip_or_pattern": "10.0.0.0/40"}
        )
        assert response.status_code == 422

    def test_blacklist_entry_blocks_client(self, test_client):
        response = test_client.post(
            f"{SECURITY}/ip-access/blacklist", json={"ip_or_pattern": "203.0.113.0/24"}
        )
        assert response.status_code == 201

        blocked = test_client.get("/api", headers={"X-Forwarded-For": "203.0.113.77"})
        assert blocked.status_code == 403

        response = test_client.delete(f"{SECURITY}/ip-access/blacklist/203.0.113.0/24")
        assert response.status_code == 200
        assert test_client.get("/api", headers={"X-Forwarded-For": "203.0.113.77"}).status_code == 200

    def test_threat_patterns(self, test_client):
        payload = {
            "id": "wp_login_scan",
            "name": "WordPress login scan",
            "severity": "medium",
            "conditions": [{"field": "path", "operator": "contains", "value": "wp-login", "weight": 100}],
        }
        response = test_client.post(f"{SECURITY}/threat-patterns", json=payload)
        assert response.status_code == 201

        patterns = test_client.get(f"{SECURITY}/threat-patterns").json()["patterns"]
        assert "wp_login_scan" in {p["id"] for p in patterns}

    def test_alert_rules(self, test_client):
        payload = {
            "id": "many_blocks",
            "name": "Many blocked requests",
            "event_type": "ip_blocked",
            "severity": "high",
            "threshold": 3,
            "time_window_minutes": 5,
        }
        response = test_client.post(f"{SECURITY}/alert-rules", json=payload)
        assert response.status_code == 201
        assert response.json()["channels"] == ["webhook"]

        rules = test_client.get(f"{SECURITY}/alert-rules").json()["rules"]
        assert "many_blocks" in {r["id"] for r in rules}

        disabled = test_client.post(f"{SECURITY}/alert-rules/many_blocks/disable")
        assert disabled.json()["enabled"] is False

    def test_alert_rule_with_unknown_operator_rejected(self, test_client):
        payload = {
            "id": "bad",
            "name": "Bad",
            "event_type": "ip_blocked",
            "severity": "high",
            "threshold": 1,
            "time_window_minutes": 5,
            "conditions": [{"field": "ip_address", "operator": "startswith", "value": "10."}],
        }
        assert test_client.post(f"{SECURITY}/alert-rules", json=payload).status_code == 422

    def test_unknown_alert_rule(self, test_client):
        assert test_client.post(f"{SECURITY}/alert-rules/nope/enable").status_code == 404

    def test_alert_summary(self, test_client):
        data = test_client.get(f"{SECURITY}/alerts").json()
        assert data["total_alerts"] == 0
        assert data["notifications"]["channels"] == ["webhook"]

    def test_rate_limit_status_and_reset(self, test_client):
        scopes = test_client.get(f"{SECURITY}/rate-limits").json()["scopes"]
        assert scopes["auth"]["max_requests"] == 5

        status = test_client.get(f"{SECURITY}/rate-limits/admin/ip:testclient").json()
        assert status["total_hits"] >= 1

        response = test_client.delete(f"{SECURITY}/rate-limits/admin/ip:testclient")
        assert response.json()["reset"] is True

    def test_unknown_rate_limit_scope(self, test_client):
        assert test_client.get(f"{SECURITY}/rate-limits/nope/ip:1").status_code == 404

    def test_send_test_alert(self, test_client, webhook_channel):
        response = test_client.post(f"{SECURITY}/alerts/test")
        assert response.status_code == 200
        assert response.json()["results"] == {"webhook": True}
        assert len(webhook_channel.sent) == 1
        assert webhook_channel.sent[0].rule_id == "test_alert"

    def test_test_alert_skips_unconfigured_channels(self, test_client, webhook_channel):
        response = test_client.post(f"{SECURITY}/alerts/test", json={"channels": ["pager"]})
        assert response.json()["results"] == {}
        assert webhook_channel.sent == []

    def test_failed_login_report(self, test_client):
        payload = {"ip_address": "203.0.113.5", "identifier": "alice@example.com"}
        for _ in range(9):
            assert test_client.post(f"{SECURITY}/reports/failed-login", json=payload).json()["count"] == 0

        data = test_client.post(f"{SECURITY}/reports/failed-login", json=payload).json()
        assert data["count"] == 1
        assert data["threats"][0]["event_type"] == "brute_force"

    def test_api_usage_report(self, test_client):
        payload = {
            "ip_address": "203.0.113.5",
            "user_id": "u1",
            "api_call_count": 1001,
            "unique_endpoints": 10,
        }
        response = test_client.post(f"{SECURITY}/reports/api-usage", json=payload)
        assert response.status_code == 200
        assert response.json()["threats"][0]["event_type"] == "suspicious_api_usage"

    def test_data_access_report(self, test_client):
        payload = {
            "ip_address": "203.0.113.5",
            "user_id": "u1",
            "endpoint": "/api/v1/orders",
            "data_size": 10_000,
            "recent_request_count": 101,
        }
        data = test_client.post(f"{SECURITY}/reports/data-access", json=payload).json()
        assert [t["event_type"] for t in data["threats"]] == ["data_exfiltration"]

        events = test_client.get(f"{SECURITY}/events").json()["events"]
        assert "data_exfiltration" in {e["event_type"] for e in events}

    def test_data_access_report_validated(self, test_client):
        payload = {"ip_address": "203.0.113.5", "user_id": "u1", "endpoint": "/x", "data_size": -1}
        assert test_client.post(f"{SECURITY}/reports/data-access", json=payload).status_code == 422
