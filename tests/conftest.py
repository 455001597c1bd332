"""
Pytest configuration and shared fixtures for request defense testing.
"""

import asyncio
from typing import Any, Dict, Generator, List, Optional
from urllib.parse import parse_qsl, urlencode

import pytest
from fastapi.testclient import TestClient

from request_defense.core.config import Settings
from request_defense.db.repository import InMemorySecurityRepository
from request_defense.models.security import (
    AlertRule, IPListEntry, RequestDescriptor, SecurityEvent, Severity
)
from request_defense.services.alerting import AlertEngine
from request_defense.services.event_store import EventStore
from request_defense.services.notifications import AlertDispatcher, NotificationChannel
from request_defense.services.pipeline import DefensePipeline


class FakeClock:
    """Manually advanced clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(NotificationChannel):
    """Channel that keeps every alert it is asked to send."""

    def __init__(self, name: str = "webhook"):
        self.name = name
        self.sent: List[Any] = []

    async def send(self, alert) -> None:
        self.sent.append(alert)


class FlakyRepository(InMemorySecurityRepository):
    """In-memory repository whose calls can be switched to fail or hang."""

    def __init__(self):
        super().__init__()
        self.fail_saves = False
        self.fail_reads = False
        self.hang_saves = False
        self.hang_reads = False
        self.hang_counts = False
        self.save_calls = 0

    async def _hang(self):
        await asyncio.Event().wait()

    async def save_events(self, batch):
        self.save_calls += 1
        if self.hang_saves:
            await self._hang()
        if self.fail_saves:
            raise ConnectionError("database unavailable")
        await super().save_events(batch)

    async def count_events(self, event_type, window_minutes, ip, user_id=None):
        if self.hang_counts:
            await self._hang()
        return await super().count_events(event_type, window_minutes, ip, user_id)

    async def get_active_whitelist(self):
        if self.hang_reads:
            await self._hang()
        if self.fail_reads:
            raise ConnectionError("database unavailable")
        return await super().get_active_whitelist()

    async def get_active_patterns(self):
        if self.hang_reads:
            await self._hang()
        return await super().get_active_patterns()


def make_event(
    event_type: str = "authentication_failed",
    ip: str = "203.0.113.10",
    severity: Severity = Severity.MEDIUM,
    user_id: Optional[str] = None,
) -> SecurityEvent:
    return SecurityEvent(
        event_type=event_type,
        severity=severity,
        title=f"Test {event_type}",
        description="test event",
        ip_address=ip,
        user_id=user_id,
    )


def make_descriptor(
    path: str = "/api/v1/products",
    query: str = "",
    method: str = "GET",
    ip: str = "198.51.100.7",
    user_agent: str = "Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0",
    body: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
    user_id: Optional[str] = None,
) -> RequestDescriptor:
    params = parse_qsl(query, keep_blank_values=True)
    url = f"http://testserver{path}" + (f"?{urlencode(params)}" if params else "")
    all_headers = {"user-agent": user_agent}
    all_headers.update(headers or {})
    return RequestDescriptor(
        method=method,
        url=url,
        path=path,
        query_params=params,
        headers=all_headers,
        client_host=ip,
        body=body,
        user_id=user_id,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def descriptor_factory():
    return make_descriptor


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        WAF_ENABLED=True,
        WAF_WHITELIST="10.1.1.1",
        WAF_BLACKLIST="192.0.2.66",
        DATABASE_URL="",
        USE_REDIS_RATE_LIMITER=False,
        IP_ACCESS_FAIL_OPEN=True,
        SECURITY_WEBHOOK_URL=None,
        SLACK_WEBHOOK_URL=None,
        ADMIN_EMAIL=None,
        RATE_LIMIT_API_REQUESTS=100,
        RATE_LIMIT_AUTH_REQUESTS=5,
    )


@pytest.fixture
def repository() -> FlakyRepository:
    return FlakyRepository()


@pytest.fixture
def event_store(repository) -> EventStore:
    return EventStore(repository, buffer_size=10, flush_interval_seconds=30, hard_cap=50)


@pytest.fixture
def webhook_channel() -> RecordingChannel:
    return RecordingChannel("webhook")


@pytest.fixture
def dispatcher(webhook_channel) -> AlertDispatcher:
    return AlertDispatcher({"webhook": webhook_channel}, timeout_seconds=1)


@pytest.fixture
def pipeline(test_settings, repository, clock, dispatcher) -> DefensePipeline:
    return DefensePipeline(
        settings=test_settings,
        repository=repository,
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def alert_engine(event_store, dispatcher, clock) -> AlertEngine:
    return AlertEngine(event_store, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def test_client(test_settings, repository, dispatcher) -> Generator[TestClient, None, None]:
    """Application test client around an isolated pipeline."""
    from request_defense.main import create_app

    pipeline = DefensePipeline(settings=test_settings, repository=repository, dispatcher=dispatcher)
    app = create_app(pipeline=pipeline, settings=test_settings)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def sample_alert_rule() -> AlertRule:
    return AlertRule(
        id="test_failed_logins",
        name="Test Failed Logins",
        event_type="authentication_failed",
        severity=Severity.HIGH,
        threshold=3,
        time_window_minutes=5,
        channels=["webhook"],
    )


@pytest.fixture
def sample_whitelist_entry() -> IPListEntry:
    return IPListEntry("172.16.0.0/12", priority=10, description="office network")


# Custom pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
