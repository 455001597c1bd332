"""
Security repository interface and the in-memory implementation.

The pipeline depends only on this narrow interface; the schema behind it is
owned by whoever deploys the service.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from request_defense.models.security import (
    AlertRule, IPListEntry, SecurityEvent, ThreatPattern, utcnow
)


class SecurityRepository(ABC):
    """Storage collaborator for events and security configuration."""

    @abstractmethod
    async def save_events(self, batch: List[SecurityEvent]) -> None:
        """Persist a batch; must be idempotent per event id."""

    @abstractmethod
    async def count_events(
        self,
        event_type: str,
        window_minutes: float,
        ip: str,
        user_id: Optional[str] = None,
    ) -> int:
        """Count persisted events of a type for an IP (and user) in the window."""

    @abstractmethod
    async def list_events(
        self, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[SecurityEvent]:
        """Events newest first."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        ...

    @abstractmethod
    async def update_event(self, event: SecurityEvent) -> None:
        """Store acknowledgement and resolution changes."""

    @abstractmethod
    async def get_active_patterns(self) -> List[ThreatPattern]:
        ...

    @abstractmethod
    async def save_threat_pattern(self, pattern: ThreatPattern) -> None:
        ...

    @abstractmethod
    async def get_active_whitelist(self) -> List[IPListEntry]:
        ...

    @abstractmethod
    async def save_whitelist_entry(self, entry: IPListEntry) -> None:
        ...

    @abstractmethod
    async def delete_whitelist_entry(self, ip_or_pattern: str) -> bool:
        ...

    @abstractmethod
    async def get_active_alert_rules(self) -> List[AlertRule]:
        ...

    @abstractmethod
    async def save_alert_rule(self, rule: AlertRule) -> None:
        ...


def _matches(event: SecurityEvent, event_type: str, since: datetime, ip: str, user_id: Optional[str]) -> bool:
    return (
        event.event_type == event_type
        and event.ip_address == ip
        and event.timestamp >= since
        and (user_id is None or event.user_id == user_id)
    )


class InMemorySecurityRepository(SecurityRepository):
    """Dict-backed repository for development and tests."""

    def __init__(self):
        self.events: Dict[str, SecurityEvent] = {}
        self.patterns: Dict[str, ThreatPattern] = {}
        self.whitelist: Dict[str, IPListEntry] = {}
        self.alert_rules: Dict[str, AlertRule] = {}
        self._lock = asyncio.Lock()

    async def save_events(self, batch: List[SecurityEvent]) -> None:
        async with self._lock:
            for event in batch:
                self.events[event.event_id] = event

    async def count_events(
        self,
        event_type: str,
        window_minutes: float,
        ip: str,
        user_id: Optional[str] = None,
    ) -> int:
        since = utcnow() - timedelta(minutes=window_minutes)
        return sum(1 for e in self.events.values() if _matches(e, event_type, since, ip, user_id))

    async def list_events(
        self, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[SecurityEvent]:
        events = [e for e in self.events.values() if since is None or e.timestamp >= since]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit] if limit is not None else events

    async def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        return self.events.get(event_id)

    async def update_event(self, event: SecurityEvent) -> None:
        self.events[event.event_id] = event

    async def get_active_patterns(self) -> List[ThreatPattern]:
        return [p for p in self.patterns.values() if p.is_active]

    async def save_threat_pattern(self, pattern: ThreatPattern) -> None:
        self.patterns[pattern.id] = pattern

    async def get_active_whitelist(self) -> List[IPListEntry]:
        now = utcnow()
        return [
            e for e in self.whitelist.values()
            if e.is_active and not e.is_expired(now)
        ]

    async def save_whitelist_entry(self, entry: IPListEntry) -> None:
        self.whitelist[entry.ip_or_pattern] = entry

    async def delete_whitelist_entry(self, ip_or_pattern: str) -> bool:
        return self.whitelist.pop(ip_or_pattern, None) is not None

    async def get_active_alert_rules(self) -> List[AlertRule]:
        return [r for r in self.alert_rules.values() if r.enabled]

    async def save_alert_rule(self, rule: AlertRule) -> None:
        self.alert_rules[rule.id] = rule
