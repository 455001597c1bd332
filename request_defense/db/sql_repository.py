"""
SQLAlchemy implementation of the security repository.

Sessions are synchronous; every call runs in a worker thread so the event
loop never blocks on the database.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, TypeVar

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from request_defense.db.models import (
    AlertRuleRecord, Base, IPWhitelistRecord, SecurityEventRecord, ThreatPatternRecord
)
from request_defense.db.repository import SecurityRepository
from request_defense.db.session import create_db_engine, create_session_factory, session_scope
from request_defense.models.security import (
    AlertRule, IPListEntry, IPPatternKind, SecurityEvent, Severity, ThreatPattern,
    WeightedCondition, details_from_dict, utcnow
)
from request_defense.utils.exceptions import TransientStorageError

T = TypeVar("T")


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _event_to_record(event: SecurityEvent) -> SecurityEventRecord:
    return SecurityEventRecord(
        id=event.event_id,
        event_type=event.event_type,
        severity=event.severity.value,
        title=event.title,
        description=event.description,
        details=event.details.to_dict(),
        ip_address=event.ip_address,
        user_id=event.user_id,
        timestamp=_to_db(event.timestamp),
        resolved=event.resolved,
        resolved_at=_to_db(event.resolved_at),
        resolved_by=event.resolved_by,
        acknowledged=event.acknowledged,
        acknowledged_at=_to_db(event.acknowledged_at),
        acknowledged_by=event.acknowledged_by,
    )


def _record_to_event(record: SecurityEventRecord) -> SecurityEvent:
    return SecurityEvent(
        event_id=record.id,
        event_type=record.event_type,
        severity=Severity(record.severity),
        title=record.title,
        description=record.description,
        details=details_from_dict(record.details),
        ip_address=record.ip_address,
        user_id=record.user_id,
        timestamp=_from_db(record.timestamp),
        resolved=record.resolved,
        resolved_at=_from_db(record.resolved_at),
        resolved_by=record.resolved_by,
        acknowledged=record.acknowledged,
        acknowledged_at=_from_db(record.acknowledged_at),
        acknowledged_by=record.acknowledged_by,
    )


def _record_to_pattern(record: ThreatPatternRecord) -> ThreatPattern:
    return ThreatPattern(
        id=record.id,
        name=record.name,
        conditions=[WeightedCondition.from_dict(c) for c in record.conditions or []],
        severity=Severity(record.severity),
        pattern_type=record.pattern_type,
        description=record.description,
        is_active=record.is_active,
    )


def _record_to_entry(record: IPWhitelistRecord) -> IPListEntry:
    return IPListEntry(
        ip_or_pattern=record.ip_or_pattern,
        kind=IPPatternKind(record.kind),
        priority=record.priority,
        is_active=record.is_active,
        expires_at=_from_db(record.expires_at),
        description=record.description,
        created_by=record.created_by,
    )


def _record_to_rule(record: AlertRuleRecord) -> AlertRule:
    return AlertRule(
        id=record.id,
        name=record.name,
        event_type=record.event_type,
        severity=Severity(record.severity),
        threshold=record.threshold,
        time_window_minutes=record.time_window_minutes,
        conditions=[WeightedCondition.from_dict(c) for c in record.conditions or []],
        channels=list(record.channels or []),
        enabled=record.enabled,
    )


class SqlSecurityRepository(SecurityRepository):
    """Security repository backed by a relational database."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False, create_tables: bool = True) -> "SqlSecurityRepository":
        engine = create_db_engine(database_url, echo=echo)
        if create_tables:
            Base.metadata.create_all(engine)
        return cls(create_session_factory(engine))

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with session_scope(self.session_factory) as session:
                return fn(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error(f"Security repository {operation} failed: {e}")
            raise TransientStorageError(
                f"Security repository {operation} failed", operation=operation
            ) from e

    async def save_events(self, batch: List[SecurityEvent]) -> None:
        def work(session: Session) -> None:
            for event in batch:
                session.merge(_event_to_record(event))
        await self._run("save_events", work)

    async def count_events(
        self,
        event_type: str,
        window_minutes: float,
        ip: str,
        user_id: Optional[str] = None,
    ) -> int:
        since = _to_db(utcnow() - timedelta(minutes=window_minutes))

        def work(session: Session) -> int:
            query = select(func.count(SecurityEventRecord.id)).where(
                SecurityEventRecord.event_type == event_type,
                SecurityEventRecord.ip_address == ip,
                SecurityEventRecord.timestamp >= since,
            )
            if user_id is not None:
                query = query.where(SecurityEventRecord.user_id == user_id)
            return session.execute(query).scalar_one()
        return await self._run("count_events", work)

    async def list_events(
        self, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[SecurityEvent]:
        def work(session: Session) -> List[SecurityEvent]:
            query = select(SecurityEventRecord).order_by(SecurityEventRecord.timestamp.desc())
            if since is not None:
                query = query.where(SecurityEventRecord.timestamp >= _to_db(since))
            if limit is not None:
                query = query.limit(limit)
            return [_record_to_event(r) for r in session.execute(query).scalars()]
        return await self._run("list_events", work)

    async def get_event(self, event_id: str) -> Optional[SecurityEvent]:
        def work(session: Session) -> Optional[SecurityEvent]:
            record = session.get(SecurityEventRecord, event_id)
            return _record_to_event(record) if record else None
        return await self._run("get_event", work)

    async def update_event(self, event: SecurityEvent) -> None:
        def work(session: Session) -> None:
            session.merge(_event_to_record(event))
        await self._run("update_event", work)

    async def get_active_patterns(self) -> List[ThreatPattern]:
        def work(session: Session) -> List[ThreatPattern]:
            query = select(ThreatPatternRecord).where(ThreatPatternRecord.is_active.is_(True))
            return [_record_to_pattern(r) for r in session.execute(query).scalars()]
        return await self._run("get_active_patterns", work)

    async def save_threat_pattern(self, pattern: ThreatPattern) -> None:
        def work(session: Session) -> None:
            session.merge(ThreatPatternRecord(
                id=pattern.id,
                name=pattern.name,
                pattern_type=pattern.pattern_type,
                description=pattern.description,
                conditions=[c.to_dict() for c in pattern.conditions],
                severity=pattern.severity.value,
                is_active=pattern.is_active,
            ))
        await self._run("save_threat_pattern", work)

    async def get_active_whitelist(self) -> List[IPListEntry]:
        now = _to_db(utcnow())

        def work(session: Session) -> List[IPListEntry]:
            query = select(IPWhitelistRecord).where(IPWhitelistRecord.is_active.is_(True))
            return [
                _record_to_entry(r) for r in session.execute(query).scalars()
                if r.expires_at is None or r.expires_at > now
            ]
        return await self._run("get_active_whitelist", work)

    async def save_whitelist_entry(self, entry: IPListEntry) -> None:
        def work(session: Session) -> None:
            session.merge(IPWhitelistRecord(
                ip_or_pattern=entry.ip_or_pattern,
                kind=entry.kind.value,
                priority=entry.priority,
                is_active=entry.is_active,
                expires_at=_to_db(entry.expires_at),
                description=entry.description,
                created_by=entry.created_by,
            ))
        await self._run("save_whitelist_entry", work)

    async def delete_whitelist_entry(self, ip_or_pattern: str) -> bool:
        def work(session: Session) -> bool:
            record = session.get(IPWhitelistRecord, ip_or_pattern)
            if record is None:
                return False
            session.delete(record)
            return True
        return await self._run("delete_whitelist_entry", work)

    async def get_active_alert_rules(self) -> List[AlertRule]:
        def work(session: Session) -> List[AlertRule]:
            query = select(AlertRuleRecord).where(AlertRuleRecord.enabled.is_(True))
            return [_record_to_rule(r) for r in session.execute(query).scalars()]
        return await self._run("get_active_alert_rules", work)

    async def save_alert_rule(self, rule: AlertRule) -> None:
        def work(session: Session) -> None:
            session.merge(AlertRuleRecord(
                id=rule.id,
                name=rule.name,
                event_type=rule.event_type,
                severity=rule.severity.value,
                threshold=rule.threshold,
                time_window_minutes=rule.time_window_minutes,
                conditions=[c.to_dict() for c in rule.conditions],
                channels=list(rule.channels),
                enabled=rule.enabled,
            ))
        await self._run("save_alert_rule", work)
