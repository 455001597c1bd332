"""
Buffered security event store with aggregation queries.

``log_event`` only appends to an in-memory buffer. A background loop
flushes the buffer to the repository on a timer, and a full buffer
schedules an early flush. A failed flush keeps every event and backs off;
only when the buffer passes its hard cap are the oldest events evicted,
and each eviction is counted in ``dropped_events``.
"""

import asyncio
from collections import Counter, deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from loguru import logger

from request_defense.core.logging import SEVERITY_LOG_LEVELS
from request_defense.db.repository import SecurityRepository
from request_defense.models.security import SecurityEvent, Severity, utcnow
from request_defense.utils.exceptions import NotFoundError, TransientStorageError

SCORE_PENALTIES = {
    Severity.CRITICAL.value: 20,
    Severity.HIGH.value: 10,
    Severity.MEDIUM.value: 5,
    Severity.LOW.value: 1,
}


def security_score(by_severity: Dict[str, int]) -> int:
    """100 minus weighted severity counts, clamped to 0..100."""
    penalty = sum(SCORE_PENALTIES.get(sev, 0) * count for sev, count in by_severity.items())
    return max(0, min(100, 100 - penalty))


class EventStore:
    """Append-only security event log in front of a repository."""

    def __init__(
        self,
        repository: SecurityRepository,
        buffer_size: int = 100,
        flush_interval_seconds: float = 30.0,
        hard_cap: int = 10_000,
        max_backoff_seconds: float = 300.0,
        storage_timeout_seconds: float = 2.0,
    ):
        if hard_cap < buffer_size:
            raise ValueError("hard_cap must be at least buffer_size")
        self.repository = repository
        self.buffer_size = buffer_size
        self.flush_interval_seconds = flush_interval_seconds
        self.hard_cap = hard_cap
        self.max_backoff_seconds = max_backoff_seconds
        self.storage_timeout_seconds = storage_timeout_seconds

        self._buffer: Deque[SecurityEvent] = deque()
        self._flushing = False
        self._flush_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

        self.consecutive_failures = 0
        self.dropped_events = 0
        self.persisted_events = 0
        self.flush_failures = 0

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic flush loop."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._flush_loop())
        logger.info(
            f"Security event store started (buffer {self.buffer_size}, "
            f"flush every {self.flush_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the loop and attempt a final flush."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._flush_task and not self._flush_task.done():
            await self._flush_task
        await self.flush()
        if self._buffer:
            logger.error(f"Security event store stopped with {len(self._buffer)} unflushed events")
        else:
            logger.info("Security event store stopped")

    def next_flush_delay(self) -> float:
        """Timer delay, doubled per consecutive failure up to the backoff cap."""
        if self.consecutive_failures == 0:
            return self.flush_interval_seconds
        delay = self.flush_interval_seconds * (2 ** (self.consecutive_failures - 1))
        return min(delay, self.max_backoff_seconds)

    async def _flush_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.next_flush_delay())
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Security event flush loop error: {e}")

    # Writes

    def log_event(self, event: SecurityEvent) -> None:
        """Buffer an event. Never blocks and never raises on storage trouble."""
        self._buffer.append(event)
        level = SEVERITY_LOG_LEVELS.get(event.severity.value, "INFO")
        logger.log(level, f"Security event [{event.event_type}] {event.title} from {event.ip_address}")

        while len(self._buffer) > self.hard_cap:
            dropped = self._buffer.popleft()
            self.dropped_events += 1
            logger.error(
                f"Security event buffer over hard cap {self.hard_cap}; "
                f"dropped event {dropped.event_id} ({self.dropped_events} dropped total)"
            )

        if len(self._buffer) >= self.buffer_size and self.consecutive_failures == 0:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._flush_task = loop.create_task(self.flush())

    async def flush(self) -> int:
        """Persist everything buffered so far. Returns the number persisted.

        The buffer is not locked during the repository call; events logged
        meanwhile stay buffered for the next flush. A save that outlives the
        storage timeout counts as a failed flush; ``save_events`` is
        idempotent, so the batch is saved again on the next flush.
        """
        if self._flushing or not self._buffer:
            return 0
        self._flushing = True
        batch = list(self._buffer)
        try:
            await asyncio.wait_for(
                self.repository.save_events(batch), timeout=self.storage_timeout_seconds
            )
        except Exception as e:
            self.consecutive_failures += 1
            self.flush_failures += 1
            if isinstance(e, TransientStorageError):
                error = e
            elif isinstance(e, asyncio.TimeoutError):
                error = TransientStorageError(
                    f"Flushing security events timed out after {self.storage_timeout_seconds}s",
                    operation="save_events",
                )
            else:
                error = TransientStorageError(
                    f"Failed to flush security events: {e}", operation="save_events"
                )
            logger.error(
                f"{error.message}; keeping {len(self._buffer)} buffered events, "
                f"retrying in {self.next_flush_delay()}s"
            )
            return 0
        finally:
            self._flushing = False

        saved_ids = {event.event_id for event in batch}
        self._buffer = deque(e for e in self._buffer if e.event_id not in saved_ids)
        self.consecutive_failures = 0
        self.persisted_events += len(batch)
        logger.debug(f"Flushed {len(batch)} security events")
        return len(batch)

    @property
    def buffered_events(self) -> int:
        return len(self._buffer)

    def pending(self) -> List[SecurityEvent]:
        return list(self._buffer)

    # Reads

    async def count_events(
        self,
        event_type: str,
        window_minutes: float,
        ip: str,
        user_id: Optional[str] = None,
    ) -> int:
        """Persisted plus buffered events of a type for an IP within the window."""
        since = utcnow() - timedelta(minutes=window_minutes)
        buffered = sum(
            1 for e in self._buffer
            if e.event_type == event_type
            and e.ip_address == ip
            and e.timestamp >= since
            and (user_id is None or e.user_id == user_id)
        )
        try:
            stored = await asyncio.wait_for(
                self.repository.count_events(event_type, window_minutes, ip, user_id),
                timeout=self.storage_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Event count timed out after {self.storage_timeout_seconds}s; "
                "using buffered events only"
            )
            return buffered
        except Exception as e:
            logger.warning(f"Event count fell back to buffered events only: {e}")
            return buffered
        if self._flushing:
            # A flush in progress may already have stored some buffered events
            return max(stored, buffered)
        return stored + buffered

    async def _events_since(self, since) -> Tuple[List[SecurityEvent], bool]:
        events: Dict[str, SecurityEvent] = {}
        degraded = False
        try:
            stored = await asyncio.wait_for(
                self.repository.list_events(since=since), timeout=self.storage_timeout_seconds
            )
            for event in stored:
                events[event.event_id] = event
        except Exception as e:
            degraded = True
            logger.warning(f"Metrics computed from buffered events only: {e}")
        for event in self._buffer:
            if event.timestamp >= since:
                events[event.event_id] = event
        ordered = sorted(events.values(), key=lambda e: e.timestamp, reverse=True)
        return ordered, degraded

    async def recent_events(self, limit: int = 50, hours: float = 24) -> List[SecurityEvent]:
        events, _ = await self._events_since(utcnow() - timedelta(hours=hours))
        return events[:limit]

    async def get_metrics(self, window_hours: float = 24) -> Dict[str, Any]:
        """Aggregate events in the trailing window."""
        events, degraded = await self._events_since(utcnow() - timedelta(hours=window_hours))

        by_severity = Counter(e.severity.value for e in events)
        by_type = Counter(e.event_type for e in events)
        by_ip = Counter(e.ip_address for e in events if e.ip_address != "system")

        return {
            "window_hours": window_hours,
            "total_events": len(events),
            "by_severity": dict(by_severity),
            "by_type": dict(by_type),
            "top_threats": [
                {"type": event_type, "count": count}
                for event_type, count in by_type.most_common(5)
            ],
            "top_ips": [{"ip": ip, "count": count} for ip, count in by_ip.most_common(10)],
            "recent_events": [e.to_dict() for e in events[:10]],
            "security_score": security_score(by_severity),
            "buffered_events": len(self._buffer),
            "dropped_events": self.dropped_events,
            "degraded": degraded,
        }

    # Operator actions

    async def get_event(self, event_id: str) -> SecurityEvent:
        for event in self._buffer:
            if event.event_id == event_id:
                return event
        event = await self.repository.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Security event {event_id} not found")
        return event

    async def acknowledge(self, event_id: str, by: str) -> SecurityEvent:
        event = await self.get_event(event_id)
        event.acknowledge(by)
        await self._persist_update(event)
        logger.info(f"Security event {event_id} acknowledged by {by}")
        return event

    async def resolve(self, event_id: str, by: str) -> SecurityEvent:
        event = await self.get_event(event_id)
        event.resolve(by)
        await self._persist_update(event)
        logger.info(f"Security event {event_id} resolved by {by}")
        return event

    async def _persist_update(self, event: SecurityEvent) -> None:
        # Buffered events carry the change when they are flushed
        if any(e.event_id == event.event_id for e in self._buffer):
            return
        await self.repository.update_event(event)
