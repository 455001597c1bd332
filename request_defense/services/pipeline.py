"""
Request defense pipeline.

Runs IP access control, pattern matching, the violation ledger and the
scoped rate limiter for one request and turns the outcome into a verdict
with its HTTP status and response headers. Security events raised along the
way go to the event store, the threat detector and the alert engine.
"""

import asyncio
import math
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Set

import redis.asyncio as redis
from loguru import logger

from request_defense.core.config import Settings, get_settings
from request_defense.db.repository import InMemorySecurityRepository, SecurityRepository
from request_defense.models.security import (
    AccessControlDetails, EscalationState, EventType, GenericDetails,
    RateLimitDetails, RateLimitResult, RequestDescriptor, SecurityEvent, Severity, Verdict,
    VerdictAction, Violation, WAFViolationDetails
)
from request_defense.services.alerting import AlertEngine
from request_defense.services.event_store import EventStore
from request_defense.services.ip_access import IPAccessControl, get_client_ip
from request_defense.services.notifications import AlertDispatcher
from request_defense.services.pattern_matcher import PatternMatcher, build_surfaces
from request_defense.services.rate_limiter import RateLimiterRegistry
from request_defense.services.threat_detection import BRUTE_FORCE_WINDOW_MINUTES, ThreatDetector
from request_defense.services.violation_ledger import LedgerVerdict, ViolationLedger

CATEGORY_EVENT_TYPES = {
    "sql_injection": EventType.SQL_INJECTION_ATTEMPT.value,
    "xss": EventType.XSS_ATTEMPT.value,
}

WAF_ALLOWED = "ALLOWED"
WAF_CHALLENGE = "CHALLENGE"
WAF_BLOCKED = "BLOCKED"
WAF_DEGRADED = "DEGRADED"
WAF_DISABLED = "DISABLED"


class DefensePipeline:
    """Per-request orchestration of every defense component."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        repository: Optional[SecurityRepository] = None,
        pattern_matcher: Optional[PatternMatcher] = None,
        ip_access: Optional[IPAccessControl] = None,
        ledger: Optional[ViolationLedger] = None,
        rate_limits: Optional[RateLimiterRegistry] = None,
        event_store: Optional[EventStore] = None,
        threat_detector: Optional[ThreatDetector] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        alert_engine: Optional[AlertEngine] = None,
        clock: Callable[[], float] = time.time,
        maintenance_interval_seconds: float = 60.0,
    ):
        self.settings = settings or get_settings()
        s = self.settings
        self._clock = clock
        self.repository = repository or InMemorySecurityRepository()

        self.pattern_matcher = pattern_matcher or PatternMatcher(
            match_timeout_ms=s.MATCH_TIMEOUT_MS,
            max_surface_length=s.MAX_SURFACE_LENGTH,
        )
        self.ip_access = ip_access or IPAccessControl(
            repository=self.repository,
            whitelist=s.waf_whitelist_list,
            blacklist=s.waf_blacklist_list,
            fail_open=s.IP_ACCESS_FAIL_OPEN,
            refresh_seconds=s.WHITELIST_REFRESH_SECONDS,
            storage_timeout_seconds=s.STORAGE_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.ip_access.set_event_sink(self._on_system_event)
        self.ledger = ledger or ViolationLedger(
            block_threshold=s.WAF_BLOCK_THRESHOLD,
            challenge_threshold=s.WAF_CHALLENGE_THRESHOLD,
            decay_window_minutes=s.WAF_DECAY_WINDOW_MINUTES,
            escalate_log_rules=s.WAF_ESCALATE_LOG_RULES,
            clock=clock,
        )
        self.rate_limits = rate_limits or RateLimiterRegistry.from_settings(s, clock=clock)
        self.event_store = event_store or EventStore(
            self.repository,
            buffer_size=s.EVENT_BUFFER_SIZE,
            flush_interval_seconds=s.EVENT_FLUSH_INTERVAL_SECONDS,
            hard_cap=s.EVENT_BUFFER_HARD_CAP,
            max_backoff_seconds=s.EVENT_FLUSH_MAX_BACKOFF_SECONDS,
            storage_timeout_seconds=s.STORAGE_TIMEOUT_SECONDS,
        )
        self.threat_detector = threat_detector or ThreatDetector(
            repository=self.repository,
            threshold=s.THREAT_SCORE_THRESHOLD,
            storage_timeout_seconds=s.STORAGE_TIMEOUT_SECONDS,
            clock=clock,
        )
        self.dispatcher = dispatcher or AlertDispatcher(timeout_seconds=s.NOTIFICATION_TIMEOUT_SECONDS)
        self.alert_engine = alert_engine or AlertEngine(
            self.event_store,
            dispatcher=self.dispatcher,
            repository=self.repository,
            clock=clock,
        )

        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.verdict_counts: Counter = Counter()
        self._background: Set[asyncio.Task] = set()
        self._maintenance_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DefensePipeline":
        """Wire storage, Redis and notification channels from settings."""
        settings = settings or get_settings()

        repository: SecurityRepository
        if settings.DATABASE_URL:
            from request_defense.db.sql_repository import SqlSecurityRepository
            repository = SqlSecurityRepository.from_url(settings.DATABASE_URL, echo=settings.DEBUG)
        else:
            logger.warning("DATABASE_URL not set; security events are kept in memory only")
            repository = InMemorySecurityRepository()

        redis_client = None
        if settings.USE_REDIS_RATE_LIMITER:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

        return cls(
            settings=settings,
            repository=repository,
            rate_limits=RateLimiterRegistry.from_settings(settings, redis_client=redis_client),
            dispatcher=AlertDispatcher.from_settings(settings),
        )

    # Lifecycle

    async def start(self) -> None:
        await self.ip_access.refresh()
        await self.threat_detector.refresh_patterns()
        await self.alert_engine.load_rules()
        await self.event_store.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("Request defense pipeline started")

    async def stop(self) -> None:
        if self._maintenance_task:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        if self._background:
            await asyncio.wait(list(self._background), timeout=5)
        await self.event_store.stop()
        await self.dispatcher.stop()
        logger.info("Request defense pipeline stopped")

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                self.maintenance()
            except Exception as e:
                logger.error(f"Pipeline maintenance failed: {e}")

    def maintenance(self) -> Dict[str, int]:
        """Reclaim idle per-key state."""
        evicted = {
            "ledger": self.ledger.evict_idle(),
            "rate_limit": self.rate_limits.evict_idle(self.settings.RATE_LIMIT_IDLE_EVICTION_SECONDS),
            "alert_latches": self.alert_engine.evict_expired_latches(),
        }
        if any(evicted.values()):
            logger.debug(f"Pipeline maintenance evicted {evicted}")
        return evicted

    # Request path

    async def inspect(self, descriptor: RequestDescriptor) -> Verdict:
        """Decide ALLOW, CHALLENGE or BLOCK for one request."""
        client_ip = get_client_ip(descriptor.headers, descriptor.client_host)
        events: List[SecurityEvent] = []

        if not self.settings.WAF_ENABLED:
            verdict = await self._apply_rate_limit(
                descriptor, client_ip, self._verdict(VerdictAction.ALLOW, client_ip, waf_status=WAF_DISABLED),
                events,
            )
            return await self._finish(descriptor, verdict, events)

        classification = await self.ip_access.classify(client_ip)

        if classification.is_denied:
            if classification.degraded:
                verdict = self._verdict(
                    VerdictAction.BLOCK, client_ip, reason=classification.reason, waf_status=WAF_DEGRADED
                )
            else:
                verdict = self._verdict(
                    VerdictAction.BLOCK, client_ip, reason="blacklisted", waf_status=WAF_BLOCKED,
                    state=EscalationState.BLOCKED,
                )
                events.append(self._access_event(
                    descriptor, client_ip, EventType.IP_BLOCKED, Severity.CRITICAL,
                    "Blacklisted IP", "Request from a blacklisted address", "DENY",
                ))
            return await self._finish(descriptor, verdict, events)

        if classification.is_whitelisted:
            return await self._finish(
                descriptor, self._verdict(VerdictAction.ALLOW, client_ip, reason=classification.reason), events
            )

        waf_status = WAF_DEGRADED if classification.degraded else WAF_ALLOWED

        violations = self.pattern_matcher.evaluate(
            build_surfaces(descriptor, self.settings.MAX_BODY_BYTES)
        )
        if violations:
            events.extend(self._violation_event(descriptor, client_ip, v) for v in violations)
            ledger_verdict = await self.ledger.record(client_ip, violations)
        else:
            ledger_verdict = await self.ledger.current(client_ip)

        verdict = self._verdict_from_ledger(client_ip, ledger_verdict, violations, waf_status)
        if violations and verdict.action != VerdictAction.ALLOW:
            blocked = verdict.action == VerdictAction.BLOCK
            events.append(self._access_event(
                descriptor, client_ip,
                EventType.WAF_BLOCK if blocked else EventType.WAF_CHALLENGE,
                Severity.HIGH if blocked else Severity.MEDIUM,
                "Client blocked by WAF" if blocked else "Client challenged by WAF",
                f"{ledger_verdict.count} violations inside the decay window",
                verdict.action.value,
                violation_count=ledger_verdict.count,
            ))

        if verdict.action != VerdictAction.BLOCK:
            verdict = await self._apply_rate_limit(descriptor, client_ip, verdict, events)

        return await self._finish(descriptor, verdict, events)

    def _verdict_from_ledger(
        self,
        client_ip: str,
        ledger_verdict: LedgerVerdict,
        violations: List[Violation],
        waf_status: str,
    ) -> Verdict:
        if ledger_verdict.action == VerdictAction.BLOCK:
            return self._verdict(
                VerdictAction.BLOCK, client_ip, reason="too many security violations",
                waf_status=WAF_BLOCKED, state=ledger_verdict.state, violations=violations,
            )
        if ledger_verdict.action == VerdictAction.CHALLENGE:
            return self._verdict(
                VerdictAction.CHALLENGE, client_ip, reason="security challenge required",
                waf_status=WAF_CHALLENGE, state=ledger_verdict.state, violations=violations,
            )
        return self._verdict(
            VerdictAction.ALLOW, client_ip, reason="allowed", waf_status=waf_status,
            state=ledger_verdict.state, violations=violations,
        )

    async def _apply_rate_limit(
        self,
        descriptor: RequestDescriptor,
        client_ip: str,
        verdict: Verdict,
        events: List[SecurityEvent],
    ) -> Verdict:
        scope = self.rate_limits.scope_for_path(descriptor.path)
        identifier = f"user:{descriptor.user_id}" if descriptor.user_id else f"ip:{client_ip}"
        result = await self.rate_limits.check(scope, identifier)
        verdict.rate_limit = result

        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {scope}:{identifier}")
            events.append(SecurityEvent(
                event_type=EventType.RATE_LIMIT_EXCEEDED,
                severity=Severity.MEDIUM,
                title="Rate limit exceeded",
                description=f"{result.total_hits} requests in the {scope} window (limit {result.limit})",
                ip_address=client_ip,
                user_id=descriptor.user_id,
                details=RateLimitDetails(
                    scope=scope, key=identifier, limit=result.limit,
                    total_hits=result.total_hits, reset_time=result.reset_time,
                ),
            ))
            if verdict.action == VerdictAction.ALLOW:
                verdict.action = VerdictAction.CHALLENGE
                verdict.reason = "rate limited"
        return verdict

    def _verdict(
        self,
        action: VerdictAction,
        client_ip: str,
        reason: str = "allowed",
        waf_status: str = WAF_ALLOWED,
        state: EscalationState = EscalationState.MONITORING,
        violations: Optional[List[Violation]] = None,
    ) -> Verdict:
        return Verdict(
            action=action,
            http_status=200,
            client_ip=client_ip,
            reason=reason,
            waf_status=waf_status,
            escalation_state=state,
            violations=list(violations or []),
        )

    async def _finish(
        self, descriptor: RequestDescriptor, verdict: Verdict, events: List[SecurityEvent]
    ) -> Verdict:
        verdict.http_status = {
            VerdictAction.ALLOW: 200,
            VerdictAction.CHALLENGE: 429,
            VerdictAction.BLOCK: 403,
        }[verdict.action]
        verdict.response_headers = self._response_headers(verdict)
        self.verdict_counts[verdict.action.value] += 1

        try:
            events.extend(await self._detect_threats(descriptor, verdict))
        except Exception as e:
            logger.opt(exception=e).error(f"Threat detection failed for {verdict.client_ip}: {e}")
        self._record_events(events)

        return verdict

    def _response_headers(self, verdict: Verdict) -> Dict[str, str]:
        headers = {"X-WAF-Status": verdict.waf_status}
        retry_after = 0

        result: Optional[RateLimitResult] = verdict.rate_limit
        if result is not None:
            headers["X-RateLimit-Limit"] = str(result.limit)
            headers["X-RateLimit-Remaining"] = str(result.remaining)
            headers["X-RateLimit-Reset"] = str(math.ceil(result.reset_time / 1000))
            if not result.allowed:
                retry_after = result.retry_after or 1

        if verdict.waf_status == WAF_CHALLENGE:
            retry_after = max(retry_after, self.settings.WAF_CHALLENGE_RETRY_AFTER_SECONDS)
        if retry_after:
            headers["Retry-After"] = str(retry_after)
        return headers

    async def _detect_threats(self, descriptor: RequestDescriptor, verdict: Verdict) -> List[SecurityEvent]:
        violations = verdict.violations
        max_severity = max((v.severity for v in violations), key=lambda s: s.rank, default=None)
        event_data: Dict[str, Any] = {
            "method": descriptor.method,
            "path": descriptor.path,
            "user_agent": descriptor.user_agent,
            "violation_count": len(violations),
            "max_violation_severity": max_severity.value if max_severity else None,
            "violation_categories": sorted({v.category for v in violations}),
            "verdict": verdict.action.value,
            "rate_limited": bool(verdict.rate_limit and not verdict.rate_limit.allowed),
        }
        return await self.threat_detector.detect(
            "request", verdict.client_ip, descriptor.user_id, event_data
        )

    # Events

    def _violation_event(self, descriptor: RequestDescriptor, client_ip: str, violation: Violation) -> SecurityEvent:
        return SecurityEvent(
            event_type=CATEGORY_EVENT_TYPES.get(violation.category, EventType.WAF_VIOLATION.value),
            severity=violation.severity,
            title=f"WAF Violation: {violation.rule_id}",
            description=f"{violation.rule_name} in {violation.location}",
            ip_address=client_ip,
            user_id=descriptor.user_id,
            details=WAFViolationDetails(
                rule_id=violation.rule_id,
                rule_name=violation.rule_name,
                match=violation.match,
                location=violation.location,
                url=descriptor.url,
                method=descriptor.method,
                user_agent=descriptor.user_agent,
                extra={"action": violation.action.value, "category": violation.category},
            ),
        )

    def _access_event(
        self,
        descriptor: RequestDescriptor,
        client_ip: str,
        event_type: EventType,
        severity: Severity,
        title: str,
        description: str,
        decision: str,
        violation_count: int = 0,
    ) -> SecurityEvent:
        return SecurityEvent(
            event_type=event_type,
            severity=severity,
            title=title,
            description=description,
            ip_address=client_ip,
            user_id=descriptor.user_id,
            details=AccessControlDetails(
                decision=decision, reason=title, url=descriptor.url, violation_count=violation_count
            ),
        )

    # Behaviour reports

    async def report_failed_login(
        self, ip_address: str, identifier: str, user_id: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Record a failed login and check the address for brute force."""
        self.record_event(SecurityEvent(
            event_type=EventType.AUTHENTICATION_FAILED,
            severity=Severity.MEDIUM,
            title="Authentication failed",
            description=f"Failed login for {identifier}",
            ip_address=ip_address,
            user_id=user_id,
            details=GenericDetails(extra={"identifier": identifier}),
        ))
        attempts = await self.event_store.count_events(
            EventType.AUTHENTICATION_FAILED.value, BRUTE_FORCE_WINDOW_MINUTES, ip_address
        )
        threats = await self.threat_detector.detect_brute_force(ip_address, identifier, attempts)
        self._record_events(threats)
        return threats

    async def report_api_usage(
        self, ip_address: str, user_id: str, api_call_count: int, unique_endpoints: int
    ) -> List[SecurityEvent]:
        """Hourly API usage for one user, as counted by the host application."""
        threats = await self.threat_detector.detect_suspicious_api_usage(
            ip_address, user_id, api_call_count, unique_endpoints
        )
        self._record_events(threats)
        return threats

    async def report_data_access(
        self,
        ip_address: str,
        user_id: str,
        endpoint: str,
        data_size: int,
        recent_request_count: int = 0,
    ) -> List[SecurityEvent]:
        threats = await self.threat_detector.detect_data_exfiltration(
            ip_address, user_id, endpoint, data_size, recent_request_count
        )
        self._record_events(threats)
        return threats

    def record_event(self, event: SecurityEvent) -> None:
        """Log an externally detected event (e.g. a failed login) and check alerts."""
        self._record_events([event])

    def _record_events(self, events: List[SecurityEvent]) -> None:
        if not events:
            return
        for event in events:
            self.event_store.log_event(event)
        # Alert checks run after the verdict is returned
        self._spawn(self._process_alerts(events))

    async def _process_alerts(self, events: List[SecurityEvent]) -> None:
        for event in events:
            try:
                await self.alert_engine.process(event)
            except Exception as e:
                logger.opt(exception=e).error(f"Alert processing failed for event {event.event_id}: {e}")

    def _on_system_event(self, event: SecurityEvent) -> None:
        self.record_event(event)

    def _spawn(self, coro) -> None:
        """Run a coroutine in the background; dropped when no loop is running."""
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Read-back

    def get_waf_statistics(self) -> Dict[str, Any]:
        counts = self.ledger.violation_counts()
        top_ips = sorted(counts.items(), key=lambda item: item[1], reverse=True)[:10]
        return {
            "enabled": self.settings.WAF_ENABLED,
            "block_threshold": self.ledger.block_threshold,
            "challenge_threshold": self.ledger.challenge_threshold,
            "decay_window_minutes": self.ledger.decay_window_seconds / 60,
            "tracked_ips": len(counts),
            "blocked_ips": sum(1 for c in counts.values() if c >= self.ledger.block_threshold),
            "challenged_ips": sum(
                1 for c in counts.values()
                if self.ledger.challenge_threshold <= c < self.ledger.block_threshold
            ),
            "top_violating_ips": [{"ip": ip, "count": count} for ip, count in top_ips],
            "verdicts": dict(self.verdict_counts),
            "rules": self.pattern_matcher.get_statistics(),
        }
