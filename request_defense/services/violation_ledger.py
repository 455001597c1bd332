"""
Per-IP violation ledger driving the WAF escalation state machine.

MONITORING -> CHALLENGED -> BLOCKED as violations accumulate. The state only
relaxes when the decay window passes without a new violation; clean
requests alone never lower it.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from loguru import logger

from request_defense.models.security import (
    EscalationState, VerdictAction, Violation, ViolationRecord
)
from request_defense.services.state_store import InMemoryStateStore


@dataclass
class LedgerVerdict:
    """Escalation outcome for one IP."""
    action: VerdictAction
    state: EscalationState
    count: int


class ViolationLedger:
    """Decaying violation counters keyed by client IP."""

    def __init__(
        self,
        block_threshold: int = 10,
        challenge_threshold: int = 5,
        decay_window_minutes: float = 15,
        escalate_log_rules: bool = True,
        store: Optional[InMemoryStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        if challenge_threshold > block_threshold:
            raise ValueError("challenge_threshold must not exceed block_threshold")
        self.block_threshold = block_threshold
        self.challenge_threshold = challenge_threshold
        self.decay_window_seconds = decay_window_minutes * 60
        self.escalate_log_rules = escalate_log_rules
        self._clock = clock
        self.store = store or InMemoryStateStore(lambda: None, clock=clock, name="violation_ledger")

    def _verdict(self, count: int) -> LedgerVerdict:
        if count >= self.block_threshold:
            return LedgerVerdict(VerdictAction.BLOCK, EscalationState.BLOCKED, count)
        if count >= self.challenge_threshold:
            return LedgerVerdict(VerdictAction.CHALLENGE, EscalationState.CHALLENGED, count)
        return LedgerVerdict(VerdictAction.ALLOW, EscalationState.MONITORING, count)

    def _is_decayed(self, record: ViolationRecord, now: float) -> bool:
        return now - record.last_violation_at > self.decay_window_seconds

    async def record(self, ip: str, violations: List[Violation]) -> LedgerVerdict:
        """Add a batch of violations for ``ip`` and return the new verdict.

        Every violation counts; with ``escalate_log_rules`` off, matches of
        log-only rules are left out.
        """
        if self.escalate_log_rules:
            counted = len(violations)
        else:
            counted = sum(1 for v in violations if v.counts_toward_escalation)
        if counted == 0:
            return await self.current(ip)

        async with self.store.locked(ip) as slot:
            now = self._clock()
            record: Optional[ViolationRecord] = slot.value
            if record is None or self._is_decayed(record, now):
                record = ViolationRecord(count=counted, last_violation_at=now)
            else:
                record.count += counted
                record.last_violation_at = now
            slot.value = record
            verdict = self._verdict(record.count)

        if verdict.action != VerdictAction.ALLOW:
            logger.warning(
                f"IP {ip} escalated to {verdict.state.value} with {verdict.count} violations"
            )
        return verdict

    async def current(self, ip: str) -> LedgerVerdict:
        """Verdict for a request from ``ip`` that carried no counted violations."""
        record: Optional[ViolationRecord] = self.store.peek(ip)
        if record is None or self._is_decayed(record, self._clock()):
            return self._verdict(0)
        return self._verdict(record.count)

    def violation_counts(self) -> Dict[str, int]:
        """Live counts per IP, skipping decayed records."""
        now = self._clock()
        counts = {}
        for ip in self.store.keys():
            record = self.store.peek(ip)
            if record is not None and not self._is_decayed(record, now):
                counts[ip] = record.count
        return counts

    def evict_idle(self) -> int:
        return self.store.evict_idle(self.decay_window_seconds)

    def reset(self) -> None:
        self.store.reset()
