"""
IP access control: whitelist, blacklist and pattern classification.

Entries can be exact addresses, dotted wildcards (``192.168.*.*``), CIDR
blocks (``10.0.0.0/8``) or inclusive ranges (``10.0.0.1-10.0.0.50``).
Blacklist entries live in memory and are always honoured. Whitelist
entries come from static configuration plus the security repository; the
repository table is cached and refreshed periodically.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from loguru import logger

from request_defense.models.security import (
    DegradedModeDetails, EventType, IPDecision, IPListEntry, IPPatternKind,
    SecurityEvent, Severity, utcnow
)
from request_defense.utils.exceptions import ConfigurationError

IPMatcher = Callable[[str], bool]


def ip_to_int(ip: str) -> Optional[int]:
    """Dotted IPv4 to a 32-bit integer, or None when not IPv4."""
    parts = ip.strip().split(".")
    if len(parts) != 4:
        return None
    value = 0
    for part in parts:
        if not part.isdigit():
            return None
        octet = int(part)
        if octet > 255:
            return None
        value = (value << 8) | octet
    return value


def compile_entry(entry: IPListEntry) -> IPMatcher:
    """Build a matcher for one entry. Raises ConfigurationError if malformed."""
    pattern = entry.ip_or_pattern

    if entry.kind == IPPatternKind.EXACT:
        return lambda ip: ip == pattern

    if entry.kind == IPPatternKind.WILDCARD:
        octets = pattern.split(".")
        if len(octets) != 4 or not all(o == "*" or o.isdigit() for o in octets):
            raise ConfigurationError(f"Malformed wildcard pattern: {pattern}")
        regex_text = r"\.".join(r"\d+" if o == "*" else re.escape(o) for o in octets)
        compiled = re.compile(f"^{regex_text}$")
        return lambda ip: compiled.match(ip) is not None

    if entry.kind == IPPatternKind.CIDR:
        network, _, prefix_text = pattern.partition("/")
        network_int = ip_to_int(network)
        if network_int is None or not prefix_text.isdigit() or int(prefix_text) > 32:
            raise ConfigurationError(f"Malformed CIDR pattern: {pattern}")
        mask = (-1 << (32 - int(prefix_text))) & 0xFFFFFFFF

        def match_cidr(ip: str) -> bool:
            ip_int = ip_to_int(ip)
            return ip_int is not None and (ip_int & mask) == (network_int & mask)
        return match_cidr

    if entry.kind == IPPatternKind.RANGE:
        start, _, end = pattern.partition("-")
        low, high = ip_to_int(start), ip_to_int(end)
        if low is None or high is None or low > high:
            raise ConfigurationError(f"Malformed IP range: {pattern}")

        def match_range(ip: str) -> bool:
            ip_int = ip_to_int(ip)
            return ip_int is not None and low <= ip_int <= high
        return match_range

    raise ConfigurationError(f"Unsupported IP pattern kind: {entry.kind}")


def get_client_ip(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """Resolve the client address from proxy headers, then the socket peer."""
    lowered = {k.lower(): v for k, v in headers.items()}

    cf_ip = lowered.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    real_ip = lowered.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded_for = lowered.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    return client_host or "unknown"


@dataclass
class IPClassification:
    """Classification outcome for one address."""
    decision: IPDecision
    entry: Optional[IPListEntry] = None
    degraded: bool = False
    reason: str = ""

    @property
    def is_whitelisted(self) -> bool:
        return not self.degraded and self.decision in (IPDecision.ALLOW, IPDecision.PATTERN)

    @property
    def is_denied(self) -> bool:
        return self.decision == IPDecision.DENY


class _EntryTable:
    """Exact lookup set plus priority-ordered pattern list."""

    def __init__(self, entries: Iterable[IPListEntry] = (), strict: bool = True):
        self.exact: Dict[str, IPListEntry] = {}
        self.patterns: List[Tuple[IPListEntry, IPMatcher]] = []
        for entry in entries:
            self.add(entry, strict=strict)

    def add(self, entry: IPListEntry, strict: bool = True) -> None:
        if not entry.is_active:
            return
        if entry.kind == IPPatternKind.EXACT:
            self.exact[entry.ip_or_pattern] = entry
            return
        try:
            matcher = compile_entry(entry)
        except ConfigurationError as e:
            if strict:
                raise
            logger.warning(f"Skipping malformed IP list entry: {e.message}")
            return
        self.patterns.append((entry, matcher))
        self.patterns.sort(key=lambda item: item[0].priority, reverse=True)

    def remove(self, ip_or_pattern: str) -> bool:
        removed = self.exact.pop(ip_or_pattern, None) is not None
        before = len(self.patterns)
        self.patterns = [p for p in self.patterns if p[0].ip_or_pattern != ip_or_pattern]
        return removed or len(self.patterns) != before

    def lookup_exact(self, ip: str) -> Optional[IPListEntry]:
        entry = self.exact.get(ip)
        if entry is not None and not entry.is_expired(utcnow()):
            return entry
        return None

    def lookup_pattern(self, ip: str) -> Optional[IPListEntry]:
        """First live pattern match in priority order."""
        now = utcnow()
        if ip_to_int(ip) is None:
            # Non-IPv4 addresses only match exact entries
            return None
        for entry, matcher in self.patterns:
            if entry.is_expired(now):
                continue
            if matcher(ip):
                return entry
        return None

    def entries(self) -> List[IPListEntry]:
        return list(self.exact.values()) + [entry for entry, _ in self.patterns]


class IPAccessControl:
    """Classifies client addresses against whitelist and blacklist tables."""

    def __init__(
        self,
        repository=None,
        whitelist: Iterable[str] = (),
        blacklist: Iterable[str] = (),
        fail_open: bool = True,
        refresh_seconds: float = 60.0,
        storage_timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
        on_event: Optional[Callable[[SecurityEvent], None]] = None,
    ):
        self.repository = repository
        self.fail_open = fail_open
        self.refresh_seconds = refresh_seconds
        self.storage_timeout_seconds = storage_timeout_seconds
        self._clock = clock
        self._on_event = on_event

        self._static_whitelist = [IPListEntry(ip, priority=100, description="static") for ip in whitelist]
        self._blacklist = _EntryTable(
            (IPListEntry(ip, priority=100, description="static") for ip in blacklist)
        )
        self._whitelist = _EntryTable(self._static_whitelist)
        self._loaded = repository is None
        self._last_attempt: Optional[float] = None
        self.degraded_count = 0

    def set_event_sink(self, on_event: Callable[[SecurityEvent], None]) -> None:
        self._on_event = on_event

    async def classify(self, ip: str) -> IPClassification:
        """Exact blacklist, exact whitelist, blacklist patterns, then whitelist
        patterns by priority.

        Blacklist entries live in memory and hold even when whitelist storage
        is unavailable.
        """
        entry = self._blacklist.lookup_exact(ip)
        if entry is not None:
            return IPClassification(IPDecision.DENY, entry=entry, reason="blacklisted")

        await self._refresh_if_due()

        entry = self._whitelist.lookup_exact(ip)
        if entry is not None:
            return IPClassification(IPDecision.ALLOW, entry=entry, reason="whitelisted")

        entry = self._blacklist.lookup_pattern(ip)
        if entry is not None:
            return IPClassification(IPDecision.DENY, entry=entry, reason="blacklisted")

        if not self._loaded:
            return self._degraded(ip)

        entry = self._whitelist.lookup_pattern(ip)
        if entry is not None:
            return IPClassification(IPDecision.PATTERN, entry=entry, reason="whitelist pattern")

        return IPClassification(IPDecision.UNLISTED, reason="unlisted")

    def _degraded(self, ip: str) -> IPClassification:
        if self.fail_open:
            return IPClassification(IPDecision.ALLOW, degraded=True, reason="degraded: fail open")
        return IPClassification(IPDecision.DENY, degraded=True, reason="degraded: fail closed")

    async def _refresh_if_due(self) -> None:
        if self.repository is None:
            return
        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self.refresh_seconds:
            return
        self._last_attempt = now
        await self.refresh()

    async def refresh(self) -> bool:
        """Reload whitelist entries from the repository; keep the old table on failure."""
        if self.repository is None:
            return True
        try:
            stored = await asyncio.wait_for(
                self.repository.get_active_whitelist(), timeout=self.storage_timeout_seconds
            )
        except asyncio.TimeoutError:
            return self._refresh_failed(f"timed out after {self.storage_timeout_seconds}s")
        except Exception as e:
            return self._refresh_failed(str(e))

        table = _EntryTable(self._static_whitelist)
        for entry in stored:
            table.add(entry, strict=False)
        self._whitelist = table
        self._loaded = True
        logger.debug(f"Whitelist refreshed with {len(stored)} stored entries")
        return True

    def _refresh_failed(self, error: str) -> bool:
        self.degraded_count += 1
        logger.error(f"Whitelist refresh failed, serving cached table: {error}")
        self._emit_degraded(error)
        return False

    def _emit_degraded(self, error: str) -> None:
        if self._on_event is None:
            return
        self._on_event(SecurityEvent(
            event_type=EventType.IP_ACCESS_DEGRADED,
            severity=Severity.HIGH,
            title="IP access control degraded",
            description=(
                "Whitelist storage unavailable; "
                + ("failing open" if self.fail_open else "failing closed")
                + (" with cached table" if self._loaded else " with no cached table")
            ),
            ip_address="system",
            details=DegradedModeDetails(
                component="ip_access", fail_open=self.fail_open, error=error
            ),
        ))

    async def add_whitelist_entry(self, entry: IPListEntry) -> IPListEntry:
        """Persist and activate a whitelist entry."""
        compile_entry(entry)
        if self.repository is not None:
            await self.repository.save_whitelist_entry(entry)
        self._whitelist.remove(entry.ip_or_pattern)
        self._whitelist.add(entry)
        logger.info(f"Added {entry.ip_or_pattern} to IP whitelist")
        return entry

    async def remove_whitelist_entry(self, ip_or_pattern: str) -> bool:
        removed = False
        if self.repository is not None:
            removed = await self.repository.delete_whitelist_entry(ip_or_pattern)
        removed = self._whitelist.remove(ip_or_pattern) or removed
        if removed:
            logger.info(f"Removed {ip_or_pattern} from IP whitelist")
        return removed

    def add_blacklist_entry(self, entry: IPListEntry) -> IPListEntry:
        self._blacklist.remove(entry.ip_or_pattern)
        self._blacklist.add(entry)
        logger.warning(f"Added {entry.ip_or_pattern} to IP blacklist")
        return entry

    def remove_blacklist_entry(self, ip_or_pattern: str) -> bool:
        return self._blacklist.remove(ip_or_pattern)

    def list_entries(self) -> Dict[str, List[IPListEntry]]:
        return {
            "whitelist": self._whitelist.entries(),
            "blacklist": self._blacklist.entries(),
        }
