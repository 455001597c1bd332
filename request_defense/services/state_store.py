"""
Keyed in-memory state with per-key locking and idle eviction.

Used by the violation ledger and the sliding-window rate limiter. Each
instance is independent, so tests and scopes never share state. A single
process store does not scale across server instances; the Redis limiter
implements the same contract for shared deployments.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

from loguru import logger


@dataclass
class StateSlot:
    """Value for one key plus the lock guarding it."""
    value: Any
    lock: asyncio.Lock
    last_access: float


class InMemoryStateStore:
    """Per-key locked state. Distinct keys never contend."""

    def __init__(
        self,
        factory: Callable[[], Any],
        clock: Callable[[], float] = time.time,
        name: str = "state",
    ):
        self._factory = factory
        self._clock = clock
        self._slots: Dict[str, StateSlot] = {}
        self.name = name

    def _slot(self, key: str) -> StateSlot:
        slot = self._slots.get(key)
        if slot is None:
            slot = StateSlot(value=self._factory(), lock=asyncio.Lock(), last_access=self._clock())
            self._slots[key] = slot
        return slot

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[StateSlot]:
        """Hold the key's lock for the duration of the block."""
        slot = self._slot(key)
        async with slot.lock:
            slot.last_access = self._clock()
            yield slot

    def peek(self, key: str) -> Optional[Any]:
        """Current value without creating or locking the key."""
        slot = self._slots.get(key)
        return slot.value if slot else None

    def reset(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when no key is given."""
        if key is None:
            self._slots.clear()
        else:
            self._slots.pop(key, None)

    def evict_idle(self, max_idle_seconds: float) -> int:
        """Remove unlocked keys not touched for ``max_idle_seconds``."""
        cutoff = self._clock() - max_idle_seconds
        stale = [
            key for key, slot in self._slots.items()
            if slot.last_access < cutoff and not slot.lock.locked()
        ]
        for key in stale:
            del self._slots[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} idle keys from {self.name} store")
        return len(stale)

    def keys(self):
        return list(self._slots.keys())

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, key: str) -> bool:
        return key in self._slots
