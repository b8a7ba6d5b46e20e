# rfid_portal/matching.py
"""
Reading -> inventory correlation.

Per reading:
  1) rate limit (rolling 1 s window of lookups); over budget -> skip, no error
  2) normalized key lookup in the *current* published snapshot
  3) first candidate under that key wins
  4) dedup on "<reading key>_<item key>": notify if unseen or older than the cooldown
"""

from __future__ import annotations
import datetime
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from .inventory import InventoryIndex, InventoryItem
from .readings import TagReading

log = logging.getLogger("portal.match")


class RateLimiter:
    """
    At most `max_per_sec` acquisitions per rolling one-second window.
    max_per_sec <= 0 disables the limiter.
    """
    def __init__(self, max_per_sec: int, clock: Callable[[], float] = time.monotonic):
        self.rate = int(max_per_sec)
        self.clock = clock
        self._stamps: Deque[float] = deque()

    def try_acquire(self, now: Optional[float] = None) -> bool:
        if self.rate <= 0:
            return True
        now = self.clock() if now is None else now
        cutoff = now - 1.0
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()
        if len(self._stamps) >= self.rate:
            return False
        self._stamps.append(now)
        return True

    def reset(self) -> None:
        self._stamps.clear()


class DedupCache:
    """
    dedup key -> last-notified time. Entries past the cooldown are swept;
    if the cache still exceeds `max_entries` it is cleared outright.
    """
    def __init__(self, cooldown_s: float = 30.0, max_entries: int = 1000):
        self.cooldown = max(0.0, float(cooldown_s))
        self.max_entries = max(1, int(max_entries))
        self._last: Dict[str, float] = {}

    def should_notify(self, key: str, now: float) -> bool:
        """True (and refreshes the entry) when `key` is new or its cooldown has elapsed."""
        last = self._last.get(key)
        if last is not None and now - last < self.cooldown:
            return False
        self._last[key] = now
        return True

    def sweep(self, now: float) -> int:
        before = len(self._last)
        self._last = {k: t for k, t in self._last.items() if now - t < self.cooldown}
        if len(self._last) > self.max_entries:
            self._last.clear()
            log.info("dedup_cache_cleared", extra={"entries": before, "max_entries": self.max_entries})
        return before - len(self._last)

    def clear(self) -> None:
        self._last.clear()

    def __len__(self) -> int:
        return len(self._last)

    def __contains__(self, key: str) -> bool:
        return key in self._last


@dataclass(frozen=True)
class MatchEvent:
    reading: TagReading
    item: InventoryItem
    timestamp: float

    @property
    def dedup_key(self) -> str:
        return f"{self.reading.correlation_key}_{self.item.key}"

    def as_payload(self) -> Dict[str, Any]:
        ts = datetime.datetime.fromtimestamp(self.timestamp, tz=datetime.timezone.utc)
        return {
            "reading": self.reading.as_dict(),
            "item": self.item.as_dict(),
            "timestamp": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }


class MatchEngine:
    def __init__(
        self,
        index: InventoryIndex,
        *,
        max_lookups_per_sec: int = 100,
        cooldown_s: float = 30.0,
        dedup_max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.index = index
        self.clock = clock          # wall time, stamps events only
        self.monotonic = monotonic  # rate window and cooldowns
        self.limiter = RateLimiter(max_lookups_per_sec, clock=monotonic)
        self.dedup = DedupCache(cooldown_s=cooldown_s, max_entries=dedup_max_entries)

        # counters
        self.lookups = 0
        self.rate_limited = 0
        self.matches = 0
        self.suppressed = 0

    def process(self, reading: TagReading) -> Optional[MatchEvent]:
        """
        Counters: every keyed read is either `rate_limited` or a `lookup`
        (a lookup against an empty inventory still counts).
        """
        key = reading.correlation_key
        if not key:
            return None

        tick = self.monotonic()
        if not self.limiter.try_acquire(tick):
            self.rate_limited += 1
            return None
        self.lookups += 1

        snap = self.index.current   # one reference per lookup
        if not len(snap):
            return None
        item = snap.first(key)
        if item is None:
            return None

        evt = MatchEvent(reading=reading, item=item, timestamp=self.clock())
        if not self.dedup.should_notify(evt.dedup_key, tick):
            self.suppressed += 1
            log.debug("dedup_suppressed", extra={"dedup_key": evt.dedup_key})
            return None

        self.matches += 1
        log.info("match_found", extra={"dedup_key": evt.dedup_key, "row": item.get("row")})
        return evt

    def sweep(self) -> int:
        return self.dedup.sweep(self.monotonic())

    def stats(self) -> Dict[str, int]:
        return {
            "lookups": self.lookups,
            "rate_limited": self.rate_limited,
            "matches": self.matches,
            "suppressed": self.suppressed,
            "dedup_entries": len(self.dedup),
        }
