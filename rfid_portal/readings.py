from __future__ import annotations
import datetime
import itertools
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Mapping, Optional, Set


def normalize_key(value: Any) -> str:
    """Correlation-key normal form: string, trimmed, upper-cased. None -> ''."""
    if value is None:
        return ""
    return str(value).strip().upper()


def _as_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def _as_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


# ---------- data ----------

@dataclass(frozen=True)
class TagReading:
    tid: str            # primary correlation id (chip-unique)
    epc: str            # secondary, addressable code
    rssi: float
    antenna: int
    timestamp: float    # epoch seconds at capture
    seq: int

    @property
    def correlation_key(self) -> str:
        return normalize_key(self.tid)

    @classmethod
    def from_event(cls, event: Optional[Mapping[str, Any]], *, seq: int, timestamp: float) -> "TagReading":
        """
        Build from a decoded device event. Every field is optional:
          tid/epc -> '' (upper-cased), rssi -> 0.0, ant/antenna -> 0.
        """
        ev = event or {}
        ant = ev.get("ant", ev.get("antenna"))
        return cls(
            tid=normalize_key(ev.get("tid")),
            epc=normalize_key(ev.get("epc")),
            rssi=_as_float(ev.get("rssi"), 0.0),
            antenna=_as_int(ant, 0),
            timestamp=float(timestamp),
            seq=int(seq),
        )

    def as_dict(self) -> Dict[str, Any]:
        ts = datetime.datetime.fromtimestamp(self.timestamp, tz=datetime.timezone.utc)
        return {
            "id": self.seq,
            "tid": self.tid,
            "epc": self.epc,
            "rssi": self.rssi,
            "antenna": self.antenna,
            "timestamp": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }


# ---------- buffer ----------

class ReadingBuffer:
    """
    The most recent `capacity` readings plus lifetime counters.

    `unique_count` is a lifetime counter over every correlation key ever seen;
    it is never pruned when readings fall out of the ring. Callers wanting the
    distinct keys currently held must use `live_keys()`.
    """
    def __init__(self, capacity: int = 100):
        self.capacity = max(1, int(capacity))
        self._ring: Deque[TagReading] = deque(maxlen=self.capacity)
        self._seen: Set[str] = set()
        self.total_reads = 0
        self.evicted_total = 0
        self._seq = itertools.count(1)

    def next_seq(self) -> int:
        return next(self._seq)

    def ingest(self, event: Optional[Mapping[str, Any]], now: Optional[float] = None) -> TagReading:
        reading = TagReading.from_event(event, seq=self.next_seq(),
                                        timestamp=time.time() if now is None else now)
        self.append(reading)
        return reading

    def append(self, reading: TagReading) -> None:
        if len(self._ring) == self.capacity:
            self.evicted_total += 1
        self._ring.append(reading)   # deque(maxlen) drops the oldest
        self.total_reads += 1
        key = reading.correlation_key
        if key:
            self._seen.add(key)

    def clear(self) -> None:
        self._ring.clear()
        self._seen.clear()
        self.total_reads = 0
        self.evicted_total = 0

    def __len__(self) -> int:
        return len(self._ring)

    @property
    def unique_count(self) -> int:
        return len(self._seen)

    def recent(self, limit: Optional[int] = None) -> List[TagReading]:
        items = list(self._ring)
        if limit is None:
            return items
        return items[-max(0, int(limit)):] if limit else []

    def live_keys(self) -> Set[str]:
        return {r.correlation_key for r in self._ring if r.correlation_key}

    def snapshot(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return {
            "readings": [r.as_dict() for r in self.recent(limit)],
            "total_reads": self.total_reads,
            "unique_tags": self.unique_count,
        }
