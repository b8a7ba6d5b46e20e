# rfid_portal/events.py
# -----------------------------------------------------------------------------
# In-process pub/sub: the seam between the portal core and whatever transport
# shows status to clients (SSE in server.py, or a test collecting events).
#
# publish() is synchronous and never blocks: it stamps the event, keeps it in
# a bounded ring for late subscribers and pushes it into each subscriber queue,
# dropping that subscriber's oldest event when its queue is full.
# -----------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import datetime
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

log = logging.getLogger("portal.bus")

# Event names (one place so producers and the HTTP layer agree)
CONNECTION_STATUS = "connection-status"
READING_STATUS = "reading-status"
RFID_READING = "rfid-reading"
READINGS_UPDATE = "readings-update"
MATCH_FOUND = "rfid-match-found"
READER_FAULT = "reader-fault"
POWER_UPDATED = "power-updated"
INVENTORY_STARTED = "inventory-processing-started"
INVENTORY_PROGRESS = "inventory-processing-progress"
INVENTORY_COMPLETED = "inventory-processing-completed"
INVENTORY_ERROR = "inventory-processing-error"
INVENTORY_UPDATED = "inventory-updated"
INVENTORY_TRUNCATED = "inventory-truncated"

Emit = Callable[[str, Dict[str, Any]], None]


def iso_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc)\
        .isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EventBus:
    def __init__(self, ring_size: int = 500, queue_size: int = 1024):
        self._ring: Deque[Dict[str, Any]] = deque(maxlen=max(1, int(ring_size)))
        self._queue_size = max(1, int(queue_size))
        self._subs: Set[asyncio.Queue] = set()
        self._listeners: List[Emit] = []
        self.published_total = 0

    def publish(self, name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        evt = {"event": str(name), "time": iso_now(), "data": dict(payload or {})}
        self._ring.append(evt)
        self.published_total += 1

        dead = []
        for q in self._subs:
            try:
                q.put_nowait(evt)
            except asyncio.QueueFull:
                try:
                    _ = q.get_nowait()
                    q.put_nowait(evt)
                except Exception:
                    dead.append(q)
        for q in dead:
            self._subs.discard(q)

        for fn in list(self._listeners):
            try:
                fn(evt["event"], evt["data"])
            except Exception:
                # a broken listener must never break the producer
                log.exception("listener_failed", extra={"event_name": name})
        return evt

    # callable form so the bus can be handed to producers as an `Emit`
    __call__ = publish

    # ---------- subscribers ----------

    def subscribe(self, replay: bool = True) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        if replay:
            for evt in list(self._ring)[-self._queue_size:]:
                q.put_nowait(evt)
        self._subs.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subs.discard(q)

    def add_listener(self, fn: Emit) -> None:
        """Synchronous listener called inline on every publish (tests, bridges)."""
        self._listeners.append(fn)

    def remove_listener(self, fn: Emit) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def recent(self, name: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        items = [e for e in self._ring if name is None or e["event"] == name]
        return items[-max(0, int(limit)):]

    def close(self) -> None:
        """Wake every subscriber with a shutdown marker so SSE generators exit."""
        for q in list(self._subs):
            try:
                q.put_nowait({"event": "shutdown", "time": iso_now(), "data": {}})
            except asyncio.QueueFull:
                pass
        self._subs.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
