# rfid_portal/dispatcher.py
"""
Match notifications, batched and throttled.

Pending events are keyed by dedup key, so a burst of the same pair is sent
once. A flush timer drains up to `max_batch` events per tick and stops
itself when the queue runs dry; the next enqueue starts it again.
"""

from __future__ import annotations
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from . import events as ev
from .matching import MatchEvent
from .scheduler import TaskScheduler

log = logging.getLogger("portal.dispatch")


class NotificationDispatcher:
    def __init__(
        self,
        scheduler: TaskScheduler,
        emit: ev.Emit,
        *,
        flush_interval_s: float = 0.1,
        max_batch: int = 30,
        task_name: str = "notification_flush",
        decorate: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None,
    ):
        self.scheduler = scheduler
        self.emit = emit
        self.flush_interval_s = float(flush_interval_s)
        self.max_batch = max(1, int(max_batch))
        self.task_name = task_name
        self.decorate = decorate
        self._pending: "OrderedDict[str, MatchEvent]" = OrderedDict()

        self.enqueued = 0
        self.coalesced = 0
        self.sent = 0
        self.failed = 0

    def enqueue(self, event: MatchEvent) -> bool:
        """Queue `event`; False when one for the same dedup key is already pending."""
        key = event.dedup_key
        if key in self._pending:
            self.coalesced += 1
            return False
        self._pending[key] = event
        self.enqueued += 1
        if not self.scheduler.is_running(self.task_name):
            self.scheduler.every(self.task_name, self.flush_interval_s, self.flush, group="dispatch")
        return True

    def flush(self) -> int:
        """Send up to one batch. Stops the timer once nothing is left."""
        n = 0
        while self._pending and n < self.max_batch:
            _, evt = self._pending.popitem(last=False)
            payload = evt.as_payload()
            if self.decorate is not None:
                payload = self.decorate(payload)
            try:
                self.emit(ev.MATCH_FOUND, payload)
                self.sent += 1
            except Exception:
                self.failed += 1
                log.exception("match_emit_failed", extra={"dedup_key": evt.dedup_key})
            n += 1
        if n:
            log.debug("match_batch_flushed", extra={"sent": n, "pending": len(self._pending)})
        if not self._pending:
            self.scheduler.stop(self.task_name)
        return n

    def drain(self) -> int:
        """Flush everything now (shutdown path)."""
        total = 0
        while self._pending:
            total += self.flush()
        return total

    def clear(self) -> None:
        self._pending.clear()
        self.scheduler.stop(self.task_name)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def stats(self) -> Dict[str, int]:
        return {"pending": len(self._pending), "enqueued": self.enqueued,
                "coalesced": self.coalesced, "sent": self.sent, "failed": self.failed}
