# rfid_portal/service.py
"""
PortalService: the one object that owns the running portal.

Wiring (built once per process, handed to the HTTP layer by reference):

    driver.events -> DeviceSessionSupervisor -> handle_reading()
        handle_reading: ReadingBuffer.ingest -> MatchEngine.process -> NotificationDispatcher
    BatchSpreadsheetLoader -> InventoryIndex (snapshot swap) <- MatchEngine reads

Every periodic task belongs to `scheduler`:
    session   keepalive / connection_check / read_health / auto_restart / device_channel
    pipeline  dedup_sweep / aggregate_update
    dispatch  notification_flush

fatal() is the single shutdown path for unexpected faults: it stops the
timers, disconnects with a bounded timeout and sets `stop_event`. It can be
called any number of times from anywhere; only the first call does work.
"""

from __future__ import annotations
import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from . import events as ev
from .device_config import InventorySettings, PipelineSettings, ReaderConfig, SessionPolicy
from .dispatcher import NotificationDispatcher
from .drivers import ReaderDriver, make_driver
from .inventory import InventoryIndex, InventoryStore
from .matching import MatchEngine
from .readings import ReadingBuffer, TagReading
from .scheduler import TaskScheduler
from .spreadsheet import BatchSpreadsheetLoader
from .supervisor import DeviceSessionSupervisor

log = logging.getLogger("portal")
ingest_log = logging.getLogger("portal.ingest")

# Loop faults that only mean "the device socket went away"; the session
# supervisor notices those on its own.
_LINK_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


class PortalService:
    def __init__(
        self,
        cfg: Optional[Mapping[str, Any]] = None,
        *,
        driver: Optional[ReaderDriver] = None,
        bus: Optional[ev.EventBus] = None,
        cache_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        app = dict((cfg or {}).get("app", {}) or {})
        self.reader_cfg = ReaderConfig.from_app(app)
        self.session_policy = SessionPolicy.from_app(app)
        self.pipeline = PipelineSettings.from_app(app)
        self.inventory_settings = InventorySettings.from_app(app)
        self.clock = clock

        self.scheduler = TaskScheduler()
        self.bus = bus or ev.EventBus()
        self.buffer = ReadingBuffer(self.pipeline.buffer_capacity)
        self.index = InventoryIndex()

        inv = self.inventory_settings
        if cache_path is None and inv.cache_path:
            cache_path = Path(inv.cache_path)
        self.store = InventoryStore(cache_path, marker=inv.marker) if cache_path else None

        self.loader = BatchSpreadsheetLoader(
            self.index,
            emit=self.bus.publish,
            store=self.store,
            batch_size=inv.batch_size,
            max_items=inv.max_items,
            marker=inv.marker,
            pause_s=inv.pause_s,
            clock=clock,
        )
        self.engine = MatchEngine(
            self.index,
            max_lookups_per_sec=self.pipeline.max_lookups_per_sec,
            cooldown_s=self.pipeline.cooldown_s,
            dedup_max_entries=self.pipeline.dedup_max_entries,
            clock=clock,
            monotonic=monotonic,
        )
        self.dispatcher = NotificationDispatcher(
            self.scheduler,
            self.bus.publish,
            flush_interval_s=self.pipeline.flush_interval_s,
            max_batch=self.pipeline.max_batch,
            decorate=self._decorate_match,
        )
        self.driver = driver or make_driver(self.reader_cfg)
        self.supervisor = DeviceSessionSupervisor(
            self.driver,
            self.reader_cfg,
            self.session_policy,
            self.scheduler,
            self.bus.publish,
            self.handle_reading,
            status_extra=self._counters,
            clock=monotonic,
            sleep=sleep,
        )

        self.stop_event = asyncio.Event()
        self._dirty = False
        self._started = False
        self._shutting_down = False
        self._shutdown_task: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        asyncio.get_running_loop().set_exception_handler(self._loop_fault)

        if self.inventory_settings.restore_on_start:
            await self.loader.restore()

        p = self.pipeline
        self.scheduler.every("dedup_sweep", p.dedup_sweep_s, self.engine.sweep, group="pipeline")
        self.scheduler.every("aggregate_update", p.aggregate_interval_s, self._publish_aggregate, group="pipeline")
        log.info("portal_start", extra={
            "reader": f"{self.reader_cfg.ip}:{self.reader_cfg.port}",
            "driver": self.driver.kind,
            "buffer_capacity": p.buffer_capacity,
            "inventory_items": len(self.index),
        })

    async def stop(self) -> None:
        await self.supervisor.shutdown()
        self.dispatcher.drain()
        await self.scheduler.aclose()
        self.bus.close()
        self.stop_event.set()
        log.info("portal_stop", extra=self._counters())

    def fatal(self, reason: str) -> Optional[asyncio.Task]:
        """Start the graceful shutdown once; later calls return the same task."""
        if self._shutting_down:
            return self._shutdown_task
        self._shutting_down = True
        log.critical("portal_fatal", extra={"reason": reason})
        self.bus.publish(ev.READER_FAULT, {"reason": "fatal", "error": reason, "fatal": True})
        self._shutdown_task = asyncio.get_running_loop().create_task(self.stop(), name="portal_fatal_shutdown")
        return self._shutdown_task

    def _loop_fault(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if isinstance(exc, _LINK_ERRORS):
            log.warning("link_error_ignored", extra={"err": repr(exc)})
            return
        loop.default_exception_handler(context)
        self.fatal(repr(exc) if exc is not None else str(context.get("message")))

    # ---------- ingestion ----------

    def handle_reading(self, payload: Mapping[str, Any]) -> TagReading:
        """Device -> buffer -> matcher -> dispatcher. Synchronous and cheap."""
        reading = self.buffer.ingest(payload, now=self.clock())
        self._dirty = True
        self.bus.publish(ev.RFID_READING, reading.as_dict())
        match = self.engine.process(reading)
        if match is not None:
            self.dispatcher.enqueue(match)
        ingest_log.debug("reading_ingested", extra={"tid": reading.tid, "seq": reading.seq,
                                                    "matched": match is not None})
        return reading

    def _decorate_match(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload["sound"] = bool(self.supervisor.config.match_sound_enabled)
        return payload

    def _counters(self) -> Dict[str, Any]:
        return {"total_reads": self.buffer.total_reads, "unique_tags": self.buffer.unique_count}

    def _publish_aggregate(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        self.bus.publish(ev.READINGS_UPDATE, self.buffer.snapshot(self.pipeline.history_limit))

    def clear_readings(self) -> Dict[str, Any]:
        self.buffer.clear()
        self._dirty = False
        snap = self.buffer.snapshot(self.pipeline.history_limit)
        self.bus.publish(ev.READINGS_UPDATE, snap)
        log.info("readings_cleared")
        return snap

    # ---------- views ----------

    def readings(self, limit: Optional[int] = None) -> Dict[str, Any]:
        return self.buffer.snapshot(self.pipeline.history_limit if limit is None else limit)

    def status(self) -> Dict[str, Any]:
        out = self.supervisor.status()
        out["readings"] = [r.as_dict() for r in self.buffer.recent(10)]
        snap = self.index.current
        out["inventory"] = {
            "has_data": len(snap) > 0,
            "total_items": len(snap),
            "metadata": snap.metadata.as_dict(),
            "loading": self.loader.active_file,
        }
        out["pipeline"] = {**self.engine.stats(), **{f"dispatch_{k}": v for k, v in self.dispatcher.stats().items()}}
        return out
