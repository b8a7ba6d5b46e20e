# rfid_portal/supervisor.py
# -----------------------------------------------------------------------------
# One logical session to one reader.
#
#   DISCONNECTED -> CONNECTING -> CONNECTED <-> READING
#        ^______________________________|__________|   (disconnect / link lost)
#
# - `desired` remembers what the operator asked for (CONNECTED or READING).
#   After an unexpected link loss the reconnect loop restores exactly that;
#   reading is never started unless it was running before.
# - Every device transition (connect, start, stop, disconnect, restart step)
#   runs under one asyncio.Lock. Timer ticks are synchronous and skip while a
#   transition is in flight; they only ever *spawn* transitions.
# - Timers live in the scheduler's "session" group and die together on
#   disconnect or link loss. The reconnect loop lives in its own group.
# - The device is a message channel (driver.events); a single consumer task
#   feeds tag payloads to `on_reading` while READING.
# -----------------------------------------------------------------------------

from __future__ import annotations
import asyncio
import enum
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from . import commands
from . import events as ev
from .device_config import ReaderConfig, SessionPolicy
from .drivers import ERROR, LOST, TAG, ReaderDriver
from .errors import ConfigError, DeviceError, RetryExhausted, SessionError
from .scheduler import TaskScheduler

log = logging.getLogger("portal.session")

SESSION_GROUP = "session"
RECONNECT_GROUP = "reconnect"


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READING = "reading"


_LINKED = (SessionState.CONNECTED, SessionState.READING)


class DeviceSessionSupervisor:
    def __init__(
        self,
        driver: ReaderDriver,
        config: ReaderConfig,
        policy: SessionPolicy,
        scheduler: TaskScheduler,
        emit: ev.Emit,
        on_reading: Callable[[Mapping[str, Any]], Any],
        *,
        status_extra: Optional[Callable[[], Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.driver = driver
        self.config = config
        self.policy = policy
        self.scheduler = scheduler
        self.emit = emit
        self.on_reading = on_reading
        self.status_extra = status_extra
        self.clock = clock
        self._sleep = sleep

        self.state = SessionState.DISCONNECTED
        self.desired = SessionState.DISCONNECTED
        self.last_activity: Optional[float] = None
        self.last_read: Optional[float] = None
        self.health_failures = 0
        self.restart_attempts = 0
        self.reconnect_attempts = 0
        self.faulted = False
        self.ignored_tags = 0
        self.handler_errors = 0

        self._transition = asyncio.Lock()
        self._closed = False

    # ---------- state helpers ----------

    @property
    def connected(self) -> bool:
        return self.state in _LINKED

    @property
    def reading(self) -> bool:
        return self.state is SessionState.READING

    def _set_state(self, new: SessionState, **why: Any) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        log.info("session_state", extra={"from_state": old.value, "session_state": new.value, **why})

    def _age(self, t: Optional[float]) -> Optional[float]:
        return None if t is None else round(self.clock() - t, 3)

    def status(self) -> Dict[str, Any]:
        out = {
            "connected": self.connected,
            "reading": self.reading,
            "state": self.state.value,
            "desired": self.desired.value,
            "faulted": self.faulted,
            "reconnecting": self.scheduler.is_running("reconnect"),
            "restart_attempts": self.restart_attempts,
            "last_activity_age_s": self._age(self.last_activity),
            "last_read_age_s": self._age(self.last_read),
            "config": self.config.public(),
        }
        if self.status_extra is not None:
            out.update(self.status_extra())
        return out

    def _emit_connection(self, **extra: Any) -> None:
        payload = self.status()
        payload.update(extra)
        self.emit(ev.CONNECTION_STATUS, payload)

    def _emit_reading(self, **extra: Any) -> None:
        self.emit(ev.READING_STATUS, {"reading": self.reading, **extra})

    # ---------- operator requests ----------

    async def connect(self) -> Dict[str, Any]:
        """Open the session (bounded retries). Raises DeviceError when the budget is spent."""
        if self._closed:
            raise SessionError("session supervisor is shut down")
        if self.connected:
            return self.status()

        self.scheduler.stop("reconnect")
        self.desired = SessionState.CONNECTED
        try:
            await self.policy.reconnect.run(
                self._connect_once,
                name="connect",
                should_continue=lambda: self.desired is not SessionState.DISCONNECTED and not self._closed,
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            if self.desired is SessionState.DISCONNECTED:
                raise SessionError("connect cancelled by disconnect") from e
            self.desired = SessionState.DISCONNECTED
            self._emit_connection(error=str(e))
            raise DeviceError(f"could not connect to {self.config.ip}:{self.config.port}: {e}") from e
        return self.status()

    async def disconnect(self, reason: str = "requested") -> Dict[str, Any]:
        """Valid from any state: cancels session timers and any reconnect, then closes the link."""
        self.desired = SessionState.DISCONNECTED
        self.scheduler.stop("reconnect")
        self.scheduler.stop_group(SESSION_GROUP)
        async with self._transition:
            if self.driver.scanning or self.state is SessionState.READING:
                try:
                    await self.driver.stop_scan()
                except DeviceError as e:
                    log.warning("stop_scan_failed", extra={"err": str(e), "reason": reason})
            try:
                await self.driver.disconnect()
            except (DeviceError, OSError) as e:
                log.warning("disconnect_failed", extra={"err": str(e), "reason": reason})
            was_reading = self.reading
            self._set_state(SessionState.DISCONNECTED, reason=reason)
            self.last_activity = None
            if was_reading:
                self._emit_reading(reason=reason)
        self._emit_connection(reason=reason)
        return self.status()

    async def start_reading(self) -> bool:
        """
        Begin accepting reads. Only valid while CONNECTED: from any other
        state this is a no-op returning False (READING returns True).
        """
        async with self._transition:
            if self.state is SessionState.READING:
                return True
            if self.state is not SessionState.CONNECTED:
                log.info("start_ignored", extra={"session_state": self.state.value})
                return False
            self.faulted = False
            self.restart_attempts = 0
            try:
                await self.driver.start_scan()
            except DeviceError as e:
                log.warning("start_scan_failed", extra={"err": str(e)})
                self._emit_reading(error=str(e))
                raise
            self.desired = SessionState.READING
            self._enter_reading()
            return True

    async def stop_reading(self) -> bool:
        self.scheduler.stop("auto_restart")
        async with self._transition:
            if self.state is SessionState.CONNECTED:
                self.desired = SessionState.CONNECTED
            if self.state is not SessionState.READING:
                return False
            self.desired = SessionState.CONNECTED
            try:
                await self.driver.stop_scan()
            except DeviceError as e:
                log.warning("stop_scan_failed", extra={"err": str(e)})
            finally:
                self._set_state(SessionState.CONNECTED, reason="stop_requested")
                self._emit_reading()
            return True

    async def apply_config(self, update: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate and store a config update. While linked, changes that the
        reader only picks up at connect time cause disconnect + reconnect;
        reading is not resumed afterwards.
        """
        new = self.config.merged(update)     # ConfigError before any state change
        reconnect = self.connected and self.config.needs_reconnect(new)
        if not reconnect:
            self.config = new
            log.info("config_updated", extra={"reconnect": False})
            return {"config": new.public(), "reconnected": False}

        await self.disconnect(reason="config_changed")
        self.config = new
        await self.connect()
        log.info("config_updated", extra={"reconnect": True})
        return {"config": new.public(), "reconnected": True}

    async def set_power(self, dbm: Any) -> Dict[str, Any]:
        """Change transmit power. The stored value always updates; the device write is best effort."""
        try:
            power = int(dbm)
        except (TypeError, ValueError):
            raise ConfigError("power must be an integer between 0 and 30 dBm")
        new = self.config.merged({"power": power})

        applied = False
        error: Optional[str] = None
        if self.connected:
            async with self._transition:
                try:
                    await self.driver.send(commands.set_power(new.power))
                    await self.driver.send(commands.APPLY_CONFIG)
                    applied = True
                    self.last_activity = self.clock()
                except DeviceError as e:
                    error = str(e)
                    log.warning("set_power_failed", extra={"power": new.power, "err": error})
        self.config = new
        payload: Dict[str, Any] = {"power": new.power, "applied": applied}
        if error:
            payload["error"] = error
        self.emit(ev.POWER_UPDATED, payload)
        return payload

    # ---------- transitions (call with the lock held) ----------

    async def _connect_once(self, restore: bool = False) -> None:
        async with self._transition:
            if self.desired is SessionState.DISCONNECTED:
                raise SessionError("connect cancelled")
            self._set_state(SessionState.CONNECTING)
            self._emit_connection()
            try:
                await self.driver.disconnect()    # drop any stale link
            except (DeviceError, OSError) as e:
                log.debug("stale_link_close_failed", extra={"err": str(e)})
            try:
                await self.driver.connect(self.config)
            except Exception:
                self._set_state(SessionState.DISCONNECTED, reason="connect_failed")
                raise
            self._enter_connected()

            if restore and self.desired is SessionState.READING:
                try:
                    await self.driver.start_scan()
                except DeviceError as e:
                    log.warning("resume_reading_failed", extra={"err": str(e)})
                    self._begin_restart("resume_failed")
                else:
                    self._enter_reading()

    def _enter_connected(self) -> None:
        now = self.clock()
        self.last_activity = now
        self.health_failures = 0
        self.reconnect_attempts = 0
        self._set_state(SessionState.CONNECTED)

        p = self.policy
        self.scheduler.spawn("device_channel", self._consume(), group=SESSION_GROUP)
        self.scheduler.every("keepalive", p.keepalive_s, self._keepalive, group=SESSION_GROUP)
        self.scheduler.every("connection_check", p.connection_check_s, self._check_connection, group=SESSION_GROUP)
        self.scheduler.every("read_health", p.read_health_s, self._check_read_health, group=SESSION_GROUP)
        log.info("session_connected", extra={"ip": self.config.ip, "port": self.config.port,
                                             "driver": self.driver.kind})
        self._emit_connection()

    def _enter_reading(self) -> None:
        now = self.clock()
        self.last_read = now
        self.last_activity = now
        self.health_failures = 0
        self._set_state(SessionState.READING)
        self._emit_reading()
        self._emit_connection()

    # ---------- device channel ----------

    async def _consume(self) -> None:
        q = self.driver.events
        while True:
            msg = await q.get()
            now = self.clock()
            self.last_activity = now
            if msg.kind == TAG:
                if self.state is not SessionState.READING:
                    self.ignored_tags += 1
                    continue
                self.last_read = now
                try:
                    self.on_reading(msg.payload)
                except Exception:
                    # one bad unit is dropped; the stream goes on
                    self.handler_errors += 1
                    log.exception("reading_handler_failed", extra={"payload": dict(msg.payload)})
            elif msg.kind == LOST:
                self._link_lost(str(msg.payload.get("reason") or "link lost"))
                return
            elif msg.kind == ERROR:
                log.warning("device_error", extra={"err": msg.payload.get("error")})
                self.emit(ev.READER_FAULT, {"reason": "device_error", "error": msg.payload.get("error"),
                                            "fatal": False})

    # ---------- timers (sync, fast) ----------

    def _busy(self) -> bool:
        return self._transition.locked() or self.scheduler.is_running("auto_restart")

    def _keepalive(self) -> None:
        if self.state not in _LINKED or self._busy():
            return
        if not self.driver.is_alive():
            self._link_lost("keepalive")
            return
        self.last_activity = self.clock()
        if self.state is SessionState.READING and not self.driver.scanning:
            self._begin_restart("scan_stopped")

    def _check_connection(self) -> None:
        if self.state not in _LINKED or self._busy():
            return
        if not self.driver.is_alive():
            self._link_lost("driver_not_alive")
            return
        now = self.clock()
        idle = 0.0 if self.last_activity is None else now - self.last_activity
        if idle > self.policy.max_inactivity_s:
            log.warning("session_inactive", extra={"idle_s": round(idle, 1)})
            self._link_lost("inactive")

    def _check_read_health(self) -> None:
        if self.state is not SessionState.READING or self._busy():
            return
        now = self.clock()
        idle = 0.0 if self.last_read is None else now - self.last_read
        if idle <= self.policy.no_data_threshold_s:
            self.health_failures = 0
            return
        self.health_failures += 1
        log.warning("read_health_failed", extra={"idle_s": round(idle, 1), "failures": self.health_failures})
        if self.health_failures >= self.policy.health_failures_before_restart:
            self.health_failures = 0
            self._begin_restart("no_data")

    # ---------- auto-restart ----------

    def _begin_restart(self, reason: str) -> None:
        if self.scheduler.is_running("auto_restart") or self._closed:
            return
        self.scheduler.spawn("auto_restart", self._restart_loop(reason), group=SESSION_GROUP)

    async def _restart_loop(self, reason: str) -> None:
        log.info("auto_restart_begin", extra={"reason": reason})
        if self.policy.max_auto_restart_attempts <= 0:
            self._restart_exhausted(reason, 0, None)
            return
        try:
            await self.policy.restart.run(
                self._restart_once,
                name="auto_restart",
                should_continue=lambda: self.desired is SessionState.READING and self.state in _LINKED,
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            if self.desired is SessionState.READING and self.state in _LINKED:
                self._restart_exhausted(reason, e.attempts, e.last_error)

    async def _restart_once(self) -> None:
        async with self._transition:
            if self.state not in _LINKED:
                raise SessionError("link down")
            self.restart_attempts += 1
            try:
                await self.driver.stop_scan()
            except DeviceError as e:
                log.warning("stop_scan_failed", extra={"err": str(e), "during": "auto_restart"})
            if self.state is SessionState.READING:
                self._set_state(SessionState.CONNECTED, reason="auto_restart")
                self._emit_reading(restarting=True)

            await self._sleep(self.policy.restart_settle_s)
            if not self.driver.is_alive():
                self._link_lost("restart_link_down")
                return

            await self.driver.start_scan()       # DeviceError counts as a failed attempt
            self.restart_attempts = 0
            self._enter_reading()
            log.info("auto_restart_ok")

    def _restart_exhausted(self, reason: str, attempts: int, last: Optional[BaseException]) -> None:
        self.faulted = True
        self.desired = SessionState.CONNECTED
        log.error("auto_restart_exhausted", extra={"reason": reason, "attempts": attempts,
                                                   "err": str(last) if last else None})
        self.emit(ev.READER_FAULT, {
            "reason": "auto_restart_exhausted",
            "trigger": reason,
            "attempts": attempts,
            "error": str(last) if last else None,
            "fatal": False,
            "message": "reading stopped; start it again manually",
        })
        self._emit_connection()

    # ---------- link loss / reconnect ----------

    def _link_lost(self, reason: str) -> None:
        if self.state is SessionState.DISCONNECTED or self._closed:
            return
        log.warning("link_lost", extra={"reason": reason, "desired": self.desired.value})
        was_reading = self.reading
        self.scheduler.stop_group(SESSION_GROUP)
        self._set_state(SessionState.DISCONNECTED, reason=reason)
        if was_reading:
            self._emit_reading(reason=reason)
        self._emit_connection(reason=reason)
        if self.desired is not SessionState.DISCONNECTED:
            self.scheduler.spawn("reconnect", self._reconnect_loop(reason), group=RECONNECT_GROUP)

    async def _reconnect_loop(self, reason: str) -> None:
        def _failed(attempt: int, err: BaseException) -> None:
            self.reconnect_attempts = attempt
            self._emit_connection(reconnect_attempt=attempt, error=str(err))

        try:
            await self.policy.reconnect.run(
                lambda: self._connect_once(restore=True),
                name="reconnect",
                should_continue=lambda: self.desired is not SessionState.DISCONNECTED and not self._closed,
                on_failure=_failed,
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            if self.desired is SessionState.DISCONNECTED or self._closed:
                return
            self.desired = SessionState.DISCONNECTED
            log.error("reconnect_exhausted", extra={"reason": reason, "attempts": e.attempts})
            self.emit(ev.READER_FAULT, {
                "reason": "reconnect_exhausted",
                "trigger": reason,
                "attempts": e.attempts,
                "error": str(e.last_error) if e.last_error else None,
                "fatal": False,
            })
            self._emit_connection(error=str(e))
        else:
            log.info("reconnected", extra={"reason": reason, "session_state": self.state.value})

    # ---------- shutdown ----------

    async def shutdown(self, timeout_s: float = 5.0) -> None:
        """Idempotent: stop timers, best-effort disconnect bounded by `timeout_s`."""
        if self._closed:
            return
        self._closed = True
        self.desired = SessionState.DISCONNECTED
        self.scheduler.stop_group(RECONNECT_GROUP)
        self.scheduler.stop_group(SESSION_GROUP)
        try:
            await asyncio.wait_for(self.disconnect(reason="shutdown"), timeout=timeout_s)
        except asyncio.TimeoutError:
            log.warning("shutdown_disconnect_timeout", extra={"timeout_s": timeout_s})
            self.state = SessionState.DISCONNECTED
