# rfid_portal/drivers.py
"""
Device collaborators.

A driver owns the wire. It pushes DeviceMessage objects into its `events`
queue; the session supervisor is the only consumer. Kinds:
    tag    payload = decoded tag fields {tid, epc, rssi, ant}
    lost   payload = {"reason": ...}   link dropped by the far end / I/O error
    error  payload = {"error": ...}   non-fatal device complaint

Drivers:
    mock      synthetic tags while scanning + test hooks
    tcp_line  asyncio TCP stream to a reader bridge, one tag per text line
"""

from __future__ import annotations
import asyncio
import contextlib
import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import commands
from .device_config import ReaderConfig
from .errors import DeviceError

log = logging.getLogger("portal.device")

TAG = "tag"
LOST = "lost"
ERROR = "error"


@dataclass(frozen=True)
class DeviceMessage:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


# -----------------
# Driver interface
# -----------------
class ReaderDriver(ABC):
    kind = "abstract"

    def __init__(self, queue_size: int = 1024):
        self.events: "asyncio.Queue[DeviceMessage]" = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self.connected = False
        self.scanning = False
        self.dropped_messages = 0

    def push(self, msg: DeviceMessage) -> None:
        try:
            self.events.put_nowait(msg)
        except asyncio.QueueFull:
            # Backpressure: drop oldest then enqueue.
            _ = self.events.get_nowait()
            self.events.put_nowait(msg)
            self.dropped_messages += 1

    def is_alive(self) -> bool:
        return self.connected

    @abstractmethod
    async def connect(self, cfg: ReaderConfig) -> None:
        """Open the link and push the reader configuration. Raises DeviceError."""
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def start_scan(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def stop_scan(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send(self, frame: bytes) -> None:
        raise NotImplementedError


# ---------- mock ----------

class MockDriver(ReaderDriver):
    """
    In-process stand-in for a reader. While scanning it emits one synthetic
    tag every `period_s` (0 disables the generator); tests drive it with
    inject()/drop() and the fail_* hooks instead.
    """
    kind = "mock"

    def __init__(self, period_s: Optional[float] = None, tids: Optional[List[str]] = None,
                 queue_size: int = 1024):
        super().__init__(queue_size)
        self._period_override = period_s
        self._tids_override = tids
        self.period_s = 0.0
        self.tids: List[str] = []
        self.cfg: Optional[ReaderConfig] = None
        self.sent: List[bytes] = []
        self.connect_calls = 0
        self.start_calls = 0
        self.stop_calls = 0
        self._fail_connect = 0
        self._fail_start = 0
        self._fail_stop = 0
        self._gen: Optional[asyncio.Task] = None

    # ---------- test hooks ----------

    def fail_connect(self, times: int = 1) -> None:
        self._fail_connect = int(times)

    def fail_start(self, times: int = 1) -> None:
        self._fail_start = int(times)

    def fail_stop(self, times: int = 1) -> None:
        self._fail_stop = int(times)

    def inject(self, **fields: Any) -> None:
        self.push(DeviceMessage(TAG, dict(fields)))

    def drop(self, reason: str = "link dropped") -> None:
        self._halt()
        self.connected = False
        self.push(DeviceMessage(LOST, {"reason": reason}))

    # ---------- driver API ----------

    async def connect(self, cfg: ReaderConfig) -> None:
        self.connect_calls += 1
        if self._fail_connect > 0:
            self._fail_connect -= 1
            raise DeviceError(f"mock connect refused ({cfg.ip}:{cfg.port})")
        self.cfg = cfg
        self.period_s = cfg.mock_period_s if self._period_override is None else self._period_override
        self.tids = list(self._tids_override if self._tids_override is not None else cfg.mock_tids)
        self.connected = True
        for frame in (commands.set_power(cfg.power), commands.set_antennas(cfg.antennas), commands.APPLY_CONFIG):
            await self.send(frame)
        log.info("mock_connected", extra={"ip": cfg.ip, "port": cfg.port})

    async def disconnect(self) -> None:
        self._halt()
        self.connected = False

    async def start_scan(self) -> None:
        self.start_calls += 1
        if not self.connected:
            raise DeviceError("not connected")
        if self._fail_start > 0:
            self._fail_start -= 1
            raise DeviceError("mock start refused")
        self.scanning = True
        if self.period_s > 0 and (self._gen is None or self._gen.done()):
            self._gen = asyncio.get_running_loop().create_task(self._generate(), name="mock_tags")

    async def stop_scan(self) -> None:
        self.stop_calls += 1
        self._halt()
        if self._fail_stop > 0:
            self._fail_stop -= 1
            raise DeviceError("mock stop refused")

    async def send(self, frame: bytes) -> None:
        if not self.connected:
            raise DeviceError("not connected")
        self.sent.append(bytes(frame))

    def _halt(self) -> None:
        self.scanning = False
        if self._gen is not None:
            self._gen.cancel()
            self._gen = None

    async def _generate(self) -> None:
        pool = self.tids or [f"E2801160{n:016X}" for n in range(1, 9)]
        while self.scanning:
            tid = random.choice(pool)
            self.push(DeviceMessage(TAG, {
                "tid": tid,
                "epc": f"3000{tid[-8:]}",
                "rssi": round(random.uniform(-75.0, -40.0), 1),
                "ant": random.choice(self.cfg.antennas if self.cfg else [1]),
            }))
            await asyncio.sleep(self.period_s)


# ---------- TCP line bridge ----------

_HEX_TAG = re.compile(r"^[0-9A-Fa-f]{8,}$")
_KV_SPLIT = re.compile(r"[\s;,]+")
_KEYS = {"tid": "tid", "epc": "epc", "rssi": "rssi", "ant": "ant", "antenna": "ant"}


def parse_line(line: str) -> Optional[Dict[str, Any]]:
    """
    Decode one bridge line. Accepted shapes:
        tid=E280... epc=3000... ant=1 rssi=-52.5    (any separator: space ; ,)
        <epc>,<tid>,<ant>,<rssi>                    (trailing fields optional)
        <hex tag>                                   (taken as tid)
    Returns None for anything else.
    """
    s = (line or "").strip()
    if not s or s.startswith("#"):
        return None

    if "=" in s:
        out: Dict[str, Any] = {}
        for tok in _KV_SPLIT.split(s):
            if "=" not in tok:
                continue
            k, v = tok.split("=", 1)
            key = _KEYS.get(k.strip().lower())
            if key and v.strip():
                out[key] = v.strip()
        return out if (out.get("tid") or out.get("epc")) else None

    if "," in s:
        parts = [p.strip() for p in s.split(",")]
        epc = parts[0] if len(parts) > 0 else ""
        tid = parts[1] if len(parts) > 1 else ""
        if not (epc or tid):
            return None
        out = {"epc": epc or None, "tid": tid or None}
        if len(parts) > 2 and parts[2]:
            out["ant"] = parts[2]
        if len(parts) > 3 and parts[3]:
            out["rssi"] = parts[3]
        return out

    if _HEX_TAG.match(s):
        return {"tid": s}
    return None


class TcpLineDriver(ReaderDriver):
    kind = "tcp_line"

    def __init__(self, queue_size: int = 1024):
        super().__init__(queue_size)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._rx: Optional[asyncio.Task] = None
        self.malformed_lines = 0

    async def connect(self, cfg: ReaderConfig) -> None:
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(cfg.ip, cfg.port), timeout=cfg.connect_timeout_s
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise DeviceError(f"connect tcp://{cfg.ip}:{cfg.port} failed: {type(e).__name__}: {e}") from e
        self.connected = True
        log.info("tcp_connected", extra={"ip": cfg.ip, "port": cfg.port})

        try:
            for frame in (commands.set_power(cfg.power), commands.set_antennas(cfg.antennas), commands.APPLY_CONFIG):
                await self.send(frame)
                log.debug("config_frame_sent", extra={"frame": commands.hexdump(frame)})
        except DeviceError as e:
            log.warning("tcp_config_failed", extra={"ip": cfg.ip, "port": cfg.port, "err": str(e)})
            await self.disconnect()
            raise

        self._rx = asyncio.get_running_loop().create_task(self._read_lines(), name="tcp_line_rx")

    async def disconnect(self) -> None:
        self.scanning = False
        self.connected = False
        if self._rx is not None:
            self._rx.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._rx
            self._rx = None
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(OSError, ConnectionError):
                await self._writer.wait_closed()
        self._reader = self._writer = None

    async def start_scan(self) -> None:
        await self._command(b"START\r\n")
        self.scanning = True

    async def stop_scan(self) -> None:
        self.scanning = False
        await self._command(b"STOP\r\n")

    async def send(self, frame: bytes) -> None:
        await self._command(frame)

    async def _command(self, data: bytes) -> None:
        if not self.connected or self._writer is None:
            raise DeviceError("not connected")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (OSError, ConnectionError) as e:
            raise DeviceError(f"write failed: {type(e).__name__}: {e}") from e

    async def _read_lines(self) -> None:
        assert self._reader is not None
        reason = "eof"
        try:
            while True:
                raw = await self._reader.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue
                fields = parse_line(line)
                if fields is None:
                    self.malformed_lines += 1
                    log.debug("line_dropped", extra={"raw_line": line[:120]})
                    continue
                if self.scanning:
                    self.push(DeviceMessage(TAG, fields))
        except asyncio.CancelledError:
            raise
        except (OSError, ConnectionError) as e:
            reason = f"{type(e).__name__}: {e}"
        if self.connected:
            self.connected = False
            self.scanning = False
            log.warning("tcp_link_lost", extra={"reason": reason})
            self.push(DeviceMessage(LOST, {"reason": reason}))


DRIVER_TYPES = {
    "mock": MockDriver,
    "tcp_line": TcpLineDriver,
}


def make_driver(cfg: ReaderConfig) -> ReaderDriver:
    return DRIVER_TYPES[cfg.driver]()
