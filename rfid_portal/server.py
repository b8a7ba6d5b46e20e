from __future__ import annotations

"""
RFID portal - rfid_portal/server.py
-----------------------------------
Thin HTTP face of PortalService.

1) Session control
   - /api/connect, /api/disconnect, /api/start-reading, /api/stop-reading
   - /api/config (GET/POST) and /api/power; validation problems are 400s
     carrying the reason, device trouble is 502, wrong-state requests 409.

2) Readings
   - /api/status, /api/readings, /api/readings/clear

3) Inventory
   - POST /api/inventory/upload?file_name=items.xlsx with the raw file as body.
     Bodies above inventory.background_threshold_bytes are answered at once
     (202) and processed in the background; progress arrives on the stream.
   - GET /api/inventory, GET /api/inventory/search, DELETE /api/inventory

4) Live events
   - /events/stream: Server-Sent Events, one `event:` per bus event,
     recent history replayed on connect.
   - /healthz: liveness only.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from . import config_loader
from .errors import ConfigError, DeviceError, LoadSuperseded, PortalError, SessionError, SpreadsheetError
from .service import PortalService

log = logging.getLogger("portal")

# ------------------------------------------------------------
# FastAPI app bootstrap
# ------------------------------------------------------------
app = FastAPI(title="RFID Portal", version=__version__)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_SERVICE: Optional[PortalService] = None
_UPLOAD_SEQ = itertools.count(1)


def install_service(svc: Optional[PortalService]) -> None:
    """Use `svc` instead of building one from CONFIG at startup (tests, embedding)."""
    global _SERVICE
    _SERVICE = svc


def get_service() -> PortalService:
    if _SERVICE is None:
        raise HTTPException(status_code=503, detail="portal not started")
    return _SERVICE


@app.on_event("startup")
async def start_portal() -> None:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = PortalService(config_loader.CONFIG, cache_path=config_loader.get_inventory_cache_path())
    await _SERVICE.start()


@app.on_event("shutdown")
async def stop_portal() -> None:
    if _SERVICE is not None:
        await _SERVICE.stop()
        log.info("portal_stopped_cleanly")


# ------------------------------------------------------------
# Health
# ------------------------------------------------------------

@app.get("/healthz")
async def healthz():
    return {"ok": True, "version": __version__}


# ------------------------------------------------------------
# Session control
# ------------------------------------------------------------

@app.get("/api/status")
async def api_status():
    return get_service().status()


@app.post("/api/connect")
async def api_connect():
    svc = get_service()
    try:
        status = await svc.supervisor.connect()
    except SessionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DeviceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "message": "connected", "status": status}


@app.post("/api/disconnect")
async def api_disconnect():
    status = await get_service().supervisor.disconnect()
    return {"ok": True, "message": "disconnected", "status": status}


@app.post("/api/start-reading")
async def api_start_reading():
    svc = get_service()
    try:
        started = await svc.supervisor.start_reading()
    except DeviceError as e:
        raise HTTPException(status_code=502, detail=f"could not start reading: {e}")
    if not started:
        raise HTTPException(status_code=409, detail="reader is not connected")
    return {"ok": True, "reading": True}


@app.post("/api/stop-reading")
async def api_stop_reading():
    stopped = await get_service().supervisor.stop_reading()
    return {"ok": True, "reading": False, "was_reading": stopped}


@app.get("/api/config")
async def api_get_config():
    return get_service().supervisor.config.public()


@app.post("/api/config")
async def api_set_config(payload: Dict[str, Any] = Body(...)):
    svc = get_service()
    try:
        result = await svc.supervisor.apply_config(payload)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    except SessionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DeviceError as e:
        raise HTTPException(status_code=502, detail=f"config saved but reconnect failed: {e}")
    return {"ok": True, **result}


@app.post("/api/power")
async def api_set_power(payload: Dict[str, Any] = Body(...)):
    svc = get_service()
    try:
        result = await svc.supervisor.set_power(payload.get("power"))
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.reason)
    return {"ok": True, **result}


# ------------------------------------------------------------
# Readings
# ------------------------------------------------------------

@app.get("/api/readings")
async def api_readings(limit: Optional[int] = None):
    return get_service().readings(limit)


@app.post("/api/readings/clear")
async def api_clear_readings():
    return {"ok": True, **get_service().clear_readings()}


# ------------------------------------------------------------
# Inventory
# ------------------------------------------------------------

async def _load_in_background(svc: PortalService, data: bytes, file_name: str) -> None:
    try:
        await svc.loader.load_bytes(data, file_name)
    except PortalError as e:
        # already logged and published as inventory-processing-error / superseded
        log.info("background_load_ended", extra={"file_name": file_name, "err": str(e)})


@app.post("/api/inventory/upload")
async def api_upload_inventory(request: Request, file_name: str):
    svc = get_service()
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="empty upload")

    threshold = svc.inventory_settings.background_threshold_bytes
    if len(data) > threshold:
        name = f"inventory_load:{next(_UPLOAD_SEQ)}"
        svc.scheduler.spawn(name, _load_in_background(svc, data, file_name), group="inventory")
        return JSONResponse(status_code=202, content={
            "ok": True, "background": True, "file_name": file_name, "size": len(data),
            "message": "processing in background; follow inventory-processing-* events",
        })

    try:
        result = await svc.loader.load_bytes(data, file_name)
    except SpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LoadSuperseded:
        raise HTTPException(status_code=409, detail="superseded by a newer upload")
    return {"ok": True, "background": False, **result.as_dict()}


@app.get("/api/inventory")
async def api_inventory():
    snap = get_service().index.current
    return {"has_data": len(snap) > 0, **snap.as_payload()}


@app.get("/api/inventory/search")
async def api_inventory_search(q: str = "", columns: Optional[str] = None):
    cols = [c.strip() for c in columns.split(",")] if columns else None
    return get_service().index.search(q, cols)


@app.delete("/api/inventory")
async def api_clear_inventory():
    await get_service().loader.clear()
    return {"ok": True, "message": "inventory cleared"}


# ------------------------------------------------------------
# Live events (SSE)
# ------------------------------------------------------------

@app.get("/api/events/recent")
async def api_recent_events(name: Optional[str] = None, limit: int = 50):
    return {"events": get_service().bus.recent(name, limit)}


@app.get("/events/stream")
async def events_stream(request: Request, replay: bool = True):
    """EventSource stream of every portal event."""
    bus = get_service().bus
    q = bus.subscribe(replay=replay)

    async def gen():
        try:
            while not await request.is_disconnected():
                try:
                    evt = await asyncio.wait_for(q.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield b": keep-alive\n\n"
                    continue
                if evt.get("event") == "shutdown":
                    break
                body = json.dumps(evt, separators=(",", ":"), default=str)
                yield f"event: {evt['event']}\ndata: {body}\n\n".encode()
        finally:
            bus.unsubscribe(q)

    return StreamingResponse(gen(), media_type="text/event-stream", headers={"Cache-Control": "no-store"})
