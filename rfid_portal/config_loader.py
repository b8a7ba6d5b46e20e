# rfid_portal/config_loader.py
from __future__ import annotations
"""
Configuration loader for the RFID portal.

One YAML file drives everything:
    config/config.yaml   (or RFID_PORTAL_CONFIG=/path/to/other.yaml)

Notes
-----
- A missing, unreadable or malformed file stops startup with a RuntimeError
  that names the absolute path it tried.
- Extra keys are kept; the raw dict is handed to the typed from_app() builders.
- Section accessors hand back {} (or a default) when a block is left out.
- Relative paths inside the file are taken from the project root.

Public API
----------
- CONFIG: dict                 # loaded at import time
- load_config(path=None)       # load another file (entry point --config, tools)
- use_config(cfg)              # make a loaded dict the active one
- get_app(), get_reader_cfg(), get_session_cfg(), get_pipeline_cfg(), get_inventory_cfg()
- get_inventory_cache_path() -> Path | None
- get_log_level(default="INFO") -> str
- get_server_bind() -> (host, port)
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- locations ----------
ROOT_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = ROOT_DIR / "config" / "config.yaml"
ENV_VAR = "RFID_PORTAL_CONFIG"

DEFAULT_BIND = ("127.0.0.1", 3001)


def _read_mapping(path: Path) -> Dict[str, Any]:
    """YAML file -> dict. Every failure becomes a RuntimeError naming `path`."""
    if not path.is_file():
        raise RuntimeError(
            f"Config file not found: {path}\n"
            f"Create it from config/config.yaml (needs a top-level 'app:' block).\n"
            f"Project root: {ROOT_DIR}"
        )
    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Config {path} is not valid YAML: {ex}")
    except OSError as ex:
        raise RuntimeError(f"Could not open config {path}: {type(ex).__name__}: {ex}")

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise RuntimeError(f"Config {path} must hold a mapping at the top level (got {type(raw).__name__})")
    return raw


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Absolute paths pass through; relative ones hang off the project root."""
    candidate = Path(p)
    if candidate.is_absolute():
        return candidate
    return (ROOT_DIR / candidate).resolve()


def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Pick the file (argument, then $RFID_PORTAL_CONFIG, then the default),
    load it and check that `app.reader` is present.
    """
    source = path or os.environ.get(ENV_VAR)
    cfg_path = resolve_path(source) if source else DEFAULT_CONFIG_PATH
    cfg = _read_mapping(cfg_path)

    app = cfg.get("app")
    if not isinstance(app, dict) or not isinstance(app.get("reader"), dict):
        raise RuntimeError(
            f"{cfg_path}: expected an 'app.reader' block (ip, port, power, antennas).\n"
            "See config/config.yaml for a complete example."
        )
    return cfg


CONFIG: Dict[str, Any] = load_config()


def use_config(cfg: Dict[str, Any]) -> None:
    """Point the accessors at an already-loaded dict (entry point / tests)."""
    global CONFIG
    CONFIG = cfg


# ---------- section accessors ----------
def _section(name: str) -> Dict[str, Any]:
    return get_app().get(name) or {}


def get_app() -> Dict[str, Any]:
    return CONFIG.get("app") or {}


def get_reader_cfg() -> Dict[str, Any]:
    """Reader link block (ip/port/power/antennas/driver)."""
    return _section("reader")


def get_session_cfg() -> Dict[str, Any]:
    """Keep-alive, health and retry timings."""
    return _section("session")


def get_pipeline_cfg() -> Dict[str, Any]:
    return _section("pipeline")


def get_inventory_cfg() -> Dict[str, Any]:
    return _section("inventory")


def get_inventory_cache_path() -> Optional[Path]:
    """Absolute path of the inventory JSON cache, or None when caching is off."""
    p = get_inventory_cfg().get("cache_path", "data/inventory.json")
    return resolve_path(p) if p else None


def get_log_level(default: str = "INFO") -> str:
    log_cfg = CONFIG.get("log") or {}
    return str(log_cfg.get("level") or default).upper()


def get_server_bind() -> Tuple[str, int]:
    """(host, port) from app.server; falls back to 127.0.0.1:3001."""
    srv = _section("server")
    try:
        return str(srv.get("host", DEFAULT_BIND[0])), int(srv.get("port", DEFAULT_BIND[1]))
    except (TypeError, ValueError):
        return DEFAULT_BIND
