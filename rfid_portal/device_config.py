# rfid_portal/device_config.py
"""
Typed views over the raw YAML dict.

ReaderConfig is validated (pydantic); the policy/settings blocks are plain
dataclasses built with from_app(), defaults matching a fresh install.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ValidationError, field_validator

from .errors import ConfigError
from .retry import RetryPolicy

IP_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
DRIVER_KINDS = ("mock", "tcp_line")

# accepted spellings coming from browser clients
_ALIASES = {
    "soundEnabled": "sound_enabled",
    "matchSoundEnabled": "match_sound_enabled",
    "host": "ip",
}


def _block(app_dict: Optional[Mapping[str, Any]], name: str) -> Dict[str, Any]:
    return dict(((app_dict or {}).get(name) or {}))


# ---------- reader ----------

class ReaderConfig(BaseModel):
    ip: str = "192.168.99.201"
    port: int = 8888
    power: int = 20                       # dBm
    antennas: List[int] = [1, 2, 3, 4]
    sound_enabled: bool = True
    match_sound_enabled: bool = True
    driver: str = "tcp_line"
    connect_timeout_s: float = 5.0

    # mock driver only
    mock_period_s: float = 1.0
    mock_tids: List[str] = []

    @field_validator("ip")
    @classmethod
    def _ip(cls, v: str) -> str:
        v = str(v).strip()
        if not IP_RE.match(v):
            raise ValueError("IP address must be dotted-quad (e.g. 192.168.1.100)")
        return v

    @field_validator("port")
    @classmethod
    def _port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("power")
    @classmethod
    def _power(cls, v: int) -> int:
        if not 0 <= v <= 30:
            raise ValueError("power must be between 0 and 30 dBm")
        return v

    @field_validator("antennas")
    @classmethod
    def _antennas(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("at least one antenna must be enabled")
        bad = [a for a in v if not 1 <= a <= 4]
        if bad:
            raise ValueError(f"antennas must be between 1 and 4 (got {bad})")
        return sorted(set(v))

    @field_validator("driver")
    @classmethod
    def _driver(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in DRIVER_KINDS:
            raise ValueError(f"driver must be one of {', '.join(DRIVER_KINDS)}")
        return v

    @classmethod
    def validated(cls, data: Mapping[str, Any]) -> "ReaderConfig":
        """Build from a loose mapping; any problem becomes ConfigError(reason)."""
        clean = {_ALIASES.get(k, k): v for k, v in (data or {}).items()}
        try:
            return cls(**clean)
        except ValidationError as e:
            raise ConfigError(_reason(e)) from e

    @classmethod
    def from_app(cls, app_dict: Optional[Mapping[str, Any]]) -> "ReaderConfig":
        return cls.validated(_block(app_dict, "reader"))

    def merged(self, update: Optional[Mapping[str, Any]]) -> "ReaderConfig":
        """New config with `update` applied on top. Raises ConfigError; self is untouched."""
        data = self.model_dump()
        for k, v in (update or {}).items():
            if v is not None:
                data[_ALIASES.get(k, k)] = v
        return ReaderConfig.validated(data)

    def needs_reconnect(self, other: "ReaderConfig") -> bool:
        """True when `other` changes anything pushed to the device at connect time."""
        mine = (self.ip, self.port, self.driver, self.power, tuple(self.antennas))
        return mine != (other.ip, other.port, other.driver, other.power, tuple(other.antennas))

    def public(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "port": self.port,
            "power": self.power,
            "antennas": list(self.antennas),
            "sound_enabled": self.sound_enabled,
            "match_sound_enabled": self.match_sound_enabled,
            "driver": self.driver,
        }


def _reason(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        msg = str(err.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}")
    return "; ".join(parts) or "invalid configuration"


# ---------- session policy ----------

@dataclass
class SessionPolicy:
    keepalive_s: float = 30.0
    max_inactivity_s: float = 60.0
    connection_check_s: float = 10.0
    read_health_s: float = 20.0
    no_data_threshold_s: float = 45.0
    health_failures_before_restart: int = 1
    auto_restart_s: float = 40.0
    max_auto_restart_attempts: int = 3
    restart_settle_s: float = 1.0
    reconnect: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=5, delay_s=3.0))

    @property
    def restart(self) -> RetryPolicy:
        """Auto-restart attempts: first one immediately, then every auto_restart_s."""
        return RetryPolicy(max_attempts=max(1, self.max_auto_restart_attempts), delay_s=self.auto_restart_s)

    @classmethod
    def from_app(cls, app_dict: Optional[Mapping[str, Any]]) -> "SessionPolicy":
        s = _block(app_dict, "session")
        d = cls()
        return cls(
            keepalive_s=float(s.get("keepalive_s", d.keepalive_s)),
            max_inactivity_s=float(s.get("max_inactivity_s", d.max_inactivity_s)),
            connection_check_s=float(s.get("connection_check_s", d.connection_check_s)),
            read_health_s=float(s.get("read_health_s", d.read_health_s)),
            no_data_threshold_s=float(s.get("no_data_threshold_s", d.no_data_threshold_s)),
            health_failures_before_restart=max(1, int(s.get("health_failures_before_restart",
                                                            d.health_failures_before_restart))),
            auto_restart_s=float(s.get("auto_restart_s", d.auto_restart_s)),
            max_auto_restart_attempts=max(0, int(s.get("max_auto_restart_attempts", d.max_auto_restart_attempts))),
            restart_settle_s=float(s.get("restart_settle_s", d.restart_settle_s)),
            reconnect=RetryPolicy.from_cfg(s.get("reconnect"), max_attempts=5, delay_s=3.0),
        )


# ---------- pipeline ----------

@dataclass
class PipelineSettings:
    buffer_capacity: int = 100
    history_limit: int = 50
    max_lookups_per_sec: int = 100
    cooldown_s: float = 30.0
    dedup_max_entries: int = 1000
    dedup_sweep_s: float = 30.0
    aggregate_interval_s: float = 1.0
    flush_interval_s: float = 0.1
    max_batch: int = 30

    @classmethod
    def from_app(cls, app_dict: Optional[Mapping[str, Any]]) -> "PipelineSettings":
        p = _block(app_dict, "pipeline")
        d = cls()
        return cls(
            buffer_capacity=max(1, int(p.get("buffer_capacity", d.buffer_capacity))),
            history_limit=max(0, int(p.get("history_limit", d.history_limit))),
            max_lookups_per_sec=int(p.get("max_lookups_per_sec", d.max_lookups_per_sec)),
            cooldown_s=float(p.get("cooldown_s", d.cooldown_s)),
            dedup_max_entries=max(1, int(p.get("dedup_max_entries", d.dedup_max_entries))),
            dedup_sweep_s=float(p.get("dedup_sweep_s", d.dedup_sweep_s)),
            aggregate_interval_s=float(p.get("aggregate_interval_s", d.aggregate_interval_s)),
            flush_interval_s=float(p.get("flush_interval_s", d.flush_interval_s)),
            max_batch=max(1, int(p.get("max_batch", d.max_batch))),
        )


# ---------- inventory ----------

@dataclass
class InventorySettings:
    batch_size: int = 1000
    max_items: int = 50_000
    marker: str = "uhf"
    pause_s: float = 0.1
    cache_path: Optional[str] = "data/inventory.json"
    background_threshold_bytes: int = 1024 * 1024
    restore_on_start: bool = True

    @classmethod
    def from_app(cls, app_dict: Optional[Mapping[str, Any]]) -> "InventorySettings":
        i = _block(app_dict, "inventory")
        d = cls()
        return cls(
            batch_size=max(1, int(i.get("batch_size", d.batch_size))),
            max_items=max(1, int(i.get("max_items", d.max_items))),
            marker=str(i.get("marker", d.marker) or d.marker),
            pause_s=float(i.get("pause_s", d.pause_s)),
            cache_path=i.get("cache_path", d.cache_path),
            background_threshold_bytes=int(i.get("background_threshold_bytes", d.background_threshold_bytes)),
            restore_on_start=bool(i.get("restore_on_start", d.restore_on_start)),
        )
