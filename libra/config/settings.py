"""Configuration handling for the Libra monitor."""
from __future__ import annotations

import logging
import math
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..errors import ConfigFault

log = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("LIBRA_SETTINGS_DIR", Path.home() / ".libra"))
CONFIG_PATH = Path(os.environ.get("LIBRA_CONFIG", CONFIG_DIR / "config.yaml"))

BACKENDS = ("phidget", "hx711", "simulated")
OFFLINE_POLICIES = ("every_tick", "transition")

DEFAULT_SAMPLE_PERIOD = 0.25
DEFAULT_HEARTBEAT_PERIOD = 60.0
DEFAULT_OPEN_TIMEOUT = 5.0
DEFAULT_NOISE_THRESHOLD = 3.0
DEFAULT_WINDOW_SIZE = 20


def _as_float(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigFault(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ConfigFault(f"{name} must be finite, got {value!r}")
    return number


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigFault(f"{name} must be an integer, got {value!r}") from None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass
class ScaleSettings:
    """Fully parsed configuration of one physical scale."""

    model: str
    serial: str
    board_serial: int = -1
    channel_id: int = 0
    gain: float = 1.0
    offset: float = 0.0
    location: str = ""
    ingredient: str = ""
    sample_period: float = DEFAULT_SAMPLE_PERIOD
    heartbeat_period: float = DEFAULT_HEARTBEAT_PERIOD
    open_timeout: float = DEFAULT_OPEN_TIMEOUT
    backend: str = "phidget"
    hx711_dt: int = 5
    hx711_sck: int = 6

    def __post_init__(self) -> None:
        self.model = _as_text(self.model)
        self.serial = _as_text(self.serial)
        if not self.model:
            raise ConfigFault("scale model is required")
        if not self.serial:
            raise ConfigFault(f"scale {self.model}: serial is required")
        self.board_serial = _as_int("board_serial", self.board_serial)
        self.channel_id = _as_int("channel_id", self.channel_id)
        self.gain = _as_float("gain", self.gain)
        self.offset = _as_float("offset", self.offset)
        self.location = _as_text(self.location)
        self.ingredient = _as_text(self.ingredient)
        self.sample_period = _as_float("sample_period", self.sample_period)
        self.heartbeat_period = _as_float("heartbeat_period", self.heartbeat_period)
        self.open_timeout = _as_float("open_timeout", self.open_timeout)
        for name in ("sample_period", "heartbeat_period", "open_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigFault(f"scale {self.label}: {name} must be positive")
        self.backend = _as_text(self.backend).lower() or "phidget"
        if self.backend not in BACKENDS:
            raise ConfigFault(f"scale {self.label}: unknown backend {self.backend!r}")
        self.hx711_dt = _as_int("hx711_dt", self.hx711_dt)
        self.hx711_sck = _as_int("hx711_sck", self.hx711_sck)

    @property
    def label(self) -> str:
        return f"{self.model}-{self.serial}"

    @classmethod
    def from_dict(cls, payload: Any) -> "ScaleSettings":
        if not isinstance(payload, dict):
            raise ConfigFault(f"scale entry must be a mapping, got {type(payload).__name__}")
        data = _normalize_scale_payload(dict(payload))
        field_names = {f.name for f in cls.__dataclass_fields__.values()}
        unknown = sorted(set(data) - field_names)
        if unknown:
            log.debug("Ignoring unknown scale keys: %s", ", ".join(unknown))
        filtered = {k: v for k, v in data.items() if k in field_names}
        try:
            return cls(**filtered)
        except TypeError as exc:
            raise ConfigFault(f"incomplete scale entry: {exc}") from None


@dataclass
class Settings:
    """Top level monitor settings."""

    scales: List[ScaleSettings] = field(default_factory=list)
    database_path: Path = field(default_factory=lambda: CONFIG_DIR / "data.db")
    noise_threshold: float = DEFAULT_NOISE_THRESHOLD
    window_size: int = DEFAULT_WINDOW_SIZE
    offline_policy: str = "every_tick"
    backend_url: Optional[str] = None
    backend_timeout: float = 0.25
    backend_retries: int = 1
    backend_queue_size: int = 256
    liveness_path: Optional[Path] = None
    log_level: str = "INFO"
    rejected: List[Tuple[int, str]] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self.database_path = Path(self.database_path).expanduser()
        self.noise_threshold = _as_float("noise_threshold", self.noise_threshold)
        if self.noise_threshold <= 0:
            raise ConfigFault("noise_threshold must be positive")
        self.window_size = _as_int("window_size", self.window_size)
        if self.window_size < 1:
            raise ConfigFault("window_size must be at least 1")
        self.offline_policy = _as_text(self.offline_policy).lower() or "every_tick"
        if self.offline_policy not in OFFLINE_POLICIES:
            raise ConfigFault(f"unknown offline_policy {self.offline_policy!r}")
        self.backend_url = _as_text(self.backend_url) or None
        self.backend_timeout = _as_float("backend_timeout", self.backend_timeout)
        if self.backend_timeout <= 0:
            raise ConfigFault("backend_timeout must be positive")
        self.backend_retries = max(0, _as_int("backend_retries", self.backend_retries))
        self.backend_queue_size = max(1, _as_int("backend_queue_size", self.backend_queue_size))
        if self.liveness_path:
            self.liveness_path = Path(self.liveness_path).expanduser()
        else:
            self.liveness_path = None
        self.log_level = (_as_text(self.log_level) or "INFO").upper()

    @property
    def tick_period(self) -> float:
        if not self.scales:
            return DEFAULT_SAMPLE_PERIOD
        return min(scale.sample_period for scale in self.scales)

    @property
    def heartbeat_period(self) -> float:
        if not self.scales:
            return DEFAULT_HEARTBEAT_PERIOD
        return min(scale.heartbeat_period for scale in self.scales)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.pop("rejected", None)
        payload["database_path"] = str(self.database_path)
        payload["liveness_path"] = str(self.liveness_path) if self.liveness_path else None
        return payload

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Settings":
        if not isinstance(payload, dict):
            raise ConfigFault("settings document must be a mapping")
        field_names = {f.name for f in cls.__dataclass_fields__.values()} - {"scales", "rejected"}
        general = {k: v for k, v in payload.items() if k in field_names}

        raw_scales = payload.get("scales") or []
        if not isinstance(raw_scales, list):
            raise ConfigFault("'scales' must be a list")
        scales: List[ScaleSettings] = []
        rejected: List[Tuple[int, str]] = []
        for index, entry in enumerate(raw_scales):
            try:
                scales.append(ScaleSettings.from_dict(entry))
            except ConfigFault as exc:
                log.error("Scale entry #%d rejected: %s", index, exc)
                rejected.append((index, str(exc)))
        return cls(scales=scales, rejected=rejected, **general)

    @classmethod
    def load(cls, path: Path = CONFIG_PATH) -> "Settings":
        """Load settings from a YAML document; a missing file yields defaults."""

        path = Path(path).expanduser()
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.warning("Settings file %s missing; using defaults", path)
            return cls()
        except OSError as exc:
            raise ConfigFault(f"cannot read {path}: {exc}") from exc

        try:
            payload = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise ConfigFault(f"invalid YAML in {path}: {exc}") from exc

        settings = cls.from_dict(payload)
        log.info(
            "Loaded settings from %s: %d scale(s), %d rejected, tick=%.3fs heartbeat=%.1fs",
            path,
            len(settings.scales),
            len(settings.rejected),
            settings.tick_period,
            settings.heartbeat_period,
        )
        return settings


# ----------------------------------------------------------------------
def _normalize_scale_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    if "scale_type" in data and "model" not in data:
        data["model"] = data.pop("scale_type")
    if "scale_sn" in data and "serial" not in data:
        data["serial"] = data.pop("scale_sn")
    if "phidget_sn" in data and "board_serial" not in data:
        data["board_serial"] = data.pop("phidget_sn")
    if "phidget_id" in data and "board_serial" not in data:
        data["board_serial"] = data.pop("phidget_id")
    if "load_cell_id" in data and "channel_id" not in data:
        data["channel_id"] = data.pop("load_cell_id")
    for key in ("sample_period", "heartbeat_period"):
        ms_key = f"{key}_ms"
        if ms_key in data and key not in data:
            data[key] = _as_float(ms_key, data.pop(ms_key)) / 1000.0
    return data


__all__ = [
    "Settings",
    "ScaleSettings",
    "CONFIG_PATH",
    "BACKENDS",
    "OFFLINE_POLICIES",
]
