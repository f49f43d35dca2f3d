# File: parkgate/infrastructure/config.py
"""
Runtime configuration

Settings come from PARKGATE_* environment variables, optionally layered
over a YAML file (PARKGATE_CONFIG or an explicit path). The YAML file is
where lanes and barrier devices are declared:

    database_url: sqlite:///parkgate.db
    default_site_id: site-1
    barrier:
      timeout_seconds: 3
      dedup_window_seconds: 10
      driver: http
    lanes:
      lane-in-1: {device_id: gate-1, url: "http://10.0.0.11/barrier"}
      lane-out-1: {device_id: gate-2, url: "http://10.0.0.12/barrier"}
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
import logging
import os

import yaml


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised for unreadable or inconsistent settings"""
    pass


@dataclass(frozen=True)
class LaneConfig:
    lane_id: str
    device_id: str
    url: Optional[str] = None


@dataclass
class Settings:
    database_url: str = "sqlite:///parkgate.db"
    storage: str = "memory"
    redis_url: Optional[str] = None
    event_topic: str = "parkgate.events"
    default_site_id: str = "site-1"
    pricing_strategy: str = "standard"
    barrier_driver: str = "mock"
    barrier_timeout_seconds: float = 3.0
    barrier_dedup_window_seconds: float = 10.0
    barrier_workers: int = 4
    log_level: str = "INFO"
    log_dir: Optional[str] = "logs"
    lanes: Dict[str, LaneConfig] = field(default_factory=dict)

    def validate(self) -> 'Settings':
        if self.storage not in ("memory", "sql"):
            raise ConfigurationError(f"storage must be 'memory' or 'sql', got {self.storage!r}")
        if self.barrier_driver not in ("mock", "http"):
            raise ConfigurationError(f"barrier driver must be 'mock' or 'http', got {self.barrier_driver!r}")
        if self.barrier_timeout_seconds <= 0:
            raise ConfigurationError("barrier timeout must be positive")
        if self.barrier_dedup_window_seconds < 0:
            raise ConfigurationError("barrier dedup window cannot be negative")
        if self.barrier_workers < 1:
            raise ConfigurationError("barrier worker pool needs at least one worker")
        if self.barrier_driver == "http":
            missing = [lane.lane_id for lane in self.lanes.values() if not lane.url]
            if missing:
                raise ConfigurationError(f"http barrier driver needs a url for lanes: {', '.join(missing)}")
        return self

    @property
    def device_map(self) -> Dict[str, str]:
        """lane id -> device id"""
        return {lane.lane_id: lane.device_id for lane in self.lanes.values()}

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> 'Settings':
        barrier = data.get("barrier") or {}
        lanes = {}
        for lane_id, lane in (data.get("lanes") or {}).items():
            if not isinstance(lane, dict) or "device_id" not in lane:
                raise ConfigurationError(f"lane {lane_id} needs a device_id")
            lanes[lane_id] = LaneConfig(lane_id=lane_id, device_id=lane["device_id"], url=lane.get("url"))

        defaults = cls()
        return cls(
            database_url=data.get("database_url", defaults.database_url),
            storage=data.get("storage", defaults.storage),
            redis_url=data.get("redis_url", defaults.redis_url),
            event_topic=data.get("event_topic", defaults.event_topic),
            default_site_id=data.get("default_site_id", defaults.default_site_id),
            pricing_strategy=data.get("pricing_strategy", defaults.pricing_strategy),
            barrier_driver=barrier.get("driver", defaults.barrier_driver),
            barrier_timeout_seconds=float(barrier.get("timeout_seconds", defaults.barrier_timeout_seconds)),
            barrier_dedup_window_seconds=float(
                barrier.get("dedup_window_seconds", defaults.barrier_dedup_window_seconds)
            ),
            barrier_workers=int(barrier.get("workers", defaults.barrier_workers)),
            log_level=data.get("log_level", defaults.log_level),
            log_dir=data.get("log_dir", defaults.log_dir),
            lanes=lanes,
        )


_ENV_OVERRIDES = {
    "PARKGATE_DATABASE_URL": ("database_url", str),
    "PARKGATE_STORAGE": ("storage", str),
    "PARKGATE_REDIS_URL": ("redis_url", str),
    "PARKGATE_EVENT_TOPIC": ("event_topic", str),
    "PARKGATE_SITE_ID": ("default_site_id", str),
    "PARKGATE_BARRIER_DRIVER": ("barrier_driver", str),
    "PARKGATE_BARRIER_TIMEOUT": ("barrier_timeout_seconds", float),
    "PARKGATE_BARRIER_DEDUP_WINDOW": ("barrier_dedup_window_seconds", float),
    "PARKGATE_LOG_LEVEL": ("log_level", str),
}


def load_settings(path: Optional[str] = None) -> Settings:
    """Build Settings from an optional YAML file plus environment overrides"""
    path = path or os.getenv("PARKGATE_CONFIG")
    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must hold a mapping")
        logger.info(f"Loaded configuration from {path}")

    settings = Settings.from_mapping(data)
    for env_name, (attr, cast) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None:
            continue
        try:
            setattr(settings, attr, cast(raw))
        except ValueError as e:
            raise ConfigurationError(f"{env_name}={raw!r} is not a valid {cast.__name__}") from e
    return settings.validate()
