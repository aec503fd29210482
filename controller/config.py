"""
Runtime settings for the Telescaler controller, read from TELESCALER_* environment variables.
"""

import os
import logging
from dataclasses import dataclass, fields
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ENV_PREFIX = "TELESCALER_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    evaluation_interval_seconds: float = 30.0
    max_concurrent_actions: int = 3
    global_max_instances: int = 50
    action_ttl_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0
    buffer_size: int = 1000
    flush_interval_seconds: float = 30.0
    retention_seconds: float = 86400.0
    max_points_per_metric: int = 10000
    collect_system_metrics: bool = True
    system_metrics_interval_seconds: float = 60.0
    policy_file: Optional[str] = None
    orchestrator: str = "simulated"
    simulated_delay: Tuple[float, float] = (2.0, 5.0)

    def __post_init__(self):
        if self.port < 1 or self.port > 65535:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")
        if self.evaluation_interval_seconds <= 0:
            raise ValueError("evaluation_interval_seconds must be > 0")
        if self.max_concurrent_actions < 1:
            raise ValueError("max_concurrent_actions must be >= 1")
        if self.global_max_instances < 1:
            raise ValueError("global_max_instances must be >= 1")
        if self.action_ttl_seconds < 0 or self.shutdown_grace_seconds < 0:
            raise ValueError("action_ttl_seconds and shutdown_grace_seconds must be >= 0")
        if self.system_metrics_interval_seconds <= 0:
            raise ValueError("system_metrics_interval_seconds must be > 0")
        if self.orchestrator not in ("simulated", "docker"):
            raise ValueError(f"orchestrator must be 'simulated' or 'docker', got {self.orchestrator!r}")
        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from the environment; unset variables keep their defaults."""
        env = os.environ if environ is None else environ
        names = {
            "host": "HOST",
            "port": "PORT",
            "log_level": "LOG_LEVEL",
            "evaluation_interval_seconds": "EVALUATION_INTERVAL",
            "max_concurrent_actions": "MAX_CONCURRENT_ACTIONS",
            "global_max_instances": "GLOBAL_MAX_INSTANCES",
            "action_ttl_seconds": "ACTION_TTL",
            "shutdown_grace_seconds": "SHUTDOWN_GRACE",
            "buffer_size": "BUFFER_SIZE",
            "flush_interval_seconds": "FLUSH_INTERVAL",
            "retention_seconds": "RETENTION",
            "max_points_per_metric": "MAX_POINTS_PER_METRIC",
            "collect_system_metrics": "COLLECT_SYSTEM_METRICS",
            "system_metrics_interval_seconds": "SYSTEM_METRICS_INTERVAL",
            "policy_file": "POLICY_FILE",
            "orchestrator": "ORCHESTRATOR",
            "simulated_delay": "SIMULATED_DELAY",
        }
        types = {f.name: f.type for f in fields(cls)}

        kwargs = {}
        for attr, suffix in names.items():
            raw = env.get(ENV_PREFIX + suffix)
            if raw is None or raw.strip() == "":
                continue
            try:
                kwargs[attr] = _convert(attr, types[attr], raw.strip())
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r} ({e})")
        return cls(**kwargs)

def _convert(attr: str, annotation, raw: str):
    if attr == "simulated_delay":
        return parse_delay(raw)
    if annotation in (bool, "bool"):
        lowered = raw.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError("expected a boolean")
    if annotation in (int, "int"):
        return int(raw)
    if annotation in (float, "float"):
        return float(raw)
    return raw

def parse_delay(raw: str) -> Tuple[float, float]:
    """Parse 'min,max' into a delay range; a single number means a fixed delay."""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    if len(parts) == 1:
        value = float(parts[0])
        return (value, value)
    if len(parts) == 2:
        return (float(parts[0]), float(parts[1]))
    raise ValueError("expected 'seconds' or 'min,max'")
