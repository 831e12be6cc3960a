"""Load optional orchestrator configuration from a YAML (or JSON) file.

Example ``taskflow.yaml``::

    engine:
      max_concurrency: 3
      max_retries: 2
      success_rate: 0.7
      stall_factor: 2.0
    alerts:
      dedup_window_ms: 500
      system_alert_cooldown_ms: 2000
      high_priority_threshold: 5
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError
from .task_engine.model import MAX_RETRIES

DEFAULT_MAX_CONCURRENCY = 3
DEFAULT_MAX_RETRIES = MAX_RETRIES
DEFAULT_SUCCESS_RATE = 0.7
DEFAULT_STALL_FACTOR = 2.0
DEFAULT_DEDUP_WINDOW_MS = 500.0
DEFAULT_SYSTEM_ALERT_COOLDOWN_MS = 2000.0
DEFAULT_HIGH_PRIORITY_THRESHOLD = 5

_SECTIONS = {
    "engine": ("max_concurrency", "max_retries", "success_rate", "stall_factor"),
    "alerts": ("dedup_window_ms", "system_alert_cooldown_ms", "high_priority_threshold"),
}


@dataclass(frozen=True)
class OrchestratorConfig:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    success_rate: float = DEFAULT_SUCCESS_RATE
    stall_factor: float = DEFAULT_STALL_FACTOR
    dedup_window_ms: float = DEFAULT_DEDUP_WINDOW_MS
    system_alert_cooldown_ms: float = DEFAULT_SYSTEM_ALERT_COOLDOWN_MS
    high_priority_threshold: int = DEFAULT_HIGH_PRIORITY_THRESHOLD

    def validate(self) -> "OrchestratorConfig":
        """Raise :class:`ConfigError` if any value is out of range."""
        errors: list[str] = []
        if self.max_concurrency < 1:
            errors.append("engine.max_concurrency must be >= 1")
        if not 0 <= self.max_retries <= MAX_RETRIES:
            errors.append(f"engine.max_retries must be between 0 and {MAX_RETRIES}")
        if not 0.0 <= self.success_rate <= 1.0:
            errors.append("engine.success_rate must be between 0 and 1")
        if self.stall_factor <= 0:
            errors.append("engine.stall_factor must be > 0")
        if self.dedup_window_ms < 0:
            errors.append("alerts.dedup_window_ms must be >= 0")
        if self.system_alert_cooldown_ms < 0:
            errors.append("alerts.system_alert_cooldown_ms must be >= 0")
        if self.high_priority_threshold < 1:
            errors.append("alerts.high_priority_threshold must be >= 1")
        if errors:
            raise ConfigError("; ".join(errors))
        return self

    def to_dict(self) -> dict[str, Any]:
        flat = asdict(self)
        return {section: {key: flat[key] for key in keys} for section, keys in _SECTIONS.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        """Build a config from the sectioned mapping, ignoring unknown keys."""
        values: dict[str, Any] = {}
        for section, keys in _SECTIONS.items():
            raw = data.get(section)
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise ConfigError(f"'{section}' must be a mapping")
            for key in keys:
                if key not in raw:
                    continue
                default = getattr(cls, key)
                value = raw[key]
                # bool is an int subclass; YAML "true" must not pass as 1.
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigError(f"{section}.{key}: expected a number, got {value!r}")
                if isinstance(default, int) and not isinstance(value, int):
                    raise ConfigError(f"{section}.{key}: expected an integer, got {value!r}")
                values[key] = type(default)(value)
        return cls(**values).validate()


def _load_mapping(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("top-level config must be a mapping")
    return data


def load_orchestrator_config(path: Optional[Path]) -> tuple[OrchestratorConfig, str | None]:
    """Load the optional orchestrator config file.

    Args:
        path: Config file location, or ``None`` for defaults.

    Returns:
        A tuple of ``(config, error_message)``. A missing file returns the
        defaults with no error; an unreadable or invalid file returns the
        defaults together with the error text.
    """
    if path is None or not path.exists():
        return OrchestratorConfig(), None
    try:
        return OrchestratorConfig.from_dict(_load_mapping(path)), None
    except (OSError, ValueError, yaml.YAMLError) as exc:
        return OrchestratorConfig(), f"Invalid config {path}: {exc}"
