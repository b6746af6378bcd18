"""
Config
======

Agent settings, resolved in this order (later wins):

  1. Built-in defaults
  2. JSON config file (~/.ship-agent/config.json, or --config / SHIP_CONFIG)
  3. Environment variables (SHIP_*)
  4. Command-line flags

The file uses the field names below as flat keys. Retry settings may also be
given as nested objects:

  {
    "ship_id": "ship-042",
    "hq_api_url": "https://hq.example.com",
    "http_retry": {"max_retries": 5, "timeout": 45},
    "pull_retry": {"timeout": 900}
  }
"""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError
from .resilience import RetryPolicy

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".ship-agent" / "config.json"

# field name → environment variable
ENV_VARS = {
    "ship_id":           "SHIP_ID",
    "hq_api_url":        "SHIP_HQ_API_URL",
    "hq_api_token":      "SHIP_HQ_API_TOKEN",
    "container_name":    "SHIP_CONTAINER_NAME",
    "registry_username": "SHIP_REGISTRY_USERNAME",
    "registry_password": "SHIP_REGISTRY_PASSWORD",
    "docker_host":       "SHIP_DOCKER_HOST",
    "data_dir":          "SHIP_DATA_DIR",
    "app_environment":   "SHIP_APP_ENVIRONMENT",
    "poll_interval":     "SHIP_POLL_INTERVAL",
    "error_interval":    "SHIP_ERROR_INTERVAL",
    "settle_seconds":    "SHIP_SETTLE_SECONDS",
    "log_level":         "SHIP_LOG_LEVEL",
}

# (policy prefix, policy field) → environment variable
RETRY_ENV_VARS = {
    (prefix, name): f"SHIP_{prefix.upper()}_{name.upper()}"
    for prefix in ("http", "pull")
    for name in ("max_retries", "base_delay", "max_delay", "timeout")
}

_REQUIRED_STR_FIELDS = (
    "ship_id", "hq_api_url", "container_name", "data_dir", "app_environment", "log_level",
)


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(str(path), f"not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(str(path), f"expected a JSON object, got {type(data).__name__}")
    return data


# ─── Agent Config ─────────────────────────────────────────────────────────────

@dataclass
class AgentConfig:
    ship_id:           str           = field(default_factory=socket.gethostname)
    hq_api_url:        str           = "https://localhost:7001"
    hq_api_token:      Optional[str] = None
    container_name:    str           = "employeemanagement"
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None
    docker_host:       Optional[str] = None   # None → docker.from_env()
    data_dir:          str           = "/opt/ship-agent/data"
    app_environment:   str           = "Production"
    poll_interval:     float         = 300.0  # 5 minutes between cycles
    error_interval:    float         = 60.0   # shortened wait after a failed cycle
    settle_seconds:    float         = 10.0   # wait before verifying a new container
    log_level:         str           = "INFO"
    http_retry:        RetryPolicy   = field(default_factory=RetryPolicy.http)
    pull_retry:        RetryPolicy   = field(default_factory=RetryPolicy.image_pull)

    def __post_init__(self) -> None:
        for name in _REQUIRED_STR_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigError(name, f"must be a non-empty string, got {value!r}")
        self.hq_api_url = self.hq_api_url.rstrip("/")
        for name in ("poll_interval", "error_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(name, f"must be positive, got {getattr(self, name)}")
        if self.settle_seconds < 0:
            raise ConfigError("settle_seconds", f"must not be negative, got {self.settle_seconds}")

    @classmethod
    def load(
        cls,
        path:      Optional[Path] = None,
        env:       Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> AgentConfig:
        env = os.environ if env is None else env
        if path is None:
            path = Path(env["SHIP_CONFIG"]) if env.get("SHIP_CONFIG") else CONFIG_PATH

        values: dict[str, Any] = {}
        retry:  dict[str, dict[str, Any]] = {"http": {}, "pull": {}}

        # 2. file
        for key, value in load_config(path).items():
            if key in ("http_retry", "pull_retry"):
                if not isinstance(value, dict):
                    raise ConfigError(key, f"expected an object, got {value!r}")
                retry[key.split("_")[0]].update(value)
            elif key in ENV_VARS:
                values[key] = value
            else:
                log.warning(f"Ignoring unknown config key '{key}' in {path}")

        # 3. environment
        for key, var in ENV_VARS.items():
            if env.get(var):
                values[key] = env[var]
        for (prefix, name), var in RETRY_ENV_VARS.items():
            if env.get(var):
                retry[prefix][name] = env[var]

        # 4. command line
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        kwargs = {key: _coerce(key, value) for key, value in values.items()}
        kwargs["http_retry"] = _build_policy("http_retry", RetryPolicy.http(), retry["http"])
        kwargs["pull_retry"] = _build_policy("pull_retry", RetryPolicy.image_pull(), retry["pull"])
        return cls(**kwargs)

    def redacted(self) -> dict:
        """Settings safe to log: secrets masked."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in ("hq_api_token", "registry_password") and value:
                value = "***"
            out[f.name] = value
        return out


# ─── Coercion ─────────────────────────────────────────────────────────────────

_FLOAT_FIELDS = {"poll_interval", "error_interval", "settle_seconds"}


def _coerce(key: str, value: Any) -> Any:
    if key in _FLOAT_FIELDS:
        return _to_number(key, value, float)
    return None if value is None else str(value)


def _to_number(key: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(key, f"expected a number, got {value!r}") from e


def _build_policy(key: str, base: RetryPolicy, values: Mapping[str, Any]) -> RetryPolicy:
    changes: dict[str, Any] = {}
    for name, value in values.items():
        if name == "max_retries":
            changes[name] = _to_number(f"{key}.{name}", value, int)
        elif name in ("base_delay", "max_delay", "timeout"):
            changes[name] = _to_number(f"{key}.{name}", value, float)
        else:
            log.warning(f"Ignoring unknown retry setting '{key}.{name}'")
    try:
        return replace(base, **changes)
    except ConfigError as e:
        raise ConfigError(f"{key}.{e.field}", e.message) from e
