"""Client settings loaded from YAML with environment overrides.

Config format (config/scan_client.yaml):

    base_url: ${SCAN_API_URL:-http://localhost:8000/api}
    poll_interval_ms: 500
    connect_timeout: 10
    request_timeout: 30
    verify_ssl: true
    stream_enabled: true
    log_level: INFO
    mock: false

Environment variables SCAN_API_URL, SCAN_POLL_INTERVAL_MS,
SCAN_STREAM_ENABLED and LOG_LEVEL override the file.
"""
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .logging_config import get_logger
from .types import ConfigError

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "config/scan_client.yaml"

# Environment variable -> settings field
ENV_OVERRIDES = {
    "SCAN_API_URL": "base_url",
    "SCAN_POLL_INTERVAL_MS": "poll_interval_ms",
    "SCAN_STREAM_ENABLED": "stream_enabled",
    "LOG_LEVEL": "log_level",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ClientSettings:
    """Scan client settings."""

    base_url: str = "http://localhost:8000/api"
    poll_interval_ms: int = 500
    connect_timeout: float = 10.0
    request_timeout: float = 30.0
    verify_ssl: bool = True
    stream_enabled: bool = True
    log_level: str = "INFO"
    mock: bool = False

    @property
    def poll_interval(self) -> float:
        """Polling interval in seconds."""
        return self.poll_interval_ms / 1000


def expand_env(value: Any) -> Any:
    """
    Expand ${VAR} or ${VAR:-default} environment variables.

    Examples:
        ${SCAN_API_URL} -> os.getenv("SCAN_API_URL", "")
        ${SCAN_API_URL:-http://localhost:8000/api} -> os.getenv("SCAN_API_URL", "http://localhost:8000/api")
    """
    if not value or not isinstance(value, str):
        return value

    if value.startswith("${") and value.endswith("}"):
        inner = value[2:-1]
        if ":-" in inner:
            var_name, default = inner.split(":-", 1)
            return os.getenv(var_name, default)
        return os.getenv(inner, "")

    return value


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of the named field."""
    default = getattr(ClientSettings, name)
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e


def _validate(settings: ClientSettings) -> ClientSettings:
    if settings.poll_interval_ms <= 0:
        raise ConfigError(
            f"poll_interval_ms must be positive, got {settings.poll_interval_ms}"
        )
    if settings.connect_timeout <= 0 or settings.request_timeout <= 0:
        raise ConfigError("Timeouts must be positive")
    if not settings.base_url:
        raise ConfigError("base_url must not be empty")
    return settings


def load_settings(
    config_file: str | Path | None = DEFAULT_CONFIG_FILE,
    environ: dict[str, str] | None = None,
) -> ClientSettings:
    """
    Load settings from YAML, then apply environment overrides.

    Args:
        config_file: YAML file path; None or a missing file yields defaults
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(ClientSettings)}
    values: dict[str, Any] = {}

    if config_file is not None:
        path = Path(config_file)
        if path.exists():
            try:
                with open(path) as f:
                    raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {path}: {e}") from e

            if not isinstance(raw, dict):
                raise ConfigError(f"{path}: expected a mapping at top level")

            for key, value in raw.items():
                if key not in known:
                    logger.warning("unknown_setting_ignored", key=key, config_file=str(path))
                    continue
                values[key] = _coerce(key, expand_env(value))
        else:
            logger.warning("scan_client_config_missing", config_file=str(path), action="using_defaults")

    for env_name, key in ENV_OVERRIDES.items():
        if env_name in environ and environ[env_name] != "":
            values[key] = _coerce(key, environ[env_name])

    return _validate(replace(ClientSettings(), **values))
