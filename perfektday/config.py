#!/usr/bin/env python3
"""Controller options.

Options come from three layers, later ones winning:

1. Built-in defaults
2. options.json in the data directory
3. Environment variables
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, get_args, get_type_hints

logger = logging.getLogger(__name__)

OPTIONS_FILENAME = "options.json"
PARAMETERS_FILENAME = "perfektday_parameters.json"

# Environment variable for each option
ENV_VARS = {
    "data_dir": "PERFEKTDAY_DATA_DIR",
    "gateway_host": "DECONZ_HOST",
    "gateway_port": "DECONZ_PORT",
    "gateway_api_key": "DECONZ_API_KEY",
    "group_id": "DECONZ_GROUP",
    "gateway_timeout": "DECONZ_TIMEOUT",
    "update_interval": "PD_UPDATE_INTERVAL",
    "listen_host": "PERFEKTDAY_HOST",
    "listen_port": "PERFEKTDAY_PORT",
    "inactivity_timeout": "INACTIVITY_TIMEOUT",
    "pairing_button_pin": "PAIRING_PIN",
    "review_button_pin": "REVIEW_PIN",
    "led_pin": "LED_PIN",
    "pairing_window": "PAIRING_WINDOW",
    "review_interval": "REVIEW_INTERVAL",
    "review_step": "REVIEW_STEP",
    "clock_timeout": "CLOCK_TIMEOUT",
    "latitude": "LATITUDE",
    "longitude": "LONGITUDE",
    "timezone": "TZ",
    "flash_on_boot": "FLASH_ON_BOOT",
    "log_level": "LOG_LEVEL",
}


def get_data_directory() -> str:
    """Get the appropriate data directory based on environment."""
    env_dir = os.getenv("PERFEKTDAY_DATA_DIR")
    if env_dir:
        os.makedirs(env_dir, exist_ok=True)
        return env_dir
    if os.path.exists("/config"):
        data_dir = "/config/perfektday"
        os.makedirs(data_dir, exist_ok=True)
        return data_dir
    elif os.path.exists("/data"):
        return "/data"
    else:
        # Running in development - use local .data directory
        data_dir = os.path.join(os.path.dirname(__file__), ".data")
        os.makedirs(data_dir, exist_ok=True)
        return data_dir


@dataclass
class Options:
    """Runtime options for the controller process."""
    data_dir: Optional[str] = None
    gateway_host: str = "127.0.0.1"
    gateway_port: int = 80
    gateway_api_key: str = ""
    group_id: str = "0"
    gateway_timeout: float = 5.0
    update_interval: float = 2.0
    listen_host: str = "0.0.0.0"
    listen_port: int = 8765
    inactivity_timeout: float = 45.0
    pairing_button_pin: int = 17
    review_button_pin: int = 27
    led_pin: int = 22
    pairing_window: int = 60
    review_interval: float = 0.2
    review_step: int = 10
    clock_timeout: float = 2.0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    flash_on_boot: bool = True
    log_level: str = "INFO"

    @property
    def parameters_path(self) -> str:
        return os.path.join(self.data_dir or get_data_directory(), PARAMETERS_FILENAME)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def update_from(self, values: Dict[str, Any], source: str) -> None:
        """Apply raw values, coercing each to the option's declared type.

        Values that cannot be coerced are logged and the previous value kept.
        """
        hints = get_type_hints(type(self))
        types = {f.name: hints[f.name] for f in fields(self)}
        for key, raw in values.items():
            if key not in types:
                logger.debug(f"Ignoring unknown option '{key}' from {source}")
                continue
            try:
                setattr(self, key, _coerce(raw, types[key]))
            except (TypeError, ValueError):
                logger.warning(f"Invalid value {raw!r} for option '{key}' from {source}, keeping {getattr(self, key)!r}")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() not in ("false", "0", "no", "off")


CONVERTERS = {
    bool: _to_bool,
    int: int,
    float: float,
    str: str,
}


def _coerce(raw: Any, field_type: Any) -> Any:
    args = get_args(field_type)
    optional = type(None) in args
    if optional:
        field_type = next(arg for arg in args if arg is not type(None))
    if raw is None or raw == "":
        if optional:
            return None
        raise ValueError("empty value")
    try:
        convert = CONVERTERS[field_type]
    except KeyError:
        raise TypeError(f"no converter for {field_type!r}") from None
    return convert(raw)


def load_options(data_dir: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Options:
    """Load options from defaults, options.json and the environment.

    Args:
        data_dir: Optional data directory path. If None, auto-detected.
        environ: Environment mapping, defaults to os.environ

    Returns:
        The merged Options
    """
    environ = os.environ if environ is None else environ
    options = Options()

    env_values = {
        key: environ[var] for key, var in ENV_VARS.items() if var in environ
    }

    options.data_dir = data_dir or env_values.get("data_dir") or get_data_directory()

    path = os.path.join(options.data_dir, OPTIONS_FILENAME)
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                part = json.load(f)
            if isinstance(part, dict):
                options.update_from(part, path)
            else:
                logger.warning(f"Ignoring {path}: not a JSON object")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to read {path}: {e}")

    env_values.pop("data_dir", None)
    options.update_from(env_values, "environment")

    if not options.gateway_api_key:
        logger.warning("No deCONZ API key configured (DECONZ_API_KEY); gateway requests will fail")

    return options
