import base64
import binascii
import json
import os
from copy import deepcopy
from typing import Any, Dict

from errors import ConfigurationFailure
from ts3_query import Endpoint

REQUIRED_KEYS = ("ts3_address", "ts3_api_key", "ha_base_url", "ha_token", "ha_entity_id")
SECRET_KEYS = ("ts3_api_key", "ha_token")

DEFAULT_CONFIG: Dict[str, Any] = {
    "ts3_address": "localhost:25639",
    "ts3_api_key": "your-api-key",
    "ha_base_url": "http://homeassistant.local:8123",
    "ha_token": "your-ha-token",
    "ha_entity_id": "input_boolean.your_entity_id",
    "operation_timeout_seconds": 10,
    "poll_interval_seconds": 1,
    "log_level": "INFO",
    "log_file": "ts3_mute_status.log"
}

ENV_OVERRIDES = {
    "TS3MUTE_TS3_ADDRESS": "ts3_address",
    "TS3MUTE_TS3_API_KEY": "ts3_api_key",
    "TS3MUTE_HA_BASE_URL": "ha_base_url",
    "TS3MUTE_HA_TOKEN": "ha_token",
    "TS3MUTE_HA_ENTITY_ID": "ha_entity_id",
    "TS3MUTE_LOG_LEVEL": "log_level",
}


def merge_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Fill optional keys from DEFAULT_CONFIG. Required keys are never defaulted."""
    merged = {key: value for key, value in DEFAULT_CONFIG.items() if key not in REQUIRED_KEYS}
    merged.update(cfg)
    return merged


def decode_secret(value: str, key: str, logger) -> str:
    """Transparently decode ``b64:<...>`` values."""
    if not value.startswith("b64:"):
        return value
    try:
        return base64.b64decode(value[4:], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning(f"Unable to decode b64 {key} – falling back to raw string")
        return value


def persist_config(path: str, cfg: Dict[str, Any], logger) -> None:
    """Persist configuration to disk."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
        logger.info(f"[CONFIG] Saved config to {path}")
    except OSError as exc:
        logger.error(f"Failed to save config to {path}: {exc}")


def apply_env_overrides(cfg: Dict[str, Any], logger) -> Dict[str, Any]:
    for env_key, cfg_key in ENV_OVERRIDES.items():
        raw = os.environ.get(env_key)
        if raw is None:
            continue
        cfg[cfg_key] = raw
        logger.info(f"[CONFIG] {cfg_key} overridden by {env_key}")
    return cfg


def load_config(path: str, logger) -> Dict[str, Any]:
    """
    Load configuration from disk.
    A missing file is replaced by the default template and reported as fatal,
    so the user can fill it in and restart.
    """
    if not os.path.exists(path):
        logger.warning(f"Configuration file not found at {path}. Creating default configuration.")
        persist_config(path, deepcopy(DEFAULT_CONFIG), logger)
        raise ConfigurationFailure(
            f"Default configuration created at {path}. Please edit the configuration file and restart the application."
        )
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, ValueError) as exc:
        raise ConfigurationFailure(f"Failed to read or parse config {path}: {type(exc).__name__}: {exc}") from exc
    if not isinstance(cfg, dict):
        raise ConfigurationFailure(f"Root of config {path} must be a JSON object")
    return apply_env_overrides(merge_defaults(cfg), logger)


def _positive_float(cfg: Dict[str, Any], key: str, logger) -> float:
    raw = cfg.get(key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = 0.0
    if value <= 0:
        logger.warning(f"[CONFIG] Invalid {key}={raw!r}; using {DEFAULT_CONFIG[key]}")
        value = float(DEFAULT_CONFIG[key])
    return value


def validate_config(cfg: Dict[str, Any], logger) -> Dict[str, Any]:
    """
    Check required settings and normalise the rest.
    Raises ConfigurationFailure when a required setting is missing or unusable.
    """
    cfg = merge_defaults(cfg)
    for key in REQUIRED_KEYS:
        value = cfg.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationFailure(f"{key} is missing in configuration.")
        cfg[key] = value.strip()
    for key in SECRET_KEYS:
        cfg[key] = decode_secret(cfg[key], key, logger)
    try:
        cfg["endpoint"] = Endpoint.parse(cfg["ts3_address"])
    except ValueError as exc:
        raise ConfigurationFailure(f"ts3_address is invalid: {exc}") from exc
    cfg["ha_base_url"] = cfg["ha_base_url"].rstrip("/")
    cfg["operation_timeout_seconds"] = _positive_float(cfg, "operation_timeout_seconds", logger)
    cfg["poll_interval_seconds"] = _positive_float(cfg, "poll_interval_seconds", logger)
    cfg["log_level"] = str(cfg.get("log_level") or "INFO").upper()
    return cfg
