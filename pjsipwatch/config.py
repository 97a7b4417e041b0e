"""
Load application config (JSON) from a given path or the user config directory.
Missing keys are filled from defaults; values are clamped into MonitorConfig.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import httpx

# Default config
DEFAULT_POLL_INTERVAL = 30
DEFAULT_DEBOUNCE_THRESHOLD = 3
DEFAULT_NOTIFY_RETRY_MAX = 5
DEFAULT_SLACK_API_URL = "https://slack.com/api/chat.postMessage"
DEFAULT_MESSAGE_TEMPLATE = "PJSIP endpoint {endpoint}: {previous} -> {new} at {observed_at} (ref {ref})"
DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"
SOURCES = ("ari", "cli")


class ConfigError(Exception):
    """Config file missing, unreadable or invalid."""


def get_config_dir() -> Path:
    """User directory for config and logs."""
    return Path(os.path.expanduser("~")) / ".pjsipwatch"


def get_config_path() -> Path:
    return get_config_dir() / "config.json"


def get_default_config() -> dict[str, Any]:
    return {
        "poll_interval": DEFAULT_POLL_INTERVAL,
        "debounce_threshold": DEFAULT_DEBOUNCE_THRESHOLD,
        "notify_retry_max": DEFAULT_NOTIFY_RETRY_MAX,
        "pbx_base_url": "http://localhost:8088",
        "pbx_credential": "",
        "slack_token": "",
        "slack_channel": "#general",
        "slack_api_url": DEFAULT_SLACK_API_URL,
        "source": "ari",
        "asterisk_binary": "asterisk",
        "endpoints": [],
        "fetch_timeout": 10.0,
        "notify_timeout": 15.0,
        "notify_concurrency": 4,
        "backoff_base": 1.0,
        "backoff_max": 60.0,
        "fetch_alert_threshold": 3,
        "message_template": DEFAULT_MESSAGE_TEMPLATE,
        "timestamp_format": DEFAULT_TIMESTAMP_FORMAT,
        "startup_message": "check-pjsip-started",
        "log_path": "",
        "log_level": "INFO",
    }


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    path = Path(path) if path else get_config_path()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be an object")
    # Merge with defaults so new keys exist
    default = get_default_config()
    for k, v in default.items():
        if k not in data:
            data[k] = v
    return data


def _check_url(key: str, value: Any) -> None:
    try:
        url = httpx.URL(str(value))
    except httpx.InvalidURL as e:
        raise ConfigError(f"{key} is not a valid URL: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"{key} must be an http(s) URL, got {value!r}")


def config_to_dict(c: "MonitorConfig") -> dict[str, Any]:
    return {name: getattr(c, name) for name in MonitorConfig.__slots__}


def dict_to_config(d: dict[str, Any]) -> "MonitorConfig":
    merged = get_default_config()
    merged.update(d)
    if not str(merged.get("slack_token", "")).strip():
        raise ConfigError("slack_token is required")
    source = str(merged["source"]).strip().lower()
    if source not in SOURCES:
        raise ConfigError(f"source must be one of {', '.join(SOURCES)}, got {merged['source']!r}")
    try:
        str(merged["message_template"]).format(endpoint="", previous="", new="", observed_at="", ref="")
    except (AttributeError, KeyError, IndexError, ValueError) as e:
        raise ConfigError(f"message_template is invalid: {e!r}") from e
    for key in ("pbx_base_url", "slack_api_url"):
        _check_url(key, merged[key])
    log_level = str(merged["log_level"]).strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"log_level must be a logging level name, got {merged['log_level']!r}")
    endpoints = merged.get("endpoints") or []
    if not isinstance(endpoints, list):
        raise ConfigError("endpoints must be a list of endpoint names")
    try:
        return MonitorConfig(
            poll_interval=float(merged["poll_interval"]),
            debounce_threshold=int(merged["debounce_threshold"]),
            notify_retry_max=int(merged["notify_retry_max"]),
            pbx_base_url=str(merged["pbx_base_url"]),
            pbx_credential=str(merged["pbx_credential"]),
            slack_token=str(merged["slack_token"]),
            slack_channel=str(merged["slack_channel"]),
            slack_api_url=str(merged["slack_api_url"]),
            source=source,
            asterisk_binary=str(merged["asterisk_binary"]),
            endpoints=[str(e).strip() for e in endpoints if str(e).strip()],
            fetch_timeout=float(merged["fetch_timeout"]),
            notify_timeout=float(merged["notify_timeout"]),
            notify_concurrency=int(merged["notify_concurrency"]),
            backoff_base=float(merged["backoff_base"]),
            backoff_max=float(merged["backoff_max"]),
            fetch_alert_threshold=int(merged["fetch_alert_threshold"]),
            message_template=str(merged["message_template"]),
            timestamp_format=str(merged["timestamp_format"]),
            startup_message=str(merged["startup_message"] or ""),
            log_path=str(merged["log_path"] or ""),
            log_level=log_level,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value: {e}") from e


class MonitorConfig:
    __slots__ = (
        "poll_interval",
        "debounce_threshold",
        "notify_retry_max",
        "pbx_base_url",
        "pbx_credential",
        "slack_token",
        "slack_channel",
        "slack_api_url",
        "source",
        "asterisk_binary",
        "endpoints",
        "fetch_timeout",
        "notify_timeout",
        "notify_concurrency",
        "backoff_base",
        "backoff_max",
        "fetch_alert_threshold",
        "message_template",
        "timestamp_format",
        "startup_message",
        "log_path",
        "log_level",
    )

    def __init__(
        self,
        slack_token: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        debounce_threshold: int = DEFAULT_DEBOUNCE_THRESHOLD,
        notify_retry_max: int = DEFAULT_NOTIFY_RETRY_MAX,
        pbx_base_url: str = "http://localhost:8088",
        pbx_credential: str = "",
        slack_channel: str = "#general",
        slack_api_url: str = DEFAULT_SLACK_API_URL,
        source: str = "ari",
        asterisk_binary: str = "asterisk",
        endpoints: Optional[list[str]] = None,
        fetch_timeout: float = 10.0,
        notify_timeout: float = 15.0,
        notify_concurrency: int = 4,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        fetch_alert_threshold: int = 3,
        message_template: str = DEFAULT_MESSAGE_TEMPLATE,
        timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
        startup_message: str = "",
        log_path: str = "",
        log_level: str = "INFO",
    ):
        self.slack_token = slack_token.strip()
        self.poll_interval = max(1.0, float(poll_interval))
        self.debounce_threshold = max(1, int(debounce_threshold))
        self.notify_retry_max = max(1, int(notify_retry_max))
        self.pbx_base_url = pbx_base_url.strip().rstrip("/")
        self.pbx_credential = pbx_credential.strip()
        self.slack_channel = slack_channel.strip() or "#general"
        self.slack_api_url = slack_api_url.strip() or DEFAULT_SLACK_API_URL
        self.source = source
        self.asterisk_binary = asterisk_binary.strip() or "asterisk"
        self.endpoints = list(endpoints or [])
        self.fetch_timeout = max(0.1, float(fetch_timeout))
        self.notify_timeout = max(0.1, float(notify_timeout))
        self.notify_concurrency = max(1, int(notify_concurrency))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_max = max(self.backoff_base, float(backoff_max))
        self.fetch_alert_threshold = max(0, int(fetch_alert_threshold))
        self.message_template = message_template or DEFAULT_MESSAGE_TEMPLATE
        self.timestamp_format = timestamp_format or DEFAULT_TIMESTAMP_FORMAT
        self.startup_message = startup_message.strip()
        self.log_path = log_path.strip()
        self.log_level = log_level.strip().upper() or "INFO"

    def secrets(self) -> list[str]:
        """Values that must never appear in logs."""
        values = [self.slack_token, self.pbx_credential]
        if ":" in self.pbx_credential:
            values.append(self.pbx_credential.partition(":")[2])
        return [v for v in values if v]
