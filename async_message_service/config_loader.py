"""Settings loader: INI file with ``AMS_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError


def load_settings(config_path: str | None = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with AMS_):
      AMS_CONFIG - Path to config.ini file (default: config.ini)
      AMS_LOG_LEVEL - Logging level (default: INFO)
      AMS_DB_PATH - Database path (default: /data/message_service.db)
      AMS_HOST / AMS_PORT - Server bind address (default: 0.0.0.0:8000)
      AMS_API_TOKEN - API authentication token
      AMS_GATEWAY_URL - Session gateway base URL
      AMS_SESSION_NAME - Session name on the gateway (default: default)
      AMS_GATEWAY_API_KEY - API key sent to the gateway
      AMS_CREDENTIALS_PATH - Session credentials file (default: /data/session.json)
      AMS_COUNTRY_CODE - Default country code for local numbers (default: 62)
      AMS_AUTO_CONNECT - Connect the channel at startup (default: True)
      AMS_MAX_CONCURRENT, AMS_PROCESS_INTERVAL_MS, AMS_STALLED_TIMEOUT_MS - Queue processor tunables
      AMS_MAX_ATTEMPTS, AMS_MAX_RETRY_AGE_MS - Retry budget
      AMS_REPORT_URL, AMS_REPORT_TOKEN, AMS_REPORT_USER, AMS_REPORT_PASSWORD - Delivery report webhook
      AMS_REPORT_INTERVAL, AMS_REPORT_BATCH_SIZE - Delivery report retry interval (default: 5s) and batch size (default: 50)
      AMS_LOG_DELIVERY_ACTIVITY - Log delivery activity (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [channel] gateway_url, session_name, api_key, credentials_path, country_code,
                auto_connect, keepalive_interval, init_timeout
      [queue] max_concurrent, process_interval_ms, stalled_timeout_ms, stall_check_interval,
              max_attempts, base_delay_ms, max_delay_ms, max_retry_age_ms,
              retention_hours, cleanup_interval
      [recovery] auth_failure_delay, disconnect_delay, retry_delay
      [reporting] url, token, user, password, interval, batch_size
      [logging] level, delivery_activity
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("AMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be an integer, got {value!r}") from exc

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option} must be a number, got {value!r}") from exc

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", env.get("AMS_DB_PATH", "/data/message_service.db")),
        "http_host": get("server", "host", env.get("AMS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", env.get("AMS_PORT"), default=8000),
        "api_token": get("server", "api_token", env.get("AMS_API_TOKEN")),
        "gateway_url": get("channel", "gateway_url", env.get("AMS_GATEWAY_URL", "http://localhost:3000")),
        "session_name": get("channel", "session_name", env.get("AMS_SESSION_NAME", "default")),
        "gateway_api_key": get("channel", "api_key", env.get("AMS_GATEWAY_API_KEY")),
        "credentials_path": get("channel", "credentials_path", env.get("AMS_CREDENTIALS_PATH", "/data/session.json")),
        "country_code": get("channel", "country_code", env.get("AMS_COUNTRY_CODE", "62")),
        "auto_connect": get_bool("channel", "auto_connect", env.get("AMS_AUTO_CONNECT"), default=True),
        "keepalive_interval": get_float("channel", "keepalive_interval", env.get("AMS_KEEPALIVE_INTERVAL"), default=120.0),
        "init_timeout": get_float("channel", "init_timeout", env.get("AMS_INIT_TIMEOUT"), default=60.0),
        "max_concurrent": get_int("queue", "max_concurrent", env.get("AMS_MAX_CONCURRENT"), default=3),
        "process_interval_ms": get_int("queue", "process_interval_ms", env.get("AMS_PROCESS_INTERVAL_MS"), default=5000),
        "stalled_timeout_ms": get_int("queue", "stalled_timeout_ms", env.get("AMS_STALLED_TIMEOUT_MS"), default=300000),
        "stall_check_interval": get_float("queue", "stall_check_interval", env.get("AMS_STALL_CHECK_INTERVAL"), default=60.0),
        "max_attempts": get_int("queue", "max_attempts", env.get("AMS_MAX_ATTEMPTS"), default=5),
        "base_delay_ms": get_int("queue", "base_delay_ms", env.get("AMS_BASE_DELAY_MS")),
        "max_delay_ms": get_int("queue", "max_delay_ms", env.get("AMS_MAX_DELAY_MS")),
        "max_retry_age_ms": get_int("queue", "max_retry_age_ms", env.get("AMS_MAX_RETRY_AGE_MS")),
        "retention_hours": get_float("queue", "retention_hours", env.get("AMS_RETENTION_HOURS"), default=24.0),
        "cleanup_interval": get_float("queue", "cleanup_interval", env.get("AMS_CLEANUP_INTERVAL"), default=3600.0),
        "auth_failure_delay": get_float("recovery", "auth_failure_delay", env.get("AMS_AUTH_FAILURE_DELAY"), default=10.0),
        "disconnect_delay": get_float("recovery", "disconnect_delay", env.get("AMS_DISCONNECT_DELAY"), default=3.0),
        "retry_delay": get_float("recovery", "retry_delay", env.get("AMS_RECOVERY_RETRY_DELAY"), default=30.0),
        "report_url": get("reporting", "url", env.get("AMS_REPORT_URL")),
        "report_token": get("reporting", "token", env.get("AMS_REPORT_TOKEN")),
        "report_user": get("reporting", "user", env.get("AMS_REPORT_USER")),
        "report_password": get("reporting", "password", env.get("AMS_REPORT_PASSWORD")),
        "report_interval": get_float("reporting", "interval", env.get("AMS_REPORT_INTERVAL"), default=5.0),
        "report_batch_size": get_int("reporting", "batch_size", env.get("AMS_REPORT_BATCH_SIZE"), default=50),
        "log_level": (get("logging", "level", env.get("AMS_LOG_LEVEL", "INFO")) or "INFO").upper(),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            env.get("AMS_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "credentials_path"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    for key in ("api_token", "gateway_api_key", "report_url", "report_token"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings


def core_kwargs(settings: Mapping[str, Any]) -> Dict[str, Any]:
    """Select the settings understood by :class:`~.core.AsyncMessageCore`."""
    keys = (
        "db_path",
        "gateway_url",
        "session_name",
        "gateway_api_key",
        "credentials_path",
        "country_code",
        "auto_connect",
        "keepalive_interval",
        "init_timeout",
        "max_concurrent",
        "process_interval_ms",
        "stalled_timeout_ms",
        "stall_check_interval",
        "max_attempts",
        "base_delay_ms",
        "max_delay_ms",
        "max_retry_age_ms",
        "retention_hours",
        "cleanup_interval",
        "auth_failure_delay",
        "disconnect_delay",
        "retry_delay",
        "report_url",
        "report_token",
        "report_user",
        "report_password",
        "report_interval",
        "report_batch_size",
        "log_delivery_activity",
    )
    return {key: settings[key] for key in keys if key in settings}
