# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the mail outbox.

Settings come from an INI file (``OUTBOX_CONFIG``, default ``config.ini``)
with environment variables as fallbacks, and are validated into the pydantic
models of :mod:`mail_outbox.models`.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/mail_outbox.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret
        shutdown_timeout = 30

        [smtp]
        host = smtp.example.com
        port = 587
        security = starttls
        sender = noreply@example.com
        username = mailer
        password = secret
        timeout = 30

        [delivery]
        max_attempts = 5
        delay_on_error = 10
        log_delivery_activity = false

    Environment variables (all prefixed with OUTBOX_):
      OUTBOX_DB_PATH, OUTBOX_HOST, OUTBOX_PORT, OUTBOX_API_TOKEN,
      OUTBOX_SHUTDOWN_TIMEOUT, OUTBOX_SMTP_HOST, OUTBOX_SMTP_PORT,
      OUTBOX_SMTP_SECURITY, OUTBOX_SENDER, OUTBOX_SMTP_USER,
      OUTBOX_SMTP_PASSWORD, OUTBOX_SMTP_TIMEOUT, OUTBOX_MAX_ATTEMPTS,
      OUTBOX_DELAY_ON_ERROR, OUTBOX_LOG_DELIVERY_ACTIVITY

    SMTP and delivery settings are live: the delivery loop asks a
    :class:`SettingsMonitor` for them before every attempt, and the monitor
    re-reads the file whenever its modification time changes::

        monitor = SettingsMonitor("/etc/mail-outbox/config.ini")
        settings = monitor.current
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any

from .logger import get_logger
from .models import ServiceSettings, SmtpSettings

logger = get_logger("ConfigLoader")

DEFAULT_CONFIG_PATH = "config.ini"

# field -> (section, option, environment variable)
SERVICE_FIELDS: dict[str, tuple[str, str, str]] = {
    "db_path": ("storage", "db_path", "OUTBOX_DB_PATH"),
    "http_host": ("server", "host", "OUTBOX_HOST"),
    "http_port": ("server", "port", "OUTBOX_PORT"),
    "api_token": ("server", "api_token", "OUTBOX_API_TOKEN"),
    "shutdown_timeout": ("server", "shutdown_timeout", "OUTBOX_SHUTDOWN_TIMEOUT"),
}

SMTP_FIELDS: dict[str, tuple[str, str, str]] = {
    "host": ("smtp", "host", "OUTBOX_SMTP_HOST"),
    "port": ("smtp", "port", "OUTBOX_SMTP_PORT"),
    "security": ("smtp", "security", "OUTBOX_SMTP_SECURITY"),
    "sender": ("smtp", "sender", "OUTBOX_SENDER"),
    "username": ("smtp", "username", "OUTBOX_SMTP_USER"),
    "password": ("smtp", "password", "OUTBOX_SMTP_PASSWORD"),
    "timeout": ("smtp", "timeout", "OUTBOX_SMTP_TIMEOUT"),
    "max_attempts": ("delivery", "max_attempts", "OUTBOX_MAX_ATTEMPTS"),
    "delay_on_error": ("delivery", "delay_on_error", "OUTBOX_DELAY_ON_ERROR"),
    "log_delivery_activity": ("delivery", "log_delivery_activity", "OUTBOX_LOG_DELIVERY_ACTIVITY"),
}


def resolve_config_path(config_path: str | None = None) -> Path:
    """Return the configuration file path, honouring ``OUTBOX_CONFIG``."""
    return Path(config_path or os.getenv("OUTBOX_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()


def read_config(config_path: str | Path) -> configparser.ConfigParser:
    """Parse the INI file; a missing file yields an empty parser."""
    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _collect(parser: configparser.ConfigParser, fields: dict[str, tuple[str, str, str]]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for field, (section, option, env_name) in fields.items():
        value = parser.get(section, option, fallback=os.getenv(env_name))
        if value is None:
            continue
        value = value.strip()
        if value == "":
            continue
        values[field] = value
    return values


def load_service_settings(config_path: str | Path | None = None) -> ServiceSettings:
    """Load process-level settings (storage path, HTTP server).

    Raises:
        pydantic.ValidationError: If a value cannot be coerced.
    """
    path = resolve_config_path(str(config_path) if config_path else None)
    settings = ServiceSettings(**_collect(read_config(path), SERVICE_FIELDS))
    settings.db_path = os.path.expanduser(settings.db_path)
    return settings


def load_smtp_settings(config_path: str | Path | None = None) -> SmtpSettings:
    """Load SMTP transport and retry settings.

    Raises:
        pydantic.ValidationError: If a value cannot be coerced.
    """
    path = resolve_config_path(str(config_path) if config_path else None)
    return SmtpSettings(**_collect(read_config(path), SMTP_FIELDS))


class SettingsMonitor:
    """Live view of :class:`SmtpSettings` backed by the configuration file.

    ``current`` returns cached settings and reloads them when the file's
    modification time changes. A file that cannot be read, decoded, parsed or
    validated on reload is logged and the previous settings stay in effect.

    Attributes:
        config_path: The watched configuration file, or None for fixed settings.
    """

    def __init__(self, config_path: str | Path | None = None, *, settings: SmtpSettings | None = None):
        self.config_path: Path | None = None
        if settings is None:
            self.config_path = resolve_config_path(str(config_path) if config_path else None)
        self._stamp: float | None = None
        self._settings: SmtpSettings | None = settings

    @classmethod
    def fixed(cls, settings: SmtpSettings) -> "SettingsMonitor":
        """Build a monitor that always returns ``settings``."""
        return cls(settings=settings)

    def _file_stamp(self) -> float | None:
        try:
            return self.config_path.stat().st_mtime
        except OSError:
            return None

    @property
    def current(self) -> SmtpSettings:
        if self.config_path is None:
            return self._settings
        stamp = self._file_stamp()
        if self._settings is None or stamp != self._stamp:
            self.reload(stamp)
        return self._settings

    def reload(self, stamp: float | None = None) -> None:
        """Re-read the configuration file now."""
        try:
            settings = load_smtp_settings(self.config_path)
        # pydantic ValidationError and UnicodeDecodeError are both ValueErrors
        except (configparser.Error, OSError, ValueError) as exc:
            if self._settings is None:
                raise
            logger.error("Invalid settings in %s, keeping previous values: %s", self.config_path, exc)
            self._stamp = stamp
            return
        if self._settings is not None:
            logger.info("SMTP settings reloaded from %s", self.config_path)
        self._settings = settings
        self._stamp = stamp if stamp is not None else self._file_stamp()
