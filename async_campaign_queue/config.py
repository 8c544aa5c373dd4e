# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings loaded from an INI file with environment fallbacks.

Environment variables (all prefixed with ACQ_):
  ACQ_CONFIG - Path to config.ini file (default: config.ini)
  ACQ_DB_PATH - Database path (default: campaign_queue.db)
  ACQ_POLL_INTERVAL - Dispatcher cycle period in seconds
  ACQ_WORKER_POOL_SIZE - Number of concurrent delivery slots
  ACQ_RECLAIM_INTERVAL - Seconds between stuck-claim sweeps
  ACQ_LIVENESS_TIMEOUT - Seconds after which a claim is considered stuck
  ACQ_TEST_MODE - Dispatch only on explicit wake-up (default: False)
  ACQ_MAX_ATTEMPTS - Delivery attempts before dead-lettering
  ACQ_BASE_DELAY - First retry delay in seconds
  ACQ_MAX_DELAY - Upper bound for retry delays in seconds
  ACQ_JITTER - Relative random spread applied to retry delays
  ACQ_MAX_RECIPIENTS - Largest campaign accepted by a single enqueue
  ACQ_SMTP_HOST, ACQ_SMTP_PORT, ACQ_SMTP_USER, ACQ_SMTP_PASSWORD,
  ACQ_SMTP_USE_TLS, ACQ_SMTP_TIMEOUT, ACQ_SMTP_SENDER - SMTP relay
  ACQ_WEBHOOK_URL, ACQ_WEBHOOK_TOKEN, ACQ_WEBHOOK_USER,
  ACQ_WEBHOOK_PASSWORD - Notification webhook
  ACQ_LOG_LEVEL - Logging level (default: INFO)
  ACQ_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

Config file sections/keys:
  [storage] db_path
  [dispatcher] poll_interval_seconds, worker_pool_size, reclaim_interval_seconds,
               liveness_timeout_seconds, test_mode
  [retry] max_attempts, base_delay_seconds, max_delay_seconds, jitter
  [enqueue] max_recipients
  [smtp] host, port, user, password, use_tls, timeout_seconds, sender
  [notifications] webhook_url, webhook_token, webhook_user, webhook_password
  [logging] level, delivery_activity
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Annotated, Optional

from pydantic import BaseModel, Field, model_validator


class EngineSettings(BaseModel):
    """Validated runtime configuration of the engine."""

    db_path: str = "campaign_queue.db"

    poll_interval: Annotated[float, Field(gt=0)] = 1.0
    worker_pool_size: Annotated[int, Field(ge=1)] = 10
    reclaim_interval: Annotated[float, Field(ge=0)] = 30.0
    liveness_timeout: Annotated[float, Field(gt=0)] = 300.0
    test_mode: bool = False

    max_attempts: Annotated[int, Field(ge=1)] = 5
    base_delay: Annotated[float, Field(gt=0)] = 60.0
    max_delay: Annotated[float, Field(gt=0)] = 3600.0
    jitter: Annotated[float, Field(ge=0, lt=1)] = 0.1

    max_recipients: Annotated[int, Field(ge=1)] = 100_000

    smtp_host: Optional[str] = None
    smtp_port: Annotated[int, Field(gt=0, lt=65536)] = 25
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: Optional[bool] = None
    smtp_timeout: Annotated[float, Field(gt=0)] = 30.0
    smtp_sender: Optional[str] = None

    webhook_url: Optional[str] = None
    webhook_token: Optional[str] = None
    webhook_user: Optional[str] = None
    webhook_password: Optional[str] = None

    log_level: str = "INFO"
    log_delivery_activity: bool = False

    @model_validator(mode="after")
    def _delays_ordered(self) -> "EngineSettings":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


def load_settings(config_path: str | os.PathLike | None = None) -> EngineSettings:
    """Load configuration from an INI file with environment variables as fallbacks.

    File values win over environment values; missing keys fall back to the
    ``EngineSettings`` defaults.
    """
    path = Path(config_path or os.getenv("ACQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env: str) -> Optional[str]:
        if parser.has_option(section, option):
            value = parser.get(section, option)
        else:
            value = os.getenv(env)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def get_bool(section: str, option: str, env: str) -> Optional[bool]:
        value = get(section, option, env)
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Invalid boolean for [{section}] {option}: {value!r}")

    raw = {
        "db_path": get("storage", "db_path", "ACQ_DB_PATH"),
        "poll_interval": get("dispatcher", "poll_interval_seconds", "ACQ_POLL_INTERVAL"),
        "worker_pool_size": get("dispatcher", "worker_pool_size", "ACQ_WORKER_POOL_SIZE"),
        "reclaim_interval": get("dispatcher", "reclaim_interval_seconds", "ACQ_RECLAIM_INTERVAL"),
        "liveness_timeout": get("dispatcher", "liveness_timeout_seconds", "ACQ_LIVENESS_TIMEOUT"),
        "test_mode": get_bool("dispatcher", "test_mode", "ACQ_TEST_MODE"),
        "max_attempts": get("retry", "max_attempts", "ACQ_MAX_ATTEMPTS"),
        "base_delay": get("retry", "base_delay_seconds", "ACQ_BASE_DELAY"),
        "max_delay": get("retry", "max_delay_seconds", "ACQ_MAX_DELAY"),
        "jitter": get("retry", "jitter", "ACQ_JITTER"),
        "max_recipients": get("enqueue", "max_recipients", "ACQ_MAX_RECIPIENTS"),
        "smtp_host": get("smtp", "host", "ACQ_SMTP_HOST"),
        "smtp_port": get("smtp", "port", "ACQ_SMTP_PORT"),
        "smtp_user": get("smtp", "user", "ACQ_SMTP_USER"),
        "smtp_password": get("smtp", "password", "ACQ_SMTP_PASSWORD"),
        "smtp_use_tls": get_bool("smtp", "use_tls", "ACQ_SMTP_USE_TLS"),
        "smtp_timeout": get("smtp", "timeout_seconds", "ACQ_SMTP_TIMEOUT"),
        "smtp_sender": get("smtp", "sender", "ACQ_SMTP_SENDER"),
        "webhook_url": get("notifications", "webhook_url", "ACQ_WEBHOOK_URL"),
        "webhook_token": get("notifications", "webhook_token", "ACQ_WEBHOOK_TOKEN"),
        "webhook_user": get("notifications", "webhook_user", "ACQ_WEBHOOK_USER"),
        "webhook_password": get("notifications", "webhook_password", "ACQ_WEBHOOK_PASSWORD"),
        "log_level": get("logging", "level", "ACQ_LOG_LEVEL"),
        "log_delivery_activity": get_bool("logging", "delivery_activity", "ACQ_LOG_DELIVERY_ACTIVITY"),
    }
    settings = EngineSettings(**{key: value for key, value in raw.items() if value is not None})
    settings.db_path = os.path.expanduser(settings.db_path)
    return settings
