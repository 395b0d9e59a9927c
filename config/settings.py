"""
Configuration loader for the scheduled-message service.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./caseline.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"
    directory_backend: str = "sql"                     # where clients/templates are read from
    pool_size: int = 5
    pool_recycle_seconds: int = 1800


@dataclass
class SchedulerConfig:
    enabled: bool = True
    poll_interval_seconds: float = 15.0
    batch_limit: int = 10
    max_attempts: int = 5
    retry_cooldown_seconds: float = 300.0


@dataclass
class SmsConfig:
    provider: str = "twilio"
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    default_country_code: str = "1"
    max_segments: int = 3
    status_callback_url: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


@dataclass
class NotificationConfig:
    backend: str = "websocket"          # "websocket" | "redis"
    redis_url: str = "redis://localhost:6379"
    channel: str = "caseline:events"


@dataclass
class Settings:
    app_name: str = "Caseline Scheduler"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CASELINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                directory_backend=db.get("directory_backend", settings.database.directory_backend),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                pool_recycle_seconds=int(db.get("pool_recycle_seconds", settings.database.pool_recycle_seconds)),
            )

        if "scheduler" in raw:
            sc = raw["scheduler"]
            settings.scheduler = SchedulerConfig(
                enabled=sc.get("enabled", True),
                poll_interval_seconds=float(sc.get("poll_interval_seconds", 15)),
                batch_limit=int(sc.get("batch_limit", 10)),
                max_attempts=int(sc.get("max_attempts", 5)),
                retry_cooldown_seconds=float(sc.get("retry_cooldown_seconds", 300)),
            )

        if "sms" in raw:
            sms = raw["sms"]
            settings.sms = SmsConfig(
                provider=sms.get("provider", "twilio"),
                account_sid=sms.get("account_sid", ""),
                auth_token=sms.get("auth_token", ""),
                from_number=sms.get("from_number", ""),
                default_country_code=str(sms.get("default_country_code", "1")),
                max_segments=int(sms.get("max_segments", 3)),
                status_callback_url=sms.get("status_callback_url", ""),
            )

        if "notifications" in raw:
            n = raw["notifications"]
            settings.notifications = NotificationConfig(
                backend=n.get("backend", "websocket"),
                redis_url=n.get("redis_url", "redis://localhost:6379"),
                channel=n.get("channel", "caseline:events"),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
