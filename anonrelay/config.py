"""Configuration: secrets from the environment (.env), policy from data/config.yaml."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from filelock import FileLock

from anonrelay.errors import ConfigError

DEFAULT_CONFIG = {
    "admins": [],  # Telegram user IDs allowed to use /stats
    "exchange_retention_hours": 168,  # how long a relayed message can be answered
    "conversation_timeout_minutes": 30,  # inactivity before a chat falls back to idle
    "transient_retries": 3,
    "retry_backoff_seconds": 0.5,
    "lock_timeout_seconds": 5,
    "send_retries": 3,
}


@dataclass(frozen=True)
class Settings:
    bot_token: str
    data_dir: Path
    log_level: str = "INFO"
    admins: List[int] = field(default_factory=list)
    exchange_retention_hours: float = 168
    conversation_timeout_minutes: float = 30
    transient_retries: int = 3
    retry_backoff_seconds: float = 0.5
    lock_timeout_seconds: float = 5
    send_retries: int = 3

    @property
    def exchange_retention(self) -> float:
        return self.exchange_retention_hours * 3600

    @property
    def conversation_timeout(self) -> float:
        return self.conversation_timeout_minutes * 60

    @property
    def store_path(self) -> Path:
        return self.data_dir / "relay.json"

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admins


def load_yaml(path: Path, default: dict) -> dict:
    with FileLock(str(path) + ".lock"):
        if not path.exists():
            path.write_text(yaml.safe_dump(default, allow_unicode=True), encoding="utf-8")
            return default.copy()
        return yaml.safe_load(path.read_text(encoding="utf-8")) or default.copy()


def _positive(cfg: dict, key: str, cast):
    try:
        value = cast(cfg.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {cfg.get(key)!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {value}")
    return value


def load_settings(data_dir: Optional[Path] = None, require_token: bool = True) -> Settings:
    load_dotenv(find_dotenv(usecwd=True))

    token = os.environ.get("BOT_TOKEN", "")
    if require_token and not token:
        raise ConfigError("BOT_TOKEN env var is required")

    data_dir = Path(data_dir or os.environ.get("DATA_DIR", "data"))
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = load_yaml(data_dir / "config.yaml", DEFAULT_CONFIG)
    if not isinstance(cfg, dict):
        raise ConfigError("config.yaml must contain a mapping")
    try:
        admins = [int(a) for a in cfg.get("admins") or []]
    except (TypeError, ValueError):
        raise ConfigError(f"admins must be a list of user ids, got {cfg.get('admins')!r}")

    return Settings(
        bot_token=token,
        data_dir=data_dir,
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        admins=admins,
        exchange_retention_hours=_positive(cfg, "exchange_retention_hours", float),
        conversation_timeout_minutes=_positive(cfg, "conversation_timeout_minutes", float),
        transient_retries=_positive(cfg, "transient_retries", int),
        retry_backoff_seconds=_positive(cfg, "retry_backoff_seconds", float),
        lock_timeout_seconds=_positive(cfg, "lock_timeout_seconds", float),
        send_retries=_positive(cfg, "send_retries", int),
    )
