from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class RetryConfig:
    initial_backoff_ms: int = 0


@dataclass(slots=True)
class LoggingConfig:
    path: Path | None = None
    level: str = "INFO"


@dataclass(slots=True)
class AppConfig:
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> AppConfig:
    return AppConfig()


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    retry_raw = _section(raw, "retry")
    logging_raw = _section(raw, "logging")

    try:
        initial_backoff_ms = int(retry_raw.get("initial_backoff_ms", 0))
    except (TypeError, ValueError) as exc:
        raise ValueError("`retry.initial_backoff_ms` must be an integer") from exc
    if initial_backoff_ms < 0:
        raise ValueError("`retry.initial_backoff_ms` must be >= 0")

    level = str(logging_raw.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"`logging.level` is not a known level: {level}")

    log_path: Path | None = None
    if logging_raw.get("path"):
        log_path = Path(str(logging_raw["path"])).expanduser()
        if not log_path.is_absolute():
            log_path = config_path.parent / log_path

    return AppConfig(
        retry=RetryConfig(initial_backoff_ms=initial_backoff_ms),
        logging=LoggingConfig(path=log_path, level=level),
    )
