from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_CACHE_PATH_ENV = "GATEWAY_CACHE_PATH"
_CACHE_CAPACITY_ENV = "GATEWAY_CACHE_CAPACITY"
_SAVE_DELAY_ENV = "GATEWAY_SAVE_DELAY_MS"
_LEDGER_NAME_ENV = "LEDGER_NAME"
_LEDGER_SUBMITTER_ENV = "LEDGER_SUBMITTER"
_LEDGER_PATH_ENV = "LEDGER_PERSISTENCE_PATH"
_WORKING_SET_ENV = "RECONCILER_WORKING_SET"
_MAX_ROWS_ENV = "RECONCILER_MAX_ROWS"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    cache_path: Optional[str]
    cache_capacity: int
    save_delay_seconds: float
    ledger_name: str
    ledger_submitter: str
    ledger_persistence_path: Optional[str]
    reconciler_working_set: int
    reconciler_max_rows: int
    log_level: str


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_save_delay(default_ms: int) -> float:
    value = os.getenv(_SAVE_DELAY_ENV)
    if value is None:
        return default_ms / 1000.0
    try:
        parsed = int(value.strip())
    except ValueError:
        return default_ms / 1000.0
    return (parsed if parsed >= 0 else default_ms) / 1000.0


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        cache_path=_read_optional_env(_CACHE_PATH_ENV, "./tmp/db.json"),
        cache_capacity=_read_positive_int(_CACHE_CAPACITY_ENV, 2000),
        save_delay_seconds=_read_save_delay(300),
        ledger_name=_read_str_env(_LEDGER_NAME_ENV, "sensor-registry"),
        ledger_submitter=_read_str_env(_LEDGER_SUBMITTER_ENV, "gateway"),
        ledger_persistence_path=_read_optional_env(_LEDGER_PATH_ENV, "./tmp/ledger.jsonl"),
        reconciler_working_set=_read_positive_int(_WORKING_SET_ENV, 600),
        reconciler_max_rows=_read_positive_int(_MAX_ROWS_ENV, 1000),
        log_level=_read_log_level("INFO"),
    )
