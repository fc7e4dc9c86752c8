from __future__ import annotations

import math
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_STORE_ROOT_ENV = "RAINFALL_STORE_ROOT_PATH"
_JOB_TABLE_PATH_ENV = "RAINFALL_JOB_TABLE_PATH"
_REGISTRY_PATH_ENV = "STATION_REGISTRY_PATH"
_THRESHOLD_ENV = "OUTLIER_THRESHOLD_MM"
_INTERVAL_ENV = "SAMPLE_INTERVAL_MINUTES"
_WINDOW_ENV = "OUTLIER_WINDOW"
_MIN_LOCAL_ENV = "OUTLIER_MIN_LOCAL_VALUES"
_ALERT_ENV = "OUTLIER_ALERT_THRESHOLD"
_WORKER_COUNT_ENV = "INGEST_WORKER_COUNT"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Settings:
    store_root_path: Optional[str]
    job_table_path: Optional[str]
    registry_path: Optional[str]
    threshold_mm: float
    sample_interval_minutes: int
    outlier_window: int
    min_local_values: int
    alert_threshold: int
    ingest_workers: int
    log_level: str


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


def _read_positive_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if not math.isfinite(parsed) or parsed <= 0:
        return default
    return parsed


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
        store_root_path=_read_optional_env(_STORE_ROOT_ENV, "./tmp/rainfall_store"),
        job_table_path=_read_optional_env(_JOB_TABLE_PATH_ENV, "./tmp/jobs.json"),
        registry_path=_read_optional_env(_REGISTRY_PATH_ENV, None),
        threshold_mm=_read_positive_float(_THRESHOLD_ENV, 25.0),
        sample_interval_minutes=_read_positive_int(_INTERVAL_ENV, 15),
        outlier_window=_read_positive_int(_WINDOW_ENV, 6),
        min_local_values=_read_positive_int(_MIN_LOCAL_ENV, 3),
        alert_threshold=_read_positive_int(_ALERT_ENV, 5),
        ingest_workers=_read_positive_int(_WORKER_COUNT_ENV, 4),
        log_level=_read_log_level("INFO"),
    )
