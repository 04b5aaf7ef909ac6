"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


@dataclass(frozen=True)
class SurveyIngestionSettings:
    """
    Runtime settings for survey CSV ingestion.
    """

    batch_size: int = 1000
    max_validation_errors: int = 500
    log_validation_errors: bool = True
    save_column_templates: bool = True


@dataclass(frozen=True)
class BenchmarkSettings:
    """
    Tunables for discovery, aggregation and blending.

    ``confidence_full_incumbents`` / ``confidence_full_components`` are the
    totals at which each confidence factor saturates at 1.0.
    """

    discovery_batch_size: int = 1000
    aggregation_batch_size: int = 1000
    blend_weight_epsilon: float = 0.5
    specialty_fuzzy_threshold: float = 0.84
    confidence_full_incumbents: int = 1000
    confidence_full_components: int = 5
    productivity_variable: str = "work_rvus"
    compensation_variable: str = "tcc"
    job_workers: int = 4
    job_retain_finished: int = 100
    storage_backend: str = "memory"


@lru_cache(maxsize=1)
def get_survey_ingestion_settings() -> SurveyIngestionSettings:
    """
    Return cached survey ingestion settings from environment variables.
    """

    return SurveyIngestionSettings(
        batch_size=max(1, _get_int_env("CSV_INGEST_BATCH_SIZE", 1000)),
        max_validation_errors=max(1, _get_int_env("CSV_INGEST_MAX_VALIDATION_ERRORS", 500)),
        log_validation_errors=_get_bool_env("CSV_INGEST_LOG_VALIDATION_ERRORS", True),
        save_column_templates=_get_bool_env("CSV_INGEST_SAVE_COLUMN_TEMPLATES", True),
    )


@lru_cache(maxsize=1)
def get_benchmark_settings() -> BenchmarkSettings:
    """
    Return cached benchmark engine settings from environment variables.
    """

    return BenchmarkSettings(
        discovery_batch_size=max(1, _get_int_env("BENCHMARK_DISCOVERY_BATCH_SIZE", 1000)),
        aggregation_batch_size=max(1, _get_int_env("BENCHMARK_AGGREGATION_BATCH_SIZE", 1000)),
        blend_weight_epsilon=max(0.0, _get_float_env("BENCHMARK_BLEND_WEIGHT_EPSILON", 0.5)),
        specialty_fuzzy_threshold=min(
            1.0, max(0.0, _get_float_env("BENCHMARK_SPECIALTY_FUZZY_THRESHOLD", 0.84))
        ),
        confidence_full_incumbents=max(1, _get_int_env("BENCHMARK_CONFIDENCE_FULL_INCUMBENTS", 1000)),
        confidence_full_components=max(1, _get_int_env("BENCHMARK_CONFIDENCE_FULL_COMPONENTS", 5)),
        productivity_variable=_get_str_env("BENCHMARK_PRODUCTIVITY_VARIABLE", "work_rvus"),
        compensation_variable=_get_str_env("BENCHMARK_COMPENSATION_VARIABLE", "tcc"),
        job_workers=max(1, _get_int_env("BENCHMARK_JOB_WORKERS", 4)),
        job_retain_finished=max(0, _get_int_env("BENCHMARK_JOB_RETAIN_FINISHED", 100)),
        storage_backend=_get_str_env("BENCHMARK_STORAGE_BACKEND", "memory").lower(),
    )
