"""Environment-driven configuration for the job system and the sweepers.

Every field is lenient: an unset, empty, unparseable or out-of-range value falls
back to the field default instead of failing startup.
"""
from datetime import timedelta
from typing import Any, Callable, Optional

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from starterkit.core.time_utils import parse_duration

_BASE_CONFIG = SettingsConfigDict(case_sensitive=False, extra="ignore", populate_by_name=True)


def _lenient(parse: Callable[[Any], Any], valid: Optional[Callable[[Any], bool]] = None):
    """Build a 'before' validator that swaps bad input for the field default."""

    def _validate(cls, value, info: ValidationInfo):
        default = cls.model_fields[info.field_name].default
        if value is None or (isinstance(value, str) and not value.strip()):
            return default
        try:
            parsed = parse(value)
        except (TypeError, ValueError, OverflowError):
            return default
        if valid is not None and not valid(parsed):
            return default
        return parsed

    return _validate


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("bool is not an int")
    if isinstance(value, int):
        return value
    return int(str(value).strip())


def _as_duration(value: Any) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    return parse_duration(str(value))


def _strict_true(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() == "true"


def _true_or_one(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("true", "1")


class JobsConfig(BaseSettings):
    model_config = _BASE_CONFIG

    enabled: bool = Field(False, validation_alias="JOBS_ENABLED")
    worker_count: int = Field(10, validation_alias="JOBS_WORKER_COUNT")
    # Default max attempts for job kinds that do not declare their own
    max_retries: int = Field(3, validation_alias="JOBS_MAX_RETRIES")
    retry_backoff: timedelta = Field(
        timedelta(seconds=5), validation_alias="JOBS_RETRY_BACKOFF"
    )
    job_timeout: timedelta = Field(
        timedelta(seconds=30), validation_alias="JOBS_TIMEOUT"
    )
    rescue_stuck_jobs_after: timedelta = Field(
        timedelta(hours=1),
        validation_alias="JOBS_RESCUE_STUCK_AFTER",
    )

    lenient_enabled = field_validator("enabled", mode="before")(_lenient(_strict_true))
    lenient_workers = field_validator("worker_count", mode="before")(_lenient(_as_int, lambda n: n > 0))
    lenient_retries = field_validator("max_retries", mode="before")(_lenient(_as_int, lambda n: n >= 0))
    lenient_durations = field_validator(
        "retry_backoff", "job_timeout", "rescue_stuck_jobs_after", mode="before"
    )(_lenient(_as_duration, lambda d: d > timedelta(0)))


class MetricsRetentionConfig(BaseSettings):
    model_config = _BASE_CONFIG

    enabled: bool = Field(True, validation_alias="METRICS_RETENTION_ENABLED")
    retention_days: int = Field(
        30, validation_alias="METRICS_RETENTION_DAYS"
    )

    lenient_enabled = field_validator("enabled", mode="before")(_lenient(_true_or_one))
    lenient_days = field_validator("retention_days", mode="before")(_lenient(_as_int, lambda n: n > 0))


class ExportsConfig(BaseSettings):
    model_config = _BASE_CONFIG

    exports_dir: str = Field("exports", validation_alias="DATA_EXPORTS_DIR")
    storage: str = Field("local", validation_alias="DATA_EXPORT_STORAGE")
    cleanup_interval: timedelta = Field(
        timedelta(hours=1),
        validation_alias="DATA_EXPORT_CLEANUP_INTERVAL",
    )

    lenient_dir = field_validator("exports_dir", mode="before")(_lenient(str))
    lenient_storage = field_validator("storage", mode="before")(
        _lenient(lambda v: str(v).strip().lower(), lambda v: v in ("local", "s3"))
    )
    lenient_interval = field_validator("cleanup_interval", mode="before")(
        _lenient(_as_duration, lambda d: d > timedelta(0))
    )


def default_config() -> JobsConfig:
    """Defaults only; the environment is not consulted."""
    return JobsConfig.model_construct()


def load_config() -> JobsConfig:
    return JobsConfig()


def default_metrics_retention_config() -> MetricsRetentionConfig:
    return MetricsRetentionConfig.model_construct()


def load_metrics_retention_config() -> MetricsRetentionConfig:
    return MetricsRetentionConfig()


def load_exports_config() -> ExportsConfig:
    return ExportsConfig()
