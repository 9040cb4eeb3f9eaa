from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CAMPAIGN_TRACKER_"
DEFAULT_DATA_DIR = Path(".campaign-tracker")
YOUTUBE_MAX_IDS_PER_REQUEST = 50
_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})
# Paths that live under data_dir unless they are set explicitly.
_DATA_DIR_CHILDREN: dict[str, Path] = {
    "db_path": Path("state.db"),
    "log_dir": Path("logs"),
}


def _env_name(field_name: str | None) -> str:
    return f"{ENV_PREFIX}{(field_name or '').upper()}"


def _coerce_flag(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUTHY:
            return True
        if token in _FALSY:
            return False
    return fallback


class AppSettings(BaseSettings):
    """
    Runtime configuration for the view-count synchronization engine.

    Every option is read from a `CAMPAIGN_TRACKER_*` environment variable (or `.env`).
    `db_path` and `log_dir` follow `data_dir` unless they are set themselves; use
    `load_settings()` rather than instantiating this class directly so that happens.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Runtime directory holding the database, logs and the scheduler lock.",
    )
    db_path: Path = Field(
        default=DEFAULT_DATA_DIR / "state.db",
        description="SQLite database shared with the campaign CRUD layer.",
    )

    # Video provider.
    youtube_provider: Literal["api", "fake"] = Field(
        default="api",
        description=(
            "`api` calls the YouTube Data API v3; `fake` serves an in-memory catalogue "
            "for local development."
        ),
    )
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API key. Required by the `api` provider.",
    )
    youtube_http_timeout_seconds: float = Field(default=10.0, gt=0)
    youtube_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per provider call, the first one included.",
    )
    youtube_retry_delay_ms: int = Field(
        default=1_000,
        ge=0,
        description="Linear backoff step; attempt N waits N times this before the next try.",
    )
    youtube_rate_limit_max_requests: int = Field(default=100, ge=1)
    youtube_rate_limit_window_seconds: int = Field(default=100, ge=1)
    youtube_daily_quota_limit: int = Field(
        default=10_000,
        ge=0,
        description="Daily quota budget. Only used to warn; 0 turns the warning off.",
    )
    youtube_quota_warning_percent: float = Field(default=0.8, ge=0.0, le=1.0)
    youtube_health_check_video_id: str = Field(
        default="dQw4w9WgXcQ",
        description="Public video looked up by `campaign-tracker health`.",
    )

    # Scheduled synchronization.
    view_sync_enabled: bool = True
    view_sync_schedule: str = Field(
        default="0 2 * * *",
        description="5-field crontab expression for the scheduled full sync.",
    )
    view_sync_timezone: str = "UTC"
    view_sync_max_videos_per_batch: int = Field(
        default=YOUTUBE_MAX_IDS_PER_REQUEST,
        ge=1,
        le=YOUTUBE_MAX_IDS_PER_REQUEST,
        description="Ids per bulk provider request; the API accepts at most 50.",
    )
    view_sync_batch_delay_ms: int = Field(
        default=1_000,
        ge=0,
        description="Pause between consecutive batches of one run.",
    )
    scheduler_lock_enabled: bool = Field(
        default=True,
        description="Only the process holding `<data_dir>/view-sync-scheduler.lock` schedules.",
    )

    # Logging and telemetry.
    log_dir: Path = DEFAULT_DATA_DIR / "logs"
    log_level: str = Field(default="INFO", description="Console log level.")
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Rotate JSON log files at this size; 0 keeps a single growing file.",
    )
    log_file_backup_count: int = Field(default=5, ge=0)
    telemetry_enabled: bool = True
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="`log` writes telemetry events to their own JSON log file.",
    )

    @field_validator("youtube_provider", "telemetry_sink", mode="before")
    @classmethod
    def _lowercase_choice(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("view_sync_schedule", mode="before")
    @classmethod
    def _collapse_schedule(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError(f"{_env_name('view_sync_schedule')} must be a string.")
        fields = value.split()
        if len(fields) != 5:
            raise ValueError(
                f"{_env_name('view_sync_schedule')} must have 5 crontab fields, got {len(fields)}."
            )
        return " ".join(fields)

    @field_validator(
        "view_sync_timezone",
        "youtube_health_check_video_id",
        "log_level",
        mode="before",
    )
    @classmethod
    def _require_text(cls, value: Any, info: ValidationInfo) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{_env_name(info.field_name)} must be a non-empty string.")
        return value.strip()

    @field_validator("youtube_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @field_validator(
        "view_sync_enabled",
        "scheduler_lock_enabled",
        "telemetry_enabled",
        mode="before",
    )
    @classmethod
    def _flag(cls, value: Any, info: ValidationInfo) -> bool:
        assert info.field_name is not None
        fallback = cls.model_fields[info.field_name].default
        return _coerce_flag(value, bool(fallback))


def configuration_errors(settings: AppSettings) -> list[str]:
    errors: list[str] = []
    if settings.youtube_provider == "api" and settings.youtube_api_key is None:
        errors.append(
            f"{_env_name('youtube_api_key')} is required when the `api` provider is selected."
        )
    return errors


def _with_resolved_paths(settings: AppSettings) -> AppSettings:
    data_dir = settings.data_dir.expanduser().resolve()
    updates: dict[str, Path] = {"data_dir": data_dir}
    for field_name, relative_path in _DATA_DIR_CHILDREN.items():
        if field_name in settings.model_fields_set:
            path = Path(getattr(settings, field_name))
        else:
            path = data_dir / relative_path
        updates[field_name] = path.expanduser().resolve()
    return settings.model_copy(update=updates)


def load_settings(*, validate_api_key: bool = True) -> AppSettings:
    settings = _with_resolved_paths(AppSettings())

    if validate_api_key:
        errors = configuration_errors(settings)
        if errors:
            bullets = "\n".join(f"- {message}" for message in errors)
            raise ValueError(f"Invalid YouTube provider configuration:\n{bullets}")

    return settings
