from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "YT_BACKFILL_"
DEFAULT_DATA_DIR = Path(".yt-backfill")
# Fields that live under data_dir unless set explicitly.
DATA_DIR_CHILDREN: dict[str, Path] = {
    "db_path": Path("backfill.db"),
    "log_dir": Path("logs"),
}
_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _env_name(field_name: str | None) -> str:
    return f"{ENV_PREFIX}{str(field_name).upper()}"


def _under_data_dir(field_name: str) -> Path:
    return DEFAULT_DATA_DIR / DATA_DIR_CHILDREN[field_name]


def _under_data_dir_note(field_name: str) -> str:
    return (
        f"Defaults to `${{{ENV_PREFIX}DATA_DIR}}/{DATA_DIR_CHILDREN[field_name]}` "
        "when not explicitly set."
    )


def _as_flag(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower() if value is not None else ""
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    return default


class AppSettings(BaseSettings):
    """
    Runtime configuration for the backfill service.

    Every option is read from a `YT_BACKFILL_*` environment variable (or `.env`)
    and documented here together with its default.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR,
        description="Root runtime directory for the SQLite store and logs.",
    )
    db_path: Path = Field(
        default=_under_data_dir("db_path"),
        description=f"SQLite database path. {_under_data_dir_note('db_path')}",
    )

    # OAuth client used for refresh-token exchanges.
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client id sent to the token endpoint on refresh.",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret sent to the token endpoint on refresh.",
    )
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth token endpoint used for refresh_token grants.",
    )
    token_refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        description="Refresh access tokens this many seconds before they expire.",
    )

    # Upstream reporting API.
    analytics_reports_url: str = Field(
        default="https://youtubeanalytics.googleapis.com/v2/reports",
        description="YouTube Analytics reports endpoint.",
    )
    data_api_url: str = Field(
        default="https://youtube.googleapis.com/youtube/v3",
        description="YouTube Data API base URL used to list a channel's uploaded videos.",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout applied to every upstream HTTP call.",
    )
    inter_call_delay_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Pause between consecutive reporting API calls within a family run.",
    )
    inter_family_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Pause between metric families in a comprehensive backfill.",
    )

    # Date range defaults.
    backfill_floor_date: date = Field(
        default=date(2015, 1, 1),
        description="Earliest date requested from the reporting API; earlier from-dates are clamped.",
    )
    reporting_timezone: str = Field(
        default="America/Los_Angeles",
        description="Timezone in which the reporting API closes days; used for the default to-date.",
    )

    # Quota guardrails.
    daily_quota_limit: int = Field(
        default=10_000,
        ge=1,
        description="Expected daily reporting API quota per account used for warnings.",
    )
    quota_warning_percent: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Warn when estimated daily usage exceeds this fraction of the limit.",
    )
    quota_critical_percent: float = Field(
        default=0.9,
        gt=0,
        le=1,
        description="Flag usage as critical above this fraction of the limit.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_under_data_dir("log_dir"),
        description=f"Directory for log files. {_under_data_dir_note('log_dir')}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any, info: ValidationInfo) -> str:
        sink = str(value).strip().lower()
        if sink not in {"none", "log"}:
            raise ValueError(f"{_env_name(info.field_name)} must be set to: none, log.")
        return sink

    @field_validator("token_url", "analytics_reports_url", "data_api_url", mode="before")
    @classmethod
    def _normalize_url(cls, value: Any, info: ValidationInfo) -> str:
        url = str(value).strip().rstrip("/")
        if not url:
            raise ValueError(f"{_env_name(info.field_name)} must not be empty.")
        return url

    @field_validator("reporting_timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: Any) -> str:
        name = str(value).strip()
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {name!r}") from exc
        return name

    @field_validator("data_dir", *DATA_DIR_CHILDREN, mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        return Path(value).expanduser().resolve() if value is not None else None

    @field_validator("telemetry_enabled", mode="before")
    @classmethod
    def _coerce_telemetry_flag(cls, value: Any) -> bool:
        return _as_flag(value, default=True)

    @field_validator("google_client_id", "google_client_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    def missing_oauth_client_settings(self) -> list[str]:
        return [
            _env_name(field_name)
            for field_name in ("google_client_id", "google_client_secret")
            if getattr(self, field_name) is None
        ]


def load_settings(*, validate_oauth_client: bool = True) -> AppSettings:
    """Read settings and place unset storage paths under `data_dir`.

    With `validate_oauth_client`, a missing client id or secret raises ValueError.
    """
    settings = AppSettings()
    data_dir = settings.data_dir.expanduser().resolve()
    paths: dict[str, Path] = {"data_dir": data_dir}
    for field_name, child in DATA_DIR_CHILDREN.items():
        if field_name not in settings.model_fields_set:
            paths[field_name] = data_dir / child
    settings = settings.model_copy(update=paths)

    if validate_oauth_client:
        missing = settings.missing_oauth_client_settings()
        if missing:
            bullets = "\n".join(
                f"- {name} is required to refresh access tokens." for name in missing
            )
            raise ValueError(f"Invalid OAuth client configuration:\n{bullets}")

    return settings
