from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _normalize_required_text(value: object) -> object:
    if isinstance(value, str):
        return value.strip()
    return value


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


def _default_summary() -> dict[str, Any]:
    return {}


class BackfillRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(min_length=1, max_length=255)
    from_date: date | None = None
    to_date: date | None = None

    @field_validator("account_id", mode="before")
    @classmethod
    def _strip_account_id(cls, value: object) -> object:
        return _normalize_required_text(value)


class ComprehensiveBackfillRequest(BackfillRequest):
    families: list[str] | None = Field(default=None, max_length=32)

    @field_validator("families")
    @classmethod
    def _drop_blank_families(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        cleaned = [name.strip() for name in value if name.strip()]
        return cleaned or None


class ChunkRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: date
    end: date


class ChunkSuccessEntry(ChunkRange):
    rows_written: int
    salvaged: bool


class ChunkFailureEntry(ChunkRange):
    stage: Literal["fetch", "map", "store"]
    error_type: str
    error: str
    status: int | None = None


class FamilyBackfillResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = True
    family: str
    label: str
    account_id: str
    run_id: str | None = None
    state: Literal["pending", "in_progress", "done", "partial", "aborted"]
    from_date: date
    to_date: date
    total_inserted: int
    chunks_processed: int
    completed: list[ChunkSuccessEntry]
    failed_chunks: list[ChunkFailureEntry]
    salvaged_chunks: list[ChunkRange]


class FamilyFailureEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    family: str
    label: str
    error: str
    result: FamilyBackfillResponse | None = None


class ComprehensiveSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total: int
    completed: int
    failed: int
    total_inserted: int


class ComprehensiveResults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    completed: list[FamilyBackfillResponse]
    failed: list[FamilyFailureEntry]


class ComprehensiveBackfillResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = True
    account_id: str
    from_date: date
    to_date: date
    summary: ComprehensiveSummary
    results: ComprehensiveResults


class MetricFamilyEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    label: str
    table: str
    max_span_months: int
    dimensions: list[str]
    metrics: list[str]
    filters: str | None = None
    fallback_metrics: list[str]


class ConnectAccountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scope_id: str = Field(min_length=1, max_length=255)
    access_token: str = Field(min_length=1, max_length=4096)
    refresh_token: str | None = Field(default=None, max_length=4096)
    expires_in: int | None = Field(default=None, ge=1)

    @field_validator("scope_id", "access_token", mode="before")
    @classmethod
    def _strip_required(cls, value: object) -> object:
        return _normalize_required_text(value)

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _normalize_refresh_token(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class AccountCredentialResponse(BaseModel):
    """Credential metadata only; tokens never leave the service."""

    model_config = ConfigDict(extra="forbid")

    account_id: str
    scope_id: str
    expires_at: str | None = None
    offline_access: bool
    version: int


class DisconnectAccountResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str
    removed: bool


class BackfillRunEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run_id: str
    family: str
    state: str
    from_date: date
    to_date: date
    started_at: str
    finished_at: str | None = None
    summary: dict[str, Any] = Field(default_factory=_default_summary)


class QuotaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: str
    date_utc: str
    units_today: int
    calls_today: int
    daily_limit: int
    warning_threshold: int
    critical_threshold: int
    warning: bool
    critical: bool


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = False
    error: str
    partial: ComprehensiveBackfillResponse | None = None
