from __future__ import annotations

from functools import lru_cache

from analytics_backfill.app.config import AppSettings, load_settings
from analytics_backfill.app.repositories.backfill_run_repository import BackfillRunRepository
from analytics_backfill.app.repositories.credential_repository import CredentialRepository
from analytics_backfill.app.repositories.database import Database
from analytics_backfill.app.repositories.metric_repository import MetricRepository
from analytics_backfill.app.repositories.quota_repository import QuotaRepository
from analytics_backfill.app.services.account_service import AccountService
from analytics_backfill.app.services.backfill_service import BackfillService
from analytics_backfill.app.services.report_fetcher import ReportFetcher
from analytics_backfill.app.services.token_refresher import TokenRefresher
from analytics_backfill.app.services.uploads_fetcher import UploadsFetcher
from analytics_backfill.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_credential_repository() -> CredentialRepository:
    return CredentialRepository(get_database())


@lru_cache(maxsize=1)
def get_account_service() -> AccountService:
    return AccountService(get_credential_repository(), telemetry=get_telemetry())


@lru_cache(maxsize=1)
def get_run_repository() -> BackfillRunRepository:
    return BackfillRunRepository(get_database())


@lru_cache(maxsize=1)
def get_backfill_service() -> BackfillService:
    settings = get_settings()
    database = get_database()
    telemetry = get_telemetry()

    return BackfillService(
        token_refresher=TokenRefresher(
            get_credential_repository(),
            client_id=settings.google_client_id or "",
            client_secret=settings.google_client_secret or "",
            token_url=settings.token_url,
            timeout_seconds=settings.http_timeout_seconds,
            refresh_margin_seconds=settings.token_refresh_margin_seconds,
            telemetry=telemetry,
        ),
        report_fetcher=ReportFetcher(
            reports_url=settings.analytics_reports_url,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        metric_repository=MetricRepository(database),
        quota_repository=QuotaRepository(database),
        run_repository=get_run_repository(),
        uploads_fetcher=UploadsFetcher(
            data_api_url=settings.data_api_url,
            timeout_seconds=settings.http_timeout_seconds,
        ),
        telemetry=telemetry,
        inter_call_delay_seconds=settings.inter_call_delay_seconds,
        inter_family_delay_seconds=settings.inter_family_delay_seconds,
        floor_date=settings.backfill_floor_date,
        reporting_timezone=settings.reporting_timezone,
        daily_quota_limit=settings.daily_quota_limit,
        quota_warning_percent=settings.quota_warning_percent,
        quota_critical_percent=settings.quota_critical_percent,
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_backfill_service.cache_clear()
    get_run_repository.cache_clear()
    get_account_service.cache_clear()
    get_credential_repository.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
