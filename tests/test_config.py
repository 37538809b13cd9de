from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path

import pytest
from structlog.contextvars import bind_contextvars, reset_contextvars

from analytics_backfill.app.config import load_settings
from analytics_backfill.app.logging_config import (
    LOG_FILE_NAME,
    configure_application_logging,
    resolve_log_level,
)


def test_load_settings_parses_values_and_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("YT_BACKFILL_DATA_DIR", str(data_dir))
    monkeypatch.setenv("YT_BACKFILL_GOOGLE_CLIENT_ID", "  client-id  ")
    monkeypatch.setenv("YT_BACKFILL_TOKEN_URL", " https://oauth.test/token/ ")
    monkeypatch.setenv("YT_BACKFILL_DATA_API_URL", "https://data.test/youtube/v3/")
    monkeypatch.setenv("YT_BACKFILL_TOKEN_REFRESH_MARGIN_SECONDS", "120")
    monkeypatch.setenv("YT_BACKFILL_HTTP_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("YT_BACKFILL_INTER_CALL_DELAY_SECONDS", "0.25")
    monkeypatch.setenv("YT_BACKFILL_INTER_FAMILY_DELAY_SECONDS", "2")
    monkeypatch.setenv("YT_BACKFILL_BACKFILL_FLOOR_DATE", "2016-06-01")
    monkeypatch.setenv("YT_BACKFILL_REPORTING_TIMEZONE", " Europe/Bucharest ")
    monkeypatch.setenv("YT_BACKFILL_DAILY_QUOTA_LIMIT", "5000")
    monkeypatch.setenv("YT_BACKFILL_QUOTA_WARNING_PERCENT", "0.7")
    monkeypatch.setenv("YT_BACKFILL_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("YT_BACKFILL_TELEMETRY_ENABLED", "yes")
    monkeypatch.setenv("YT_BACKFILL_TELEMETRY_SINK", " LOG ")

    settings = load_settings()

    assert settings.data_dir == data_dir.resolve()
    assert settings.db_path == (data_dir / "backfill.db").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()
    assert settings.google_client_id == "client-id"
    assert settings.token_url == "https://oauth.test/token"
    assert settings.data_api_url == "https://data.test/youtube/v3"
    assert settings.token_refresh_margin_seconds == 120
    assert settings.http_timeout_seconds == 12.5
    assert settings.inter_call_delay_seconds == 0.25
    assert settings.inter_family_delay_seconds == 2
    assert settings.backfill_floor_date == date(2016, 6, 1)
    assert settings.reporting_timezone == "Europe/Bucharest"
    assert settings.daily_quota_limit == 5000
    assert settings.quota_warning_percent == 0.7
    assert settings.log_level == "DEBUG"
    assert settings.telemetry_enabled is True
    assert settings.telemetry_sink == "log"


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "YT_BACKFILL_INTER_CALL_DELAY_SECONDS",
        "YT_BACKFILL_INTER_FAMILY_DELAY_SECONDS",
        "YT_BACKFILL_TELEMETRY_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.inter_call_delay_seconds == 0.5
    assert settings.inter_family_delay_seconds == 1.0
    assert settings.backfill_floor_date == date(2015, 1, 1)
    assert settings.reporting_timezone == "America/Los_Angeles"
    assert settings.token_refresh_margin_seconds == 300
    assert settings.http_timeout_seconds == 30
    assert settings.data_api_url == "https://youtube.googleapis.com/youtube/v3"
    assert settings.daily_quota_limit == 10_000
    assert settings.telemetry_enabled is True


def test_explicit_db_path_is_not_rebased(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "elsewhere" / "metrics.db"
    monkeypatch.setenv("YT_BACKFILL_DB_PATH", str(db_path))

    settings = load_settings()

    assert settings.db_path == db_path.resolve()


def test_load_settings_requires_oauth_client(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YT_BACKFILL_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.setenv("YT_BACKFILL_GOOGLE_CLIENT_SECRET", "   ")

    with pytest.raises(ValueError, match="Invalid OAuth client configuration") as exc_info:
        load_settings()

    assert "YT_BACKFILL_GOOGLE_CLIENT_ID" in str(exc_info.value)
    assert "YT_BACKFILL_GOOGLE_CLIENT_SECRET" in str(exc_info.value)


def test_load_settings_can_skip_oauth_validation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YT_BACKFILL_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("YT_BACKFILL_GOOGLE_CLIENT_SECRET", raising=False)

    settings = load_settings(validate_oauth_client=False)

    assert settings.google_client_id is None


def test_load_settings_rejects_unknown_timezone(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("YT_BACKFILL_REPORTING_TIMEZONE", "Mars/Olympus_Mons")

    with pytest.raises(ValueError, match="Unknown timezone"):
        load_settings()


def test_load_settings_rejects_unknown_telemetry_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("YT_BACKFILL_TELEMETRY_SINK", "otlp")

    with pytest.raises(ValueError, match="YT_BACKFILL_TELEMETRY_SINK"):
        load_settings()


def test_load_settings_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    data_dir = tmp_path / "runtime"
    (tmp_path / ".env").write_text(
        "\n".join(
            [
                "YT_BACKFILL_GOOGLE_CLIENT_ID=dotenv-client",
                "YT_BACKFILL_GOOGLE_CLIENT_SECRET=dotenv-secret",
                f"YT_BACKFILL_DATA_DIR={data_dir}",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("YT_BACKFILL_GOOGLE_CLIENT_ID", raising=False)
    monkeypatch.delenv("YT_BACKFILL_GOOGLE_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("YT_BACKFILL_DATA_DIR", raising=False)

    settings = load_settings()

    assert settings.google_client_id == "dotenv-client"
    assert settings.google_client_secret == "dotenv-secret"
    assert settings.data_dir == data_dir.resolve()


def test_configure_application_logging_writes_json_file() -> None:
    settings = load_settings()

    log_file = configure_application_logging(settings)

    assert log_file == settings.log_dir / LOG_FILE_NAME
    assert log_file.is_file()
    assert '"event": "logging configured' in log_file.read_text(encoding="utf-8")


def test_resolve_log_level_falls_back_to_info() -> None:
    assert resolve_log_level(" debug ") == 10
    assert resolve_log_level("chatty") == 20


def test_log_file_carries_bound_context_without_unset_values() -> None:
    settings = load_settings()
    log_file = configure_application_logging(settings)

    context_tokens = bind_contextvars(account_id="acct-1", run_id=None)
    try:
        logging.getLogger("analytics_backfill.backfill").info("backfill family_start")
    finally:
        reset_contextvars(**context_tokens)

    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    [entry] = [line for line in lines if line["event"] == "backfill family_start"]
    assert entry["account_id"] == "acct-1"
    assert entry["logger"] == "analytics_backfill.backfill"
    assert "run_id" not in entry
