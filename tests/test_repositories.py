from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from analytics_backfill.app.errors import StorageError
from analytics_backfill.app.repositories.backfill_run_repository import BackfillRunRepository
from analytics_backfill.app.repositories.credential_repository import CredentialRepository
from analytics_backfill.app.repositories.database import Database
from analytics_backfill.app.repositories.metric_repository import (
    CHANNEL_DAILY_TABLE,
    GEOGRAPHY_TABLE,
    METRIC_TABLES,
    MetricRepository,
)
from analytics_backfill.app.repositories.quota_repository import QuotaRepository


def _daily_row(day: str, views: int) -> dict[str, Any]:
    return {
        "account_id": "acct-1",
        "scope_id": "UC123",
        "day": day,
        "views": views,
        "watch_time_seconds": views * 60,
        "subscribers_gained": 1,
        "subscribers_lost": 0,
    }


def test_initialize_is_repeatable(database: Database) -> None:
    database.initialize()

    with database.connection() as conn:
        tables = {
            str(row["name"])
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {table.name for table in METRIC_TABLES} <= tables
    assert {"oauth_credentials", "analytics_quota_daily", "backfill_runs"} <= tables


def test_upsert_is_idempotent_on_natural_key(database: Database) -> None:
    repository = MetricRepository(database)
    rows = [_daily_row("2015-01-01", 10), _daily_row("2015-01-02", 12)]

    assert repository.upsert(CHANNEL_DAILY_TABLE, rows) == 2
    first_state = repository.list_rows(CHANNEL_DAILY_TABLE, account_id="acct-1")
    assert repository.upsert(CHANNEL_DAILY_TABLE, rows) == 2
    second_state = repository.list_rows(CHANNEL_DAILY_TABLE, account_id="acct-1")

    assert first_state == second_state
    assert repository.count_rows(CHANNEL_DAILY_TABLE, account_id="acct-1") == 2


def test_upsert_overwrites_values_for_existing_key(database: Database) -> None:
    repository = MetricRepository(database)
    repository.upsert(CHANNEL_DAILY_TABLE, [_daily_row("2015-01-01", 10)])

    repository.upsert(CHANNEL_DAILY_TABLE, [_daily_row("2015-01-01", 99)])

    rows = repository.list_rows(CHANNEL_DAILY_TABLE, account_id="acct-1")
    assert len(rows) == 1
    assert rows[0]["views"] == 99
    assert rows[0]["watch_time_seconds"] == 99 * 60


def test_upsert_with_no_rows_writes_nothing(database: Database) -> None:
    repository = MetricRepository(database)

    assert repository.upsert(CHANNEL_DAILY_TABLE, []) == 0
    assert repository.count_rows(CHANNEL_DAILY_TABLE, account_id="acct-1") == 0


def test_failed_upsert_rolls_back_whole_batch(database: Database) -> None:
    repository = MetricRepository(database)
    broken = _daily_row("2015-01-03", 5)
    broken["views"] = None

    with pytest.raises(StorageError, match="yt_channel_daily"):
        repository.upsert(
            CHANNEL_DAILY_TABLE,
            [_daily_row("2015-01-01", 10), _daily_row("2015-01-02", 12), broken],
        )

    assert repository.count_rows(CHANNEL_DAILY_TABLE, account_id="acct-1") == 0


def test_geography_rows_for_countries_and_provinces_share_table(database: Database) -> None:
    repository = MetricRepository(database)
    base = {
        "account_id": "acct-1",
        "scope_id": "UC123",
        "date_start": "2015-01-01",
        "date_end": "2015-03-31",
        "views": 10,
        "watch_time_seconds": 600,
        "average_view_duration_seconds": 0,
        "subscribers_gained": 0,
    }

    repository.upsert(GEOGRAPHY_TABLE, [{**base, "country": "US", "province": ""}])
    repository.upsert(GEOGRAPHY_TABLE, [{**base, "country": "US", "province": "US-CA"}])
    repository.upsert(GEOGRAPHY_TABLE, [{**base, "country": "US", "province": ""}])

    rows = repository.list_rows(GEOGRAPHY_TABLE, account_id="acct-1")
    assert [(row["country"], row["province"]) for row in rows] == [("US", ""), ("US", "US-CA")]


def test_credential_save_increments_version_and_keeps_refresh_token(database: Database) -> None:
    repository = CredentialRepository(database)
    expires_at = datetime(2024, 5, 1, 13, 0, tzinfo=UTC)

    first = repository.save(
        account_id="acct-1",
        scope_id="UC123",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=expires_at,
    )
    second = repository.save(
        account_id="acct-1",
        scope_id="UC123",
        access_token="access-2",
        refresh_token=None,
        expires_at=None,
    )

    assert first.version == 1
    assert first.expires_at == expires_at
    assert second.version == 2
    assert second.access_token == "access-2"
    assert second.refresh_token == "refresh-1"
    assert second.expires_at is None


def test_update_access_token_rejects_stale_version(database: Database) -> None:
    repository = CredentialRepository(database)
    original = repository.save(
        account_id="acct-1",
        scope_id="UC123",
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=None,
    )
    new_expiry = datetime(2024, 5, 1, 13, 0, tzinfo=UTC)

    updated = repository.update_access_token(
        account_id="acct-1",
        access_token="access-2",
        expires_at=new_expiry,
        expected_version=original.version,
    )
    stale = repository.update_access_token(
        account_id="acct-1",
        access_token="access-3",
        expires_at=new_expiry + timedelta(hours=1),
        expected_version=original.version,
    )

    assert updated is not None
    assert updated.version == original.version + 1
    assert updated.expires_at == new_expiry
    assert stale is None
    current = repository.get("acct-1")
    assert current is not None
    assert current.access_token == "access-2"


def test_credential_delete(database: Database) -> None:
    repository = CredentialRepository(database)
    repository.save(
        account_id="acct-1",
        scope_id="UC123",
        access_token="access-1",
        refresh_token=None,
        expires_at=None,
    )

    assert repository.delete("acct-1") is True
    assert repository.delete("acct-1") is False
    assert repository.get("acct-1") is None


def test_quota_snapshot_accumulates_per_account(database: Database) -> None:
    repository = QuotaRepository(database)

    snapshots = [
        repository.record_and_snapshot(
            account_id="acct-1",
            units_this_call=1,
            daily_limit=10,
            warning_threshold=2,
            critical_threshold=3,
        )
        for _ in range(3)
    ]
    other = repository.record_and_snapshot(
        account_id="acct-2",
        units_this_call=1,
        daily_limit=10,
        warning_threshold=2,
        critical_threshold=3,
    )

    assert [snapshot.units_today for snapshot in snapshots] == [1, 2, 3]
    assert [snapshot.warning for snapshot in snapshots] == [False, True, True]
    assert [snapshot.critical for snapshot in snapshots] == [False, False, True]
    assert snapshots[-1].calls_today == 3
    assert other.units_today == 1


def test_quota_snapshot_without_units_is_read_only(database: Database) -> None:
    repository = QuotaRepository(database)

    snapshot = repository.record_and_snapshot(
        account_id="acct-1",
        units_this_call=0,
        daily_limit=10,
        warning_threshold=8,
        critical_threshold=9,
    )

    assert snapshot.units_today == 0
    assert snapshot.calls_today == 0
    assert snapshot.warning is False


def test_run_log_records_start_and_finish(database: Database) -> None:
    repository = BackfillRunRepository(database)

    first = repository.start_run(
        account_id="acct-1",
        family="channel_daily",
        from_date=date(2015, 1, 1),
        to_date=date(2015, 3, 31),
        state="in_progress",
    )
    second = repository.start_run(
        account_id="acct-1",
        family="demographics",
        from_date=date(2015, 1, 1),
        to_date=date(2015, 3, 31),
        state="in_progress",
    )
    repository.finish_run(first, state="partial", summary={"total_inserted": 5})

    runs = repository.list_runs("acct-1")

    assert [run.run_id for run in runs] == [second, first]
    assert runs[0].state == "in_progress"
    assert runs[0].finished_at is None
    assert runs[0].summary == {}
    assert runs[1].state == "partial"
    assert runs[1].finished_at is not None
    assert runs[1].summary == {"total_inserted": 5}
    assert runs[1].from_date == "2015-01-01"
    assert repository.list_runs("acct-2") == []
    assert len(repository.list_runs("acct-1", limit=1)) == 1
