from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from analytics_backfill.app.errors import StorageError
from analytics_backfill.app.repositories.database import Database


@dataclass(frozen=True)
class MetricTable:
    name: str
    key_columns: tuple[str, ...]
    value_columns: tuple[str, ...]

    @property
    def columns(self) -> tuple[str, ...]:
        return (*self.key_columns, *self.value_columns)


CHANNEL_DAILY_TABLE = MetricTable(
    name="yt_channel_daily",
    key_columns=("account_id", "scope_id", "day"),
    value_columns=("views", "watch_time_seconds", "subscribers_gained", "subscribers_lost"),
)
VIDEO_DAILY_TABLE = MetricTable(
    name="yt_video_daily",
    key_columns=("account_id", "scope_id", "video_id", "day"),
    value_columns=(
        "views",
        "watch_time_seconds",
        "average_view_duration_seconds",
        "likes",
        "comments",
    ),
)
REVENUE_DAILY_TABLE = MetricTable(
    name="yt_revenue_daily",
    key_columns=("account_id", "scope_id", "day"),
    value_columns=(
        "estimated_revenue",
        "estimated_ad_revenue",
        "gross_revenue",
        "estimated_red_partner_revenue",
        "monetized_playbacks",
        "playback_based_cpm",
        "ad_impressions",
        "cpm",
    ),
)
DEMOGRAPHICS_TABLE = MetricTable(
    name="yt_demographics",
    key_columns=("account_id", "scope_id", "date_start", "date_end", "age_group", "gender"),
    value_columns=("viewer_percentage",),
)
GEOGRAPHY_TABLE = MetricTable(
    name="yt_geography",
    key_columns=("account_id", "scope_id", "date_start", "date_end", "country", "province"),
    value_columns=(
        "views",
        "watch_time_seconds",
        "average_view_duration_seconds",
        "subscribers_gained",
    ),
)
DEVICE_STATS_TABLE = MetricTable(
    name="yt_device_stats",
    key_columns=(
        "account_id",
        "scope_id",
        "date_start",
        "date_end",
        "device_type",
        "operating_system",
    ),
    value_columns=("views", "watch_time_seconds"),
)
TRAFFIC_SOURCES_TABLE = MetricTable(
    name="yt_traffic_sources",
    key_columns=("account_id", "scope_id", "date_start", "date_end", "source_type"),
    value_columns=("views", "watch_time_seconds"),
)

METRIC_TABLES: tuple[MetricTable, ...] = (
    CHANNEL_DAILY_TABLE,
    VIDEO_DAILY_TABLE,
    REVENUE_DAILY_TABLE,
    DEMOGRAPHICS_TABLE,
    GEOGRAPHY_TABLE,
    DEVICE_STATS_TABLE,
    TRAFFIC_SOURCES_TABLE,
)


class MetricRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, table: MetricTable, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert-or-update rows on the table's natural key in one transaction.

        Any database error rolls the whole call back and is raised as StorageError.
        """
        if not rows:
            return 0

        columns = table.columns
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in table.value_columns)
        statement = (
            f"INSERT INTO {table.name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(table.key_columns)}) DO UPDATE SET {updates}"
        )
        parameters = [tuple(row.get(column) for column in columns) for row in rows]

        try:
            with self._db.connection() as conn:
                conn.executemany(statement, parameters)
        except sqlite3.Error as exc:
            raise StorageError(f"Upsert into {table.name} failed: {exc}") from exc
        return len(parameters)

    def list_rows(self, table: MetricTable, *, account_id: str) -> list[dict[str, Any]]:
        order_by = ", ".join(table.key_columns)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT {', '.join(table.columns)} FROM {table.name} "
                f"WHERE account_id = ? ORDER BY {order_by}",
                (account_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_rows(self, table: MetricTable, *, account_id: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM {table.name} WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        return int(row["total"]) if row is not None else 0
