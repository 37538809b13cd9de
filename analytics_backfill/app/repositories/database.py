from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS oauth_credentials (
    account_id TEXT PRIMARY KEY,
    scope_id TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NULL,
    expires_at TEXT NULL,
    version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS yt_channel_daily (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    day TEXT NOT NULL,
    views INTEGER NOT NULL,
    watch_time_seconds INTEGER NOT NULL,
    subscribers_gained INTEGER NOT NULL,
    subscribers_lost INTEGER NOT NULL,
    PRIMARY KEY (account_id, scope_id, day)
);

CREATE TABLE IF NOT EXISTS yt_video_daily (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    video_id TEXT NOT NULL,
    day TEXT NOT NULL,
    views INTEGER NOT NULL,
    watch_time_seconds INTEGER NOT NULL,
    average_view_duration_seconds INTEGER NOT NULL,
    likes INTEGER NOT NULL,
    comments INTEGER NOT NULL,
    PRIMARY KEY (account_id, scope_id, video_id, day)
);

CREATE TABLE IF NOT EXISTS yt_revenue_daily (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    day TEXT NOT NULL,
    estimated_revenue REAL NOT NULL,
    estimated_ad_revenue REAL NOT NULL,
    gross_revenue REAL NOT NULL,
    estimated_red_partner_revenue REAL NOT NULL,
    monetized_playbacks INTEGER NOT NULL,
    playback_based_cpm REAL NOT NULL,
    ad_impressions INTEGER NOT NULL,
    cpm REAL NOT NULL,
    PRIMARY KEY (account_id, scope_id, day)
);

CREATE TABLE IF NOT EXISTS yt_demographics (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    date_start TEXT NOT NULL,
    date_end TEXT NOT NULL,
    age_group TEXT NOT NULL,
    gender TEXT NOT NULL,
    viewer_percentage REAL NOT NULL,
    PRIMARY KEY (account_id, scope_id, date_start, date_end, age_group, gender)
);

CREATE TABLE IF NOT EXISTS yt_geography (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    date_start TEXT NOT NULL,
    date_end TEXT NOT NULL,
    country TEXT NOT NULL,
    province TEXT NOT NULL DEFAULT '',
    views INTEGER NOT NULL,
    watch_time_seconds INTEGER NOT NULL,
    average_view_duration_seconds INTEGER NOT NULL DEFAULT 0,
    subscribers_gained INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (account_id, scope_id, date_start, date_end, country, province)
);

CREATE TABLE IF NOT EXISTS yt_device_stats (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    date_start TEXT NOT NULL,
    date_end TEXT NOT NULL,
    device_type TEXT NOT NULL DEFAULT '',
    operating_system TEXT NOT NULL DEFAULT '',
    views INTEGER NOT NULL,
    watch_time_seconds INTEGER NOT NULL,
    PRIMARY KEY (account_id, scope_id, date_start, date_end, device_type, operating_system)
);

CREATE TABLE IF NOT EXISTS yt_traffic_sources (
    account_id TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    date_start TEXT NOT NULL,
    date_end TEXT NOT NULL,
    source_type TEXT NOT NULL,
    views INTEGER NOT NULL,
    watch_time_seconds INTEGER NOT NULL,
    PRIMARY KEY (account_id, scope_id, date_start, date_end, source_type)
);

CREATE TABLE IF NOT EXISTS analytics_quota_daily (
    account_id TEXT NOT NULL,
    date_utc TEXT NOT NULL,
    units_used INTEGER NOT NULL,
    calls INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account_id, date_utc)
);

CREATE TABLE IF NOT EXISTS backfill_runs (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    family TEXT NOT NULL,
    state TEXT NOT NULL,
    from_date TEXT NOT NULL,
    to_date TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT NULL,
    summary_json TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_backfill_runs_account_started
ON backfill_runs(account_id, started_at DESC);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.executescript(SCHEMA_SQL)
