from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from analytics_backfill.app.repositories.common import utc_now_iso
from analytics_backfill.app.repositories.database import Database


@dataclass(frozen=True)
class QuotaSnapshot:
    account_id: str
    date_utc: str
    units_this_call: int
    units_today: int
    calls_today: int
    daily_limit: int
    warning_threshold: int
    critical_threshold: int
    warning: bool
    critical: bool


class QuotaRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record_and_snapshot(
        self,
        *,
        account_id: str,
        units_this_call: int,
        daily_limit: int,
        warning_threshold: int,
        critical_threshold: int,
    ) -> QuotaSnapshot:
        date_utc = datetime.now(UTC).date().isoformat()
        units = max(0, units_this_call)

        with self._db.connection() as conn:
            if units > 0:
                conn.execute(
                    """
                    INSERT INTO analytics_quota_daily (account_id, date_utc, units_used, calls, updated_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(account_id, date_utc) DO UPDATE SET
                        units_used = analytics_quota_daily.units_used + excluded.units_used,
                        calls = analytics_quota_daily.calls + 1,
                        updated_at = excluded.updated_at
                    """,
                    (account_id, date_utc, units, utc_now_iso()),
                )

            daily_row = conn.execute(
                """
                SELECT units_used, calls
                FROM analytics_quota_daily
                WHERE account_id = ? AND date_utc = ?
                """,
                (account_id, date_utc),
            ).fetchone()

        units_today = int(daily_row["units_used"]) if daily_row is not None else 0
        calls_today = int(daily_row["calls"]) if daily_row is not None else 0

        return QuotaSnapshot(
            account_id=account_id,
            date_utc=date_utc,
            units_this_call=units,
            units_today=units_today,
            calls_today=calls_today,
            daily_limit=daily_limit,
            warning_threshold=warning_threshold,
            critical_threshold=critical_threshold,
            warning=daily_limit > 0 and units_today >= warning_threshold,
            critical=daily_limit > 0 and units_today >= critical_threshold,
        )
