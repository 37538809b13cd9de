from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, cast
from uuid import uuid4

from analytics_backfill.app.repositories.common import utc_now_iso
from analytics_backfill.app.repositories.database import Database


@dataclass(frozen=True)
class BackfillRunRecord:
    run_id: str
    account_id: str
    family: str
    state: str
    from_date: str
    to_date: str
    started_at: str
    finished_at: str | None
    summary: dict[str, Any]


class BackfillRunRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def start_run(
        self,
        *,
        account_id: str,
        family: str,
        from_date: date,
        to_date: date,
        state: str,
    ) -> str:
        run_id = f"run_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO backfill_runs
                (id, account_id, family, state, from_date, to_date, started_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    account_id,
                    family,
                    state,
                    from_date.isoformat(),
                    to_date.isoformat(),
                    utc_now_iso(),
                ),
            )
        return run_id

    def finish_run(self, run_id: str, *, state: str, summary: dict[str, Any]) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE backfill_runs
                SET state = ?, finished_at = ?, summary_json = ?
                WHERE id = ?
                """,
                (state, utc_now_iso(), json.dumps(summary, sort_keys=True), run_id),
            )

    def list_runs(self, account_id: str, *, limit: int = 20) -> list[BackfillRunRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, family, state, from_date, to_date,
                       started_at, finished_at, summary_json
                FROM backfill_runs
                WHERE account_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (account_id, max(1, limit)),
            ).fetchall()

        return [
            BackfillRunRecord(
                run_id=str(row["id"]),
                account_id=str(row["account_id"]),
                family=str(row["family"]),
                state=str(row["state"]),
                from_date=str(row["from_date"]),
                to_date=str(row["to_date"]),
                started_at=str(row["started_at"]),
                finished_at=str(row["finished_at"]) if row["finished_at"] is not None else None,
                summary=_load_summary(row["summary_json"]),
            )
            for row in rows
        ]


def _load_summary(raw: object) -> dict[str, Any]:
    if not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return cast(dict[str, Any], parsed)
    return {}
