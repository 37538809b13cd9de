from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime

from analytics_backfill.app.repositories.common import parse_utc_datetime, utc_now_iso
from analytics_backfill.app.repositories.database import Database


@dataclass(frozen=True)
class Credential:
    account_id: str
    scope_id: str
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    version: int


class CredentialRepository:
    """Persisted OAuth credential per external account.

    Refresh writes go through `update_access_token`, which only succeeds when the
    caller saw the latest `version`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, account_id: str) -> Credential | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT account_id, scope_id, access_token, refresh_token, expires_at, version
                FROM oauth_credentials
                WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()

        if row is None:
            return None
        return _row_to_credential(row)

    def save(
        self,
        *,
        account_id: str,
        scope_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> Credential:
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO oauth_credentials (
                    account_id, scope_id, access_token, refresh_token, expires_at,
                    version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    scope_id = excluded.scope_id,
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, oauth_credentials.refresh_token),
                    expires_at = excluded.expires_at,
                    version = oauth_credentials.version + 1,
                    updated_at = excluded.updated_at
                """,
                (
                    account_id,
                    scope_id,
                    access_token,
                    refresh_token,
                    expires_at.isoformat() if expires_at is not None else None,
                    now_iso,
                    now_iso,
                ),
            )
            row = conn.execute(
                """
                SELECT account_id, scope_id, access_token, refresh_token, expires_at, version
                FROM oauth_credentials
                WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()

        assert row is not None
        return _row_to_credential(row)

    def update_access_token(
        self,
        *,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        expected_version: int,
    ) -> Credential | None:
        """Store a refreshed token. Returns None when another writer got there first."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE oauth_credentials
                SET access_token = ?,
                    expires_at = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE account_id = ? AND version = ?
                """,
                (
                    access_token,
                    expires_at.isoformat(),
                    utc_now_iso(),
                    account_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                """
                SELECT account_id, scope_id, access_token, refresh_token, expires_at, version
                FROM oauth_credentials
                WHERE account_id = ?
                """,
                (account_id,),
            ).fetchone()

        assert row is not None
        return _row_to_credential(row)

    def delete(self, account_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM oauth_credentials WHERE account_id = ?",
                (account_id,),
            )
            deleted = cursor.rowcount > 0
        return deleted


def _row_to_credential(row: sqlite3.Row) -> Credential:
    raw_refresh = row["refresh_token"]
    return Credential(
        account_id=str(row["account_id"]),
        scope_id=str(row["scope_id"]),
        access_token=str(row["access_token"]),
        refresh_token=str(raw_refresh) if isinstance(raw_refresh, str) and raw_refresh else None,
        expires_at=parse_utc_datetime(row["expires_at"]),
        version=int(row["version"]),
    )
