from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from analytics_backfill.app.repositories.common import utc_now
from analytics_backfill.app.repositories.credential_repository import (
    Credential,
    CredentialRepository,
)
from analytics_backfill.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("analytics_backfill.accounts")


class AccountService:
    """Stores the outcome of an OAuth consent flow and removes it on disconnect."""

    def __init__(
        self,
        credential_repository: CredentialRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._credential_repository = credential_repository
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def connect(
        self,
        *,
        account_id: str,
        scope_id: str,
        access_token: str,
        refresh_token: str | None,
        expires_in: int | None,
    ) -> Credential:
        account_id = account_id.strip()
        scope_id = scope_id.strip()
        access_token = access_token.strip()
        if not account_id:
            raise ValueError("account_id must not be empty")
        if not scope_id:
            raise ValueError("scope_id must not be empty")
        if not access_token:
            raise ValueError("access_token must not be empty")

        expires_at = (
            self._clock() + timedelta(seconds=expires_in)
            if expires_in is not None and expires_in > 0
            else None
        )
        credential = self._credential_repository.save(
            account_id=account_id,
            scope_id=scope_id,
            access_token=access_token,
            refresh_token=refresh_token.strip() if refresh_token else None,
            expires_at=expires_at,
        )
        self._telemetry.emit(
            "account.connect",
            account_id=account_id,
            scope_id=scope_id,
            offline_access=credential.refresh_token is not None,
        )
        LOGGER.info(
            "account connected account_id=%s scope_id=%s version=%s",
            account_id,
            scope_id,
            credential.version,
        )
        return credential

    def disconnect(self, account_id: str) -> bool:
        removed = self._credential_repository.delete(account_id)
        self._telemetry.emit("account.disconnect", account_id=account_id, removed=removed)
        LOGGER.info("account disconnected account_id=%s removed=%s", account_id, removed)
        return removed

    def get(self, account_id: str) -> Credential | None:
        return self._credential_repository.get(account_id)
