from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from analytics_backfill.app.errors import AuthError
from analytics_backfill.app.repositories.common import utc_now
from analytics_backfill.app.repositories.credential_repository import (
    Credential,
    CredentialRepository,
)
from analytics_backfill.app.services.http_client import (
    HttpTransportError,
    JsonTransport,
    request_json,
)
from analytics_backfill.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("analytics_backfill.token_refresher")
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class ValidToken:
    token: str
    scope_id: str


class TokenRefresher:
    def __init__(
        self,
        credential_repository: CredentialRepository,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = "https://oauth2.googleapis.com/token",
        timeout_seconds: float = 30.0,
        refresh_margin_seconds: int = 300,
        transport: JsonTransport = request_json,
        clock: Callable[[], datetime] = utc_now,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._credential_repository = credential_repository
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._refresh_margin = timedelta(seconds=max(0, refresh_margin_seconds))
        self._transport = transport
        self._clock = clock
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    def get_valid_token(self, account_id: str) -> ValidToken:
        credential = self._credential_repository.get(account_id)
        if credential is None:
            raise AuthError(
                f"No YouTube credential stored for account {account_id}. Connect the account first."
            )

        if self._is_fresh(credential, self._clock()):
            return ValidToken(token=credential.access_token, scope_id=credential.scope_id)

        if credential.refresh_token is None:
            raise AuthError(
                f"Access token for account {account_id} expired and no refresh token is stored. "
                "Reconnect the account."
            )

        LOGGER.info("oauth token_refresh_start account_id=%s", account_id)
        requested_at = self._clock()
        access_token, expires_in = self._exchange_refresh_token(
            account_id, credential.refresh_token
        )
        expires_at = requested_at + timedelta(seconds=expires_in)

        updated = self._credential_repository.update_access_token(
            account_id=account_id,
            access_token=access_token,
            expires_at=expires_at,
            expected_version=credential.version,
        )
        if updated is None:
            return self._resolve_lost_update(account_id)

        self._telemetry.emit(
            "token.refresh",
            account_id=account_id,
            expires_in_seconds=expires_in,
            credential_version=updated.version,
        )
        LOGGER.info(
            "oauth token_refresh_done account_id=%s expires_at=%s version=%s",
            account_id,
            expires_at.isoformat(),
            updated.version,
        )
        return ValidToken(token=updated.access_token, scope_id=updated.scope_id)

    def _is_fresh(self, credential: Credential, now: datetime) -> bool:
        if credential.expires_at is None:
            return False
        return now + self._refresh_margin < credential.expires_at

    def _exchange_refresh_token(self, account_id: str, refresh_token: str) -> tuple[str, int]:
        try:
            response = self._transport(
                "POST",
                self._token_url,
                timeout_seconds=self._timeout_seconds,
                form={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except HttpTransportError as exc:
            LOGGER.warning("oauth token_refresh_failed account_id=%s", account_id, exc_info=True)
            raise AuthError(f"Failed to reach the OAuth token endpoint: {exc}") from exc

        if not response.ok:
            LOGGER.warning(
                "oauth token_refresh_rejected account_id=%s status=%s",
                account_id,
                response.status_code,
            )
            if _refresh_requires_reauth(response.raw_body):
                raise AuthError(
                    "YouTube refresh token has expired or was revoked. Reconnect the account."
                )
            raise AuthError(
                f"Failed to refresh token: {response.status_code} - {response.raw_body.strip()}"
            )

        access_token = response.payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthError("OAuth token endpoint returned no access_token.")

        return access_token.strip(), _coerce_expires_in(response.payload.get("expires_in"))

    def _resolve_lost_update(self, account_id: str) -> ValidToken:
        latest = self._credential_repository.get(account_id)
        if latest is not None and self._is_fresh(latest, self._clock()):
            LOGGER.info(
                "oauth token_refresh_superseded account_id=%s version=%s",
                account_id,
                latest.version,
            )
            return ValidToken(token=latest.access_token, scope_id=latest.scope_id)
        raise AuthError(
            f"Credential for account {account_id} changed during token refresh. Retry the run."
        )


def _coerce_expires_in(raw_value: object) -> int:
    if isinstance(raw_value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(raw_value, int | float) and raw_value > 0:
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            parsed = int(raw_value.strip())
        except ValueError:
            return DEFAULT_EXPIRES_IN_SECONDS
        if parsed > 0:
            return parsed
    return DEFAULT_EXPIRES_IN_SECONDS


def _refresh_requires_reauth(raw_body: str) -> bool:
    normalized = raw_body.lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized
