from __future__ import annotations

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from structlog.contextvars import bound_contextvars

from analytics_backfill.app.dependencies import (
    get_account_service,
    get_backfill_service,
    get_run_repository,
)
from analytics_backfill.app.models.backfill_contracts import (
    AccountCredentialResponse,
    BackfillRequest,
    BackfillRunEntry,
    ComprehensiveBackfillRequest,
    ComprehensiveBackfillResponse,
    ConnectAccountRequest,
    DisconnectAccountResponse,
    ErrorResponse,
    FamilyBackfillResponse,
    MetricFamilyEntry,
    QuotaResponse,
)
from analytics_backfill.app.repositories.backfill_run_repository import BackfillRunRepository
from analytics_backfill.app.services.account_service import AccountService
from analytics_backfill.app.services.backfill_service import BackfillService
from analytics_backfill.app.services.metric_families import MetricFamily, get_family

router = APIRouter()

_BACKFILL_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    401: {"model": ErrorResponse, "description": "Missing or unusable OAuth credential."},
    404: {"description": "Unknown metric family."},
}


def _family_entry(family: MetricFamily) -> MetricFamilyEntry:
    return MetricFamilyEntry(
        name=family.name,
        label=family.label,
        table=family.table.name,
        max_span_months=family.max_span_months,
        dimensions=list(family.query.dimensions),
        metrics=list(family.query.metrics),
        filters=family.query.filters,
        fallback_metrics=list(family.fallback_metrics),
    )


@router.get(
    "/backfill/families",
    response_model=list[MetricFamilyEntry],
    tags=["backfill"],
    operation_id="list_metric_families",
)
def list_metric_families(
    service: Annotated[BackfillService, Depends(get_backfill_service)],
) -> list[MetricFamilyEntry]:
    return [_family_entry(family) for family in service.families]


@router.post(
    "/backfill/comprehensive",
    response_model=ComprehensiveBackfillResponse,
    responses=_BACKFILL_ERROR_RESPONSES,
    tags=["backfill"],
    operation_id="backfill_comprehensive",
)
def backfill_comprehensive(
    request: ComprehensiveBackfillRequest,
    service: Annotated[BackfillService, Depends(get_backfill_service)],
) -> ComprehensiveBackfillResponse:
    with bound_contextvars(account_id=request.account_id):
        try:
            outcome = service.run_comprehensive(
                request.account_id,
                from_date=request.from_date,
                to_date=request.to_date,
                families=request.families,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
    return ComprehensiveBackfillResponse.model_validate(outcome.as_dict())


@router.post(
    "/backfill/{family}",
    response_model=FamilyBackfillResponse,
    responses=_BACKFILL_ERROR_RESPONSES,
    tags=["backfill"],
    operation_id="backfill_family",
)
def backfill_family(
    family: str,
    request: BackfillRequest,
    service: Annotated[BackfillService, Depends(get_backfill_service)],
) -> FamilyBackfillResponse:
    resolved = get_family(family)
    with bound_contextvars(account_id=request.account_id):
        try:
            result = service.run_family(
                request.account_id,
                resolved,
                from_date=request.from_date,
                to_date=request.to_date,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
    return FamilyBackfillResponse.model_validate(result.as_dict())


@router.put(
    "/accounts/{account_id}/credential",
    response_model=AccountCredentialResponse,
    tags=["accounts"],
    operation_id="connect_account",
)
def connect_account(
    account_id: str,
    request: ConnectAccountRequest,
    accounts: Annotated[AccountService, Depends(get_account_service)],
) -> AccountCredentialResponse:
    try:
        credential = accounts.connect(
            account_id=account_id,
            scope_id=request.scope_id,
            access_token=request.access_token,
            refresh_token=request.refresh_token,
            expires_in=request.expires_in,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return AccountCredentialResponse(
        account_id=credential.account_id,
        scope_id=credential.scope_id,
        expires_at=credential.expires_at.isoformat() if credential.expires_at else None,
        offline_access=credential.refresh_token is not None,
        version=credential.version,
    )


@router.delete(
    "/accounts/{account_id}/credential",
    response_model=DisconnectAccountResponse,
    tags=["accounts"],
    operation_id="disconnect_account",
)
def disconnect_account(
    account_id: str,
    accounts: Annotated[AccountService, Depends(get_account_service)],
) -> DisconnectAccountResponse:
    return DisconnectAccountResponse(
        account_id=account_id,
        removed=accounts.disconnect(account_id),
    )


@router.get(
    "/accounts/{account_id}/runs",
    response_model=list[BackfillRunEntry],
    tags=["accounts"],
    operation_id="list_backfill_runs",
)
def list_backfill_runs(
    account_id: str,
    runs: Annotated[BackfillRunRepository, Depends(get_run_repository)],
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
) -> list[BackfillRunEntry]:
    return [
        BackfillRunEntry(
            run_id=record.run_id,
            family=record.family,
            state=record.state,
            from_date=date.fromisoformat(record.from_date),
            to_date=date.fromisoformat(record.to_date),
            started_at=record.started_at,
            finished_at=record.finished_at,
            summary=record.summary,
        )
        for record in runs.list_runs(account_id, limit=limit)
    ]


@router.get(
    "/accounts/{account_id}/quota",
    response_model=QuotaResponse,
    tags=["accounts"],
    operation_id="get_account_quota",
)
def get_account_quota(
    account_id: str,
    service: Annotated[BackfillService, Depends(get_backfill_service)],
) -> QuotaResponse:
    snapshot = service.quota_snapshot(account_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Quota tracking is not configured.")
    return QuotaResponse(
        account_id=snapshot.account_id,
        date_utc=snapshot.date_utc,
        units_today=snapshot.units_today,
        calls_today=snapshot.calls_today,
        daily_limit=snapshot.daily_limit,
        warning_threshold=snapshot.warning_threshold,
        critical_threshold=snapshot.critical_threshold,
        warning=snapshot.warning,
        critical=snapshot.critical,
    )
