from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from structlog.contextvars import bind_contextvars, reset_contextvars

from analytics_backfill.app.errors import ApiError, AuthError, StorageError
from analytics_backfill.app.repositories.backfill_run_repository import BackfillRunRepository
from analytics_backfill.app.repositories.metric_repository import MetricRepository
from analytics_backfill.app.repositories.quota_repository import QuotaRepository, QuotaSnapshot
from analytics_backfill.app.services.chunk_planner import DateChunk, plan_chunks
from analytics_backfill.app.services.metric_families import (
    METRIC_FAMILIES,
    MetricFamily,
    RowContext,
    get_family,
)
from analytics_backfill.app.services.report_fetcher import (
    ReportFetcher,
    ReportQuery,
    ReportResult,
)
from analytics_backfill.app.services.token_refresher import TokenRefresher
from analytics_backfill.app.services.uploads_fetcher import UploadsFetcher
from analytics_backfill.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("analytics_backfill.backfill")

FamilyState = Literal["pending", "in_progress", "done", "partial", "aborted"]
STATE_PENDING: FamilyState = "pending"
STATE_IN_PROGRESS: FamilyState = "in_progress"
STATE_DONE: FamilyState = "done"
STATE_PARTIAL: FamilyState = "partial"
STATE_ABORTED: FamilyState = "aborted"

ChunkStage = Literal["fetch", "map", "store"]

DEFAULT_FLOOR_DATE = date(2015, 1, 1)
ANALYTICS_UNITS_PER_QUERY = 1


@dataclass(frozen=True)
class ChunkSuccess:
    chunk: DateChunk
    rows_written: int
    salvaged: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.chunk.as_dict(),
            "rows_written": self.rows_written,
            "salvaged": self.salvaged,
        }


@dataclass(frozen=True)
class ChunkFailure:
    chunk: DateChunk
    stage: ChunkStage
    error_type: str
    message: str
    status: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.chunk.as_dict(),
            "stage": self.stage,
            "error_type": self.error_type,
            "error": self.message,
            "status": self.status,
        }


ChunkResult = ChunkSuccess | ChunkFailure


@dataclass
class FamilyBackfillResult:
    family: str
    label: str
    account_id: str
    from_date: date
    to_date: date
    state: FamilyState = STATE_PENDING
    chunk_results: list[ChunkResult] = field(default_factory=list)
    run_id: str | None = None

    @property
    def completed(self) -> list[ChunkSuccess]:
        return [result for result in self.chunk_results if isinstance(result, ChunkSuccess)]

    @property
    def failed_chunks(self) -> list[ChunkFailure]:
        return [result for result in self.chunk_results if isinstance(result, ChunkFailure)]

    @property
    def salvaged_chunks(self) -> list[ChunkSuccess]:
        return [result for result in self.completed if result.salvaged]

    @property
    def total_inserted(self) -> int:
        return sum(result.rows_written for result in self.completed)

    @property
    def chunks_processed(self) -> int:
        return len(self.chunk_results)

    def summary(self) -> dict[str, Any]:
        return {
            "family": self.family,
            "state": self.state,
            "from_date": self.from_date.isoformat(),
            "to_date": self.to_date.isoformat(),
            "total_inserted": self.total_inserted,
            "chunks_processed": self.chunks_processed,
            "failed_chunks": [failure.as_dict() for failure in self.failed_chunks],
            "salvaged_chunks": [success.chunk.as_dict() for success in self.salvaged_chunks],
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "success": True,
            "label": self.label,
            "account_id": self.account_id,
            "run_id": self.run_id,
            "completed": [success.as_dict() for success in self.completed],
        }


@dataclass(frozen=True)
class FamilyFailure:
    family: str
    label: str
    error: str
    result: FamilyBackfillResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "family": self.family,
            "label": self.label,
            "error": self.error,
            "result": self.result.as_dict() if self.result is not None else None,
        }


@dataclass
class ComprehensiveBackfillResult:
    account_id: str
    from_date: date
    to_date: date
    completed: list[FamilyBackfillResult] = field(default_factory=list)
    failed: list[FamilyFailure] = field(default_factory=list)

    @property
    def total_inserted(self) -> int:
        inserted = sum(result.total_inserted for result in self.completed)
        inserted += sum(
            failure.result.total_inserted for failure in self.failed if failure.result is not None
        )
        return inserted

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "account_id": self.account_id,
            "from_date": self.from_date.isoformat(),
            "to_date": self.to_date.isoformat(),
            "summary": {
                "total": len(self.completed) + len(self.failed),
                "completed": len(self.completed),
                "failed": len(self.failed),
                "total_inserted": self.total_inserted,
            },
            "results": {
                "completed": [result.as_dict() for result in self.completed],
                "failed": [failure.as_dict() for failure in self.failed],
            },
        }


class ComprehensiveBackfillAborted(AuthError):
    """AuthError that stopped a comprehensive run, with the families finished before it."""

    def __init__(self, message: str, outcome: ComprehensiveBackfillResult) -> None:
        super().__init__(message)
        self.outcome = outcome


class BackfillService:
    """Drives plan -> fetch -> upsert for each metric family.

    Chunks and families run strictly one after another with fixed pauses between
    upstream calls. Fetch, mapping and storage failures are recorded per chunk
    and never stop the remaining chunks; an AuthError aborts the run.
    """

    def __init__(
        self,
        token_refresher: TokenRefresher,
        report_fetcher: ReportFetcher,
        metric_repository: MetricRepository,
        *,
        quota_repository: QuotaRepository | None = None,
        run_repository: BackfillRunRepository | None = None,
        uploads_fetcher: UploadsFetcher | None = None,
        telemetry: TelemetryClient | None = None,
        inter_call_delay_seconds: float = 0.5,
        inter_family_delay_seconds: float = 1.0,
        floor_date: date = DEFAULT_FLOOR_DATE,
        reporting_timezone: str = "America/Los_Angeles",
        daily_quota_limit: int = 10_000,
        quota_warning_percent: float = 0.8,
        quota_critical_percent: float = 0.9,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._token_refresher = token_refresher
        self._report_fetcher = report_fetcher
        self._metric_repository = metric_repository
        self._quota_repository = quota_repository
        self._run_repository = run_repository
        self._uploads_fetcher = uploads_fetcher if uploads_fetcher is not None else UploadsFetcher()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._inter_call_delay_seconds = max(0.0, inter_call_delay_seconds)
        self._inter_family_delay_seconds = max(0.0, inter_family_delay_seconds)
        self._floor_date = floor_date
        self._reporting_zone = ZoneInfo(reporting_timezone)
        self._daily_quota_limit = max(0, daily_quota_limit)
        self._quota_warning_threshold = int(self._daily_quota_limit * quota_warning_percent)
        self._quota_critical_threshold = int(self._daily_quota_limit * quota_critical_percent)
        self._sleep = sleep
        self._today = today if today is not None else self._reporting_today

    @property
    def families(self) -> tuple[MetricFamily, ...]:
        return METRIC_FAMILIES

    def resolve_date_range(
        self,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> tuple[date, date]:
        """Default and clamp a requested range to [floor, yesterday in reporting time]."""
        latest = self._today() - timedelta(days=1)
        start = max(from_date or self._floor_date, self._floor_date)
        end = min(to_date or latest, latest)
        if start > end:
            raise ValueError(
                f"Empty backfill range: from_date {start.isoformat()} is after "
                f"to_date {end.isoformat()}"
            )
        return start, end

    def run_family(
        self,
        account_id: str,
        family: str | MetricFamily,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> FamilyBackfillResult:
        resolved_family = get_family(family) if isinstance(family, str) else family
        start, end = self.resolve_date_range(from_date, to_date)

        # Fail fast on a missing or revoked credential before any run is logged.
        self._token_refresher.get_valid_token(account_id)

        chunks = plan_chunks(start, end, resolved_family.max_span_months)
        result = FamilyBackfillResult(
            family=resolved_family.name,
            label=resolved_family.label,
            account_id=account_id,
            from_date=start,
            to_date=end,
        )
        if self._run_repository is not None:
            result.run_id = self._run_repository.start_run(
                account_id=account_id,
                family=resolved_family.name,
                from_date=start,
                to_date=end,
                state=STATE_IN_PROGRESS,
            )
        result.state = STATE_IN_PROGRESS
        telemetry = self._telemetry.bind(
            account_id=account_id,
            family=resolved_family.name,
            run_id=result.run_id,
        )

        context_tokens = bind_contextvars(
            account_id=account_id,
            family=resolved_family.name,
            run_id=result.run_id,
        )
        try:
            LOGGER.info(
                "backfill family_start family=%s from=%s to=%s chunks=%s",
                resolved_family.name,
                start.isoformat(),
                end.isoformat(),
                len(chunks),
            )
            try:
                queries = self._chunk_queries(resolved_family, account_id)
            except ApiError as exc:
                # Without the video list no chunk can be queried.
                result.chunk_results.extend(
                    self._record_failure(
                        resolved_family, chunk, "fetch", exc, telemetry, status=exc.status
                    )
                    for chunk in chunks
                )
            else:
                for index, chunk in enumerate(chunks):
                    if index > 0:
                        self._pause(self._inter_call_delay_seconds)
                    result.chunk_results.append(
                        self._process_chunk(resolved_family, account_id, chunk, queries, telemetry)
                    )
        except Exception as exc:
            result.state = STATE_ABORTED
            self._finish_run(result)
            LOGGER.error(
                "backfill family_aborted family=%s chunks_processed=%s error_type=%s",
                resolved_family.name,
                result.chunks_processed,
                type(exc).__name__,
            )
            raise
        finally:
            reset_contextvars(**context_tokens)

        result.state = STATE_PARTIAL if result.failed_chunks else STATE_DONE
        self._finish_run(result)
        telemetry.emit(
            "backfill.family.finish",
            state=result.state,
            total_inserted=result.total_inserted,
            chunks_processed=result.chunks_processed,
            failed_chunks=len(result.failed_chunks),
        )
        LOGGER.info(
            "backfill family_done family=%s state=%s inserted=%s chunks=%s failed=%s salvaged=%s",
            resolved_family.name,
            result.state,
            result.total_inserted,
            result.chunks_processed,
            len(result.failed_chunks),
            len(result.salvaged_chunks),
        )
        return result

    def run_comprehensive(
        self,
        account_id: str,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
        families: Sequence[str] | None = None,
    ) -> ComprehensiveBackfillResult:
        selected = (
            [get_family(name) for name in families] if families else list(METRIC_FAMILIES)
        )
        start, end = self.resolve_date_range(from_date, to_date)
        outcome = ComprehensiveBackfillResult(account_id=account_id, from_date=start, to_date=end)

        LOGGER.info(
            "backfill comprehensive_start account_id=%s families=%s",
            account_id,
            ",".join(family.name for family in selected),
        )
        for index, family in enumerate(selected):
            if index > 0:
                self._pause(self._inter_family_delay_seconds)
            try:
                result = self.run_family(account_id, family, from_date=start, to_date=end)
            except AuthError as exc:
                outcome.failed.append(
                    FamilyFailure(family=family.name, label=family.label, error=str(exc))
                )
                LOGGER.error(
                    "backfill comprehensive_aborted account_id=%s family=%s completed=%s",
                    account_id,
                    family.name,
                    len(outcome.completed),
                )
                raise ComprehensiveBackfillAborted(str(exc), outcome) from exc
            except Exception as exc:
                LOGGER.exception("backfill family_error family=%s", family.name)
                outcome.failed.append(
                    FamilyFailure(family=family.name, label=family.label, error=str(exc))
                )
                continue

            if result.state == STATE_DONE:
                outcome.completed.append(result)
            else:
                outcome.failed.append(
                    FamilyFailure(
                        family=family.name,
                        label=family.label,
                        error=(
                            f"{len(result.failed_chunks)} of {result.chunks_processed} "
                            "chunks failed"
                        ),
                        result=result,
                    )
                )

        LOGGER.info(
            "backfill comprehensive_done account_id=%s completed=%s failed=%s",
            account_id,
            len(outcome.completed),
            len(outcome.failed),
        )
        return outcome

    def quota_snapshot(self, account_id: str) -> QuotaSnapshot | None:
        if self._quota_repository is None:
            return None
        return self._quota_repository.record_and_snapshot(
            account_id=account_id,
            units_this_call=0,
            daily_limit=self._daily_quota_limit,
            warning_threshold=self._quota_warning_threshold,
            critical_threshold=self._quota_critical_threshold,
        )

    def _process_chunk(
        self,
        family: MetricFamily,
        account_id: str,
        chunk: DateChunk,
        queries: Sequence[ReportQuery],
        telemetry: TelemetryClient,
    ) -> ChunkResult:
        valid_token = self._token_refresher.get_valid_token(account_id)
        context = RowContext(account_id=account_id, scope_id=valid_token.scope_id, chunk=chunk)
        rows: list[dict[str, Any]] = []
        salvaged = False
        for index, query in enumerate(queries):
            if index > 0:
                self._pause(self._inter_call_delay_seconds)
            try:
                report, used_fallback = self._fetch_report(
                    family, account_id, valid_token.token, valid_token.scope_id, chunk, query
                )
            except ApiError as exc:
                return self._record_failure(
                    family, chunk, "fetch", exc, telemetry, status=exc.status
                )
            salvaged = salvaged or used_fallback
            try:
                rows.extend(family.map_rows(context, report.records()))
            except (ArithmeticError, LookupError, TypeError, ValueError) as exc:
                return self._record_failure(family, chunk, "map", exc, telemetry)

        try:
            written = self._metric_repository.upsert(family.table, rows)
        except StorageError as exc:
            return self._record_failure(family, chunk, "store", exc, telemetry)

        telemetry.emit(
            "backfill.chunk.success",
            start=chunk.start,
            end=chunk.end,
            rows_written=written,
            salvaged=salvaged,
        )
        LOGGER.debug(
            "backfill chunk_done family=%s start=%s end=%s rows=%s",
            family.name,
            chunk.start.isoformat(),
            chunk.end.isoformat(),
            written,
        )
        return ChunkSuccess(chunk=chunk, rows_written=written, salvaged=salvaged)

    def _chunk_queries(self, family: MetricFamily, account_id: str) -> list[ReportQuery]:
        if not family.per_video:
            return family.chunk_queries()
        valid_token = self._token_refresher.get_valid_token(account_id)
        video_ids = self._uploads_fetcher.list_video_ids(valid_token.token, valid_token.scope_id)
        queries = family.chunk_queries(video_ids)
        LOGGER.info(
            "backfill video_batches family=%s videos=%s batches=%s",
            family.name,
            len(video_ids),
            len(queries),
        )
        return queries

    def _fetch_report(
        self,
        family: MetricFamily,
        account_id: str,
        token: str,
        scope_id: str,
        chunk: DateChunk,
        query: ReportQuery,
    ) -> tuple[ReportResult, bool]:
        """Fetch one query, retrying 5xx once with the family's fallback metrics.

        Returns the report and whether the fallback produced it.
        """
        try:
            return self._fetch(account_id, token, scope_id, chunk, query), False
        except ApiError as exc:
            if not (exc.is_server_error and family.fallback_metrics):
                raise
            LOGGER.warning(
                "backfill chunk_fallback family=%s start=%s end=%s status=%s",
                family.name,
                chunk.start.isoformat(),
                chunk.end.isoformat(),
                exc.status,
            )
        self._pause(self._inter_call_delay_seconds)
        fallback_query = query.with_metrics(family.fallback_metrics)
        return self._fetch(account_id, token, scope_id, chunk, fallback_query), True

    def _fetch(
        self,
        account_id: str,
        token: str,
        scope_id: str,
        chunk: DateChunk,
        query: ReportQuery,
    ) -> ReportResult:
        self._record_quota(account_id)
        return self._report_fetcher.fetch(token, scope_id, chunk, query)

    def _record_failure(
        self,
        family: MetricFamily,
        chunk: DateChunk,
        stage: ChunkStage,
        exc: Exception,
        telemetry: TelemetryClient,
        *,
        status: int | None = None,
    ) -> ChunkFailure:
        LOGGER.warning(
            "backfill chunk_failed family=%s start=%s end=%s stage=%s error=%s",
            family.name,
            chunk.start.isoformat(),
            chunk.end.isoformat(),
            stage,
            exc,
        )
        telemetry.emit(
            "backfill.chunk.failure",
            start=chunk.start,
            end=chunk.end,
            stage=stage,
            error_type=type(exc).__name__,
            status=status,
        )
        return ChunkFailure(
            chunk=chunk,
            stage=stage,
            error_type=type(exc).__name__,
            message=str(exc),
            status=status,
        )

    def _record_quota(self, account_id: str) -> None:
        if self._quota_repository is None:
            return
        snapshot = self._quota_repository.record_and_snapshot(
            account_id=account_id,
            units_this_call=ANALYTICS_UNITS_PER_QUERY,
            daily_limit=self._daily_quota_limit,
            warning_threshold=self._quota_warning_threshold,
            critical_threshold=self._quota_critical_threshold,
        )
        if snapshot.critical:
            LOGGER.warning(
                "analytics quota critical account_id=%s units_today=%s limit=%s",
                account_id,
                snapshot.units_today,
                snapshot.daily_limit,
            )
        elif snapshot.warning:
            LOGGER.warning(
                "analytics quota warning account_id=%s units_today=%s limit=%s",
                account_id,
                snapshot.units_today,
                snapshot.daily_limit,
            )

    def _finish_run(self, result: FamilyBackfillResult) -> None:
        if self._run_repository is None or result.run_id is None:
            return
        self._run_repository.finish_run(
            result.run_id,
            state=result.state,
            summary=result.summary(),
        )

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def _reporting_today(self) -> date:
        return datetime.now(self._reporting_zone).date()
