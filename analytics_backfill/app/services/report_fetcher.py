from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from analytics_backfill.app.errors import ApiError
from analytics_backfill.app.services.chunk_planner import DateChunk
from analytics_backfill.app.services.http_client import (
    HttpTransportError,
    JsonTransport,
    as_dict,
    as_list,
    request_json,
)

LOGGER = logging.getLogger("analytics_backfill.report_fetcher")


@dataclass(frozen=True)
class ReportQuery:
    metrics: tuple[str, ...]
    dimensions: tuple[str, ...] = ()
    filters: str | None = None
    sort: str | None = None
    max_results: int | None = None

    def with_metrics(self, metrics: tuple[str, ...]) -> ReportQuery:
        return replace(self, metrics=metrics)

    def with_filters(self, filters: str | None) -> ReportQuery:
        return replace(self, filters=filters)

    @property
    def requested_columns(self) -> tuple[str, ...]:
        return (*self.dimensions, *self.metrics)


@dataclass(frozen=True)
class ReportResult:
    column_names: tuple[str, ...]
    rows: list[list[Any]]

    def records(self) -> list[dict[str, Any]]:
        return [dict(zip(self.column_names, row, strict=False)) for row in self.rows]


class ReportFetcher:
    """One reporting API query per call. Retry and pacing belong to the caller."""

    def __init__(
        self,
        *,
        reports_url: str = "https://youtubeanalytics.googleapis.com/v2/reports",
        timeout_seconds: float = 30.0,
        transport: JsonTransport = request_json,
    ) -> None:
        self._reports_url = reports_url
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._transport = transport

    def fetch(
        self,
        token: str,
        scope_id: str,
        chunk: DateChunk,
        query: ReportQuery,
    ) -> ReportResult:
        params = {
            "ids": f"channel=={scope_id}",
            "startDate": chunk.start.isoformat(),
            "endDate": chunk.end.isoformat(),
            "metrics": ",".join(query.metrics),
        }
        if query.dimensions:
            params["dimensions"] = ",".join(query.dimensions)
        if query.filters:
            params["filters"] = query.filters
        if query.sort:
            params["sort"] = query.sort
        if query.max_results is not None:
            params["maxResults"] = str(query.max_results)

        LOGGER.debug(
            "analytics query start=%s end=%s dimensions=%s metrics=%s filters=%s",
            params["startDate"],
            params["endDate"],
            params.get("dimensions", "(none)"),
            params["metrics"],
            query.filters or "(none)",
        )

        try:
            response = self._transport(
                "GET",
                self._reports_url,
                timeout_seconds=self._timeout_seconds,
                params=params,
                headers={"authorization": f"Bearer {token}"},
            )
        except HttpTransportError as exc:
            raise ApiError(0, str(exc)) from exc

        if not response.ok:
            raise ApiError(response.status_code, response.raw_body)

        return ReportResult(
            column_names=_column_names(response.payload, query),
            rows=[as_list(row) for row in as_list(response.payload.get("rows"))],
        )


def _column_names(payload: dict[str, Any], query: ReportQuery) -> tuple[str, ...]:
    names: list[str] = []
    for header in as_list(payload.get("columnHeaders")):
        name = as_dict(header).get("name")
        if isinstance(name, str) and name:
            names.append(name)
    if names:
        return tuple(names)
    return query.requested_columns
