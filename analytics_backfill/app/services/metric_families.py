from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from analytics_backfill.app.errors import UnknownFamilyError
from analytics_backfill.app.repositories.metric_repository import (
    CHANNEL_DAILY_TABLE,
    DEMOGRAPHICS_TABLE,
    DEVICE_STATS_TABLE,
    GEOGRAPHY_TABLE,
    REVENUE_DAILY_TABLE,
    TRAFFIC_SOURCES_TABLE,
    VIDEO_DAILY_TABLE,
    MetricTable,
)
from analytics_backfill.app.services.chunk_planner import (
    MONTHLY_SPAN,
    QUARTERLY_SPAN,
    DateChunk,
)
from analytics_backfill.app.services.report_fetcher import ReportQuery

VIDEO_FILTER_BATCH_SIZE = 50


@dataclass(frozen=True)
class RowContext:
    account_id: str
    scope_id: str
    chunk: DateChunk


RowMapper = Callable[[RowContext, Mapping[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class MetricFamily:
    name: str
    label: str
    table: MetricTable
    query: ReportQuery
    max_span_months: int
    map_row: RowMapper
    fallback_metrics: tuple[str, ...] = ()
    # One query per batch of uploaded video ids, filtered with video==id1,id2,...
    per_video: bool = False

    def map_rows(self, context: RowContext, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [self.map_row(context, record) for record in records]

    def chunk_queries(self, video_ids: Sequence[str] = ()) -> list[ReportQuery]:
        """Queries issued for each chunk; empty for a per-video family with no videos."""
        if not self.per_video:
            return [self.query]
        batches = [
            video_ids[index : index + VIDEO_FILTER_BATCH_SIZE]
            for index in range(0, len(video_ids), VIDEO_FILTER_BATCH_SIZE)
        ]
        return [self.query.with_filters("video==" + ",".join(batch)) for batch in batches]


def _number(record: Mapping[str, Any], key: str) -> float:
    value = record.get(key)
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, int):
        return float(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
        return number if math.isfinite(number) else 0.0
    return 0.0


def _integer(record: Mapping[str, Any], key: str) -> int:
    return int(round(_number(record, key)))


def _seconds_from_minutes(record: Mapping[str, Any], key: str) -> int:
    return int(round(_number(record, key) * 60))


def _text(record: Mapping[str, Any], key: str) -> str | None:
    value = record.get(key)
    if value is None:
        return None
    return str(value)


def _base(context: RowContext) -> dict[str, Any]:
    return {"account_id": context.account_id, "scope_id": context.scope_id}


def _windowed(context: RowContext) -> dict[str, Any]:
    return {
        **_base(context),
        "date_start": context.chunk.start.isoformat(),
        "date_end": context.chunk.end.isoformat(),
    }


def _map_channel_daily(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_base(context),
        "day": _text(record, "day"),
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
        "subscribers_gained": _integer(record, "subscribersGained"),
        "subscribers_lost": _integer(record, "subscribersLost"),
    }


def _map_video_daily(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_base(context),
        "video_id": _text(record, "video"),
        "day": _text(record, "day"),
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
        "average_view_duration_seconds": _integer(record, "averageViewDuration"),
        "likes": _integer(record, "likes"),
        "comments": _integer(record, "comments"),
    }


def _map_revenue_daily(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_base(context),
        "day": _text(record, "day"),
        "estimated_revenue": _number(record, "estimatedRevenue"),
        "estimated_ad_revenue": _number(record, "estimatedAdRevenue"),
        "gross_revenue": _number(record, "grossRevenue"),
        "estimated_red_partner_revenue": _number(record, "estimatedRedPartnerRevenue"),
        "monetized_playbacks": _integer(record, "monetizedPlaybacks"),
        "playback_based_cpm": _number(record, "playbackBasedCpm"),
        "ad_impressions": _integer(record, "adImpressions"),
        "cpm": _number(record, "cpm"),
    }


def _map_demographics(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "age_group": _text(record, "ageGroup"),
        "gender": _text(record, "gender"),
        "viewer_percentage": _number(record, "viewerPercentage"),
    }


def _map_country(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "country": _text(record, "country"),
        "province": "",
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
        "average_view_duration_seconds": _integer(record, "averageViewDuration"),
        "subscribers_gained": _integer(record, "subscribersGained"),
    }


def _map_us_province(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "country": "US",
        "province": _text(record, "province"),
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
        "average_view_duration_seconds": 0,
        "subscribers_gained": 0,
    }


def _map_device_type(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "device_type": _text(record, "deviceType"),
        "operating_system": "",
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
    }


def _map_operating_system(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "device_type": "",
        "operating_system": _text(record, "operatingSystem"),
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
    }


def _map_traffic_source(context: RowContext, record: Mapping[str, Any]) -> dict[str, Any]:
    return {
        **_windowed(context),
        "source_type": _text(record, "insightTrafficSourceType"),
        "views": _integer(record, "views"),
        "watch_time_seconds": _seconds_from_minutes(record, "estimatedMinutesWatched"),
    }


CHANNEL_DAILY = MetricFamily(
    name="channel_daily",
    label="Channel Daily Metrics",
    table=CHANNEL_DAILY_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched", "subscribersGained", "subscribersLost"),
        dimensions=("day",),
        sort="day",
    ),
    max_span_months=MONTHLY_SPAN,
    map_row=_map_channel_daily,
    fallback_metrics=("views", "estimatedMinutesWatched"),
)
VIDEO_DAILY = MetricFamily(
    name="video_daily",
    label="Video Daily Metrics",
    table=VIDEO_DAILY_TABLE,
    query=ReportQuery(
        metrics=(
            "views",
            "estimatedMinutesWatched",
            "averageViewDuration",
            "likes",
            "comments",
        ),
        dimensions=("day", "video"),
    ),
    max_span_months=MONTHLY_SPAN,
    map_row=_map_video_daily,
    fallback_metrics=("views", "estimatedMinutesWatched"),
    per_video=True,
)
REVENUE_DAILY = MetricFamily(
    name="revenue_daily",
    label="Revenue Data",
    table=REVENUE_DAILY_TABLE,
    query=ReportQuery(
        metrics=(
            "estimatedRevenue",
            "estimatedAdRevenue",
            "grossRevenue",
            "estimatedRedPartnerRevenue",
            "monetizedPlaybacks",
            "playbackBasedCpm",
            "adImpressions",
            "cpm",
        ),
        dimensions=("day",),
        sort="day",
    ),
    max_span_months=MONTHLY_SPAN,
    map_row=_map_revenue_daily,
    fallback_metrics=("estimatedRevenue",),
)
DEMOGRAPHICS = MetricFamily(
    name="demographics",
    label="Demographics",
    table=DEMOGRAPHICS_TABLE,
    query=ReportQuery(
        metrics=("viewerPercentage",),
        dimensions=("ageGroup", "gender"),
        sort="-viewerPercentage",
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_demographics,
)
GEOGRAPHY_COUNTRIES = MetricFamily(
    name="geography_countries",
    label="Geography (countries)",
    table=GEOGRAPHY_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched", "averageViewDuration", "subscribersGained"),
        dimensions=("country",),
        sort="-views",
        max_results=250,
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_country,
    fallback_metrics=("views", "estimatedMinutesWatched"),
)
GEOGRAPHY_US_PROVINCES = MetricFamily(
    name="geography_us_provinces",
    label="Geography (US provinces)",
    table=GEOGRAPHY_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched"),
        dimensions=("province",),
        filters="country==US",
        sort="-views",
        max_results=100,
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_us_province,
)
DEVICE_TYPES = MetricFamily(
    name="device_types",
    label="Device Stats",
    table=DEVICE_STATS_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched"),
        dimensions=("deviceType",),
        sort="-views",
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_device_type,
)
OPERATING_SYSTEMS = MetricFamily(
    name="operating_systems",
    label="Operating Systems",
    table=DEVICE_STATS_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched"),
        dimensions=("operatingSystem",),
        sort="-views",
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_operating_system,
)
TRAFFIC_SOURCES = MetricFamily(
    name="traffic_sources",
    label="Traffic Sources",
    table=TRAFFIC_SOURCES_TABLE,
    query=ReportQuery(
        metrics=("views", "estimatedMinutesWatched"),
        dimensions=("insightTrafficSourceType",),
        sort="-views",
    ),
    max_span_months=QUARTERLY_SPAN,
    map_row=_map_traffic_source,
)

# Comprehensive backfill order.
METRIC_FAMILIES: tuple[MetricFamily, ...] = (
    CHANNEL_DAILY,
    VIDEO_DAILY,
    REVENUE_DAILY,
    DEMOGRAPHICS,
    GEOGRAPHY_COUNTRIES,
    GEOGRAPHY_US_PROVINCES,
    DEVICE_TYPES,
    OPERATING_SYSTEMS,
    TRAFFIC_SOURCES,
)
FAMILIES_BY_NAME: dict[str, MetricFamily] = {family.name: family for family in METRIC_FAMILIES}


def get_family(name: str) -> MetricFamily:
    normalized = name.strip().lower().replace("-", "_")
    family = FAMILIES_BY_NAME.get(normalized)
    if family is None:
        known = ", ".join(sorted(FAMILIES_BY_NAME))
        raise UnknownFamilyError(f"Unknown metric family {name!r}. Known: {known}")
    return family
