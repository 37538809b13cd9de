from __future__ import annotations

from datetime import date, timedelta

import pytest

from analytics_backfill.app.services.chunk_planner import (
    MONTHLY_SPAN,
    QUARTERLY_SPAN,
    DateChunk,
    add_months,
    plan_chunks,
)


def _pairs(chunks: list[DateChunk]) -> list[tuple[str, str]]:
    return [(chunk.start.isoformat(), chunk.end.isoformat()) for chunk in chunks]


def test_plan_chunks_quarterly_with_partial_tail() -> None:
    chunks = plan_chunks(date(2015, 1, 1), date(2015, 7, 15), QUARTERLY_SPAN)

    assert _pairs(chunks) == [
        ("2015-01-01", "2015-03-31"),
        ("2015-04-01", "2015-06-30"),
        ("2015-07-01", "2015-07-15"),
    ]


def test_plan_chunks_monthly_crosses_year_boundary() -> None:
    chunks = plan_chunks(date(2015, 11, 15), date(2016, 2, 10), MONTHLY_SPAN)

    assert _pairs(chunks) == [
        ("2015-11-15", "2015-12-14"),
        ("2015-12-15", "2016-01-14"),
        ("2016-01-15", "2016-02-10"),
    ]


def test_plan_chunks_single_day_range() -> None:
    chunks = plan_chunks(date(2020, 2, 29), date(2020, 2, 29), QUARTERLY_SPAN)

    assert _pairs(chunks) == [("2020-02-29", "2020-02-29")]
    assert chunks[0].days == 1


def test_plan_chunks_month_end_start_keeps_each_chunk_within_span() -> None:
    chunks = plan_chunks(date(2015, 1, 31), date(2015, 4, 30), MONTHLY_SPAN)

    assert _pairs(chunks) == [
        ("2015-01-31", "2015-02-27"),
        ("2015-02-28", "2015-03-27"),
        ("2015-03-28", "2015-04-27"),
        ("2015-04-28", "2015-04-30"),
    ]


@pytest.mark.parametrize(
    ("from_date", "to_date", "span"),
    [
        (date(2015, 1, 1), date(2024, 12, 31), MONTHLY_SPAN),
        (date(2015, 1, 1), date(2024, 12, 31), QUARTERLY_SPAN),
        (date(2016, 2, 29), date(2019, 3, 1), QUARTERLY_SPAN),
        (date(2018, 8, 31), date(2018, 9, 1), MONTHLY_SPAN),
        (date(2015, 1, 31), date(2016, 1, 31), MONTHLY_SPAN),
        (date(2015, 8, 31), date(2017, 2, 28), QUARTERLY_SPAN),
    ],
)
def test_plan_chunks_cover_range_without_gaps_or_overlap(
    from_date: date,
    to_date: date,
    span: int,
) -> None:
    chunks = plan_chunks(from_date, to_date, span)

    assert chunks[0].start == from_date
    assert chunks[-1].end == to_date
    for previous, current in zip(chunks, chunks[1:], strict=False):
        assert current.start == previous.end + timedelta(days=1)
    assert sum(chunk.days for chunk in chunks) == (to_date - from_date).days + 1
    assert all(chunk.start <= chunk.end for chunk in chunks)
    assert all(chunk.end < add_months(chunk.start, span) for chunk in chunks)


def test_plan_chunks_rejects_inverted_range() -> None:
    with pytest.raises(ValueError, match="after"):
        plan_chunks(date(2015, 2, 1), date(2015, 1, 31), MONTHLY_SPAN)


def test_plan_chunks_rejects_non_positive_span() -> None:
    with pytest.raises(ValueError, match="max_span_months"):
        plan_chunks(date(2015, 1, 1), date(2015, 1, 31), 0)


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2015, 1, 31), 1) == date(2015, 2, 28)
    assert add_months(date(2016, 1, 31), 1) == date(2016, 2, 29)
    assert add_months(date(2015, 12, 15), 3) == date(2016, 3, 15)
