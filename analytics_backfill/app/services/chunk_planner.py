from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

MONTHLY_SPAN = 1
QUARTERLY_SPAN = 3


@dataclass(frozen=True)
class DateChunk:
    """Inclusive day range, matching the reporting API's startDate/endDate."""

    start: date
    end: date

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def as_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def add_months(value: date, months: int) -> date:
    year_offset, month_index = divmod(value.month - 1 + months, 12)
    year = value.year + year_offset
    month = month_index + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def plan_chunks(from_date: date, to_date: date, max_span_months: int) -> list[DateChunk]:
    if max_span_months < 1:
        raise ValueError(f"max_span_months must be at least 1, got {max_span_months}")
    if from_date > to_date:
        raise ValueError(
            f"from_date {from_date.isoformat()} is after to_date {to_date.isoformat()}"
        )

    chunks: list[DateChunk] = []
    chunk_start = from_date
    while chunk_start <= to_date:
        chunk_end = min(add_months(chunk_start, max_span_months) - timedelta(days=1), to_date)
        chunks.append(DateChunk(start=chunk_start, end=chunk_end))
        chunk_start = chunk_end + timedelta(days=1)
    return chunks
