from datetime import date, datetime, timedelta
from typing import List, NamedTuple, Union


class DateChunk(NamedTuple):
    """Inclusive calendar-date interval."""
    date_from: date
    date_to: date

    def as_params(self) -> dict:
        return {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()}


def to_date(value: Union[str, date]) -> date:
    """Accept either a date or a YYYY-MM-DD string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def split_date_range(date_from: Union[str, date], date_to: Union[str, date],
                     max_days_per_chunk: int) -> List[DateChunk]:
    """Split [date_from, date_to] into contiguous chunks of at most max_days_per_chunk days.

    The last chunk is truncated at date_to. An inverted range yields no chunks.
    """
    if max_days_per_chunk < 1:
        raise ValueError("max_days_per_chunk must be >= 1")

    start = to_date(date_from)
    end = to_date(date_to)

    chunks = []
    current = start
    while current <= end:
        chunk_end = min(current + timedelta(days=max_days_per_chunk - 1), end)
        chunks.append(DateChunk(current, chunk_end))
        current = chunk_end + timedelta(days=1)

    return chunks
