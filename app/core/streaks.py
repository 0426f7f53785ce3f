import math
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Optional, Union

DateLike = Union[date, datetime, str]


def _as_date(value: DateLike) -> date:
    # datetime is a subclass of date, so check it first to drop the time of day.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _date_set(records: Iterable[DateLike]) -> set[date]:
    return {_as_date(item) for item in records}


def streak(records: Iterable[DateLike], today: Optional[date] = None) -> int:
    dates = sorted(_date_set(records), reverse=True)
    if not dates:
        return 0
    current = today or date.today()
    if dates[0] not in {current, current - timedelta(days=1)}:
        return 0
    count = 1
    for newer, older in zip(dates, dates[1:]):
        if (newer - older).days != 1:
            break
        count += 1
    return count


def completion_rate(
    records: Iterable[DateLike],
    start: DateLike,
    end: DateLike,
    scheduled_days: Iterable[int],
) -> int:
    """Percentage of scheduled days in ``[start, end]`` that have a record.

    ``scheduled_days`` uses ``date.weekday()`` numbering (Monday is 0).
    """
    first = _as_date(start)
    last = _as_date(end)
    weekdays = set(scheduled_days)
    completed = _date_set(records)
    if first > last or not weekdays:
        return 0

    scheduled = 0
    hits = 0
    day = first
    while day <= last:
        if day.weekday() in weekdays:
            scheduled += 1
            if day in completed:
                hits += 1
        day += timedelta(days=1)

    if scheduled == 0:
        return 0
    return int(math.floor(100 * hits / scheduled + 0.5))
